"""
Error taxonomy for the roleplay runtime.

Every error raised on the synchronous chat / regenerate path derives from
'RoleplayRuntimeError' and carries an HTTP-style 'status_code', so an API layer
can translate it into a response without knowing each subclass. Errors raised by
function-call handlers live in 'roleplay_runtime.functions.base' instead: they
never reach the chat caller and are turned into execution outcomes by the
executor.
"""


class RoleplayRuntimeError(Exception):
    """Base class for errors surfaced to the caller of the runtime."""

    status_code: int = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class NotFound(RoleplayRuntimeError):
    """A conversation, character or message does not exist."""

    status_code = 404


class Forbidden(RoleplayRuntimeError):
    """The caller does not own a private conversation."""

    status_code = 403


class BadRequest(RoleplayRuntimeError):
    """Malformed input, or an operation that makes no sense in the current state."""

    status_code = 400


class UnknownFunction(BadRequest):
    """The LLM requested a function that is not in the registry."""


class ConflictError(RoleplayRuntimeError):
    """A concurrent write would break history ordering or duplicate a record."""

    status_code = 409


class UpstreamError(RoleplayRuntimeError):
    """The LLM provider (or another upstream service) failed."""

    status_code = 502


class SearchUnavailable(RoleplayRuntimeError):
    status_code = 501


class QueueSaturated(RoleplayRuntimeError):
    """The execution queue stayed full for longer than the caller was willing to wait."""

    status_code = 503


class StorageUnavailable(RoleplayRuntimeError):
    status_code = 503
