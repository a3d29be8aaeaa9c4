"""
Function-call abstractions.

A function call is a side-effecting action (typically a blockchain transaction)
that a character's LLM reply may request. Each 'FunctionHandler' exposes a JSON
schema via 'json_schema()' that is passed to the LLM API, and an 'execute()'
coroutine that the executor runs once the request has been dequeued.

Handlers are executed at-least-once: a transient failure is retried, and the
failed attempt may have partially succeeded. The executor passes '_request_id'
alongside the LLM-supplied arguments so a handler can deduplicate on it.

Concrete implementations: 'GitcoinAllocateGrant'.
"""

from abc import ABC, abstractmethod
from typing import Any, ClassVar, Literal, TypedDict

from pydantic import BaseModel, Field

from roleplay_runtime.utils.database import generate_uid
from roleplay_runtime.utils.time import get_current_timestamp


class FunctionDescription(TypedDict):
    """JSON schema fragment describing a callable function for the LLM API."""

    name: str
    description: str
    parameters: dict[str, Any]


class ToolDescription(TypedDict):
    """Full tool descriptor in the format expected by OpenAI-compatible APIs."""

    type: Literal["function"]
    function: FunctionDescription


class HandlerError(Exception):
    """Base class for failures reported by a function handler."""


class TransientHandlerError(HandlerError):
    """Network timeouts, rate limiting, chain congestion: worth another attempt."""


class PermanentHandlerError(HandlerError):
    """The request itself is invalid (bad arguments, insufficient balance, rejected signature)."""


class FunctionCallRequest(BaseModel):
    """
    A pending function call derived from an LLM tool call.

    'attempts' is the only field that changes after creation; the executor bumps
    it before every dispatch.
    """

    id: str = Field(default_factory=generate_uid)
    function_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    conversation_id: str
    message_id: str
    owner_id: str
    character_id: str
    tool_call_id: str | None = None
    enqueued_at: int = Field(default_factory=get_current_timestamp)
    attempts: int = 0


class FunctionHandler(ABC):
    """
    Abstract base class for registered function handlers.

    Subclasses declare 'name', 'description' and 'parameters' as class
    attributes so that 'json_schema()' can assemble the tool descriptor without
    any additional configuration. When 'arguments_model' is set, the registry
    validates LLM arguments against it before anything is enqueued.
    """

    name: ClassVar[str]
    description: ClassVar[str]
    parameters: ClassVar[dict[str, Any]]
    arguments_model: ClassVar[type[BaseModel] | None] = None

    @abstractmethod
    async def execute(self, args: dict[str, Any]) -> dict[str, Any]:
        """Perform the side effect and return a JSON-serialisable result dict.

        Raise 'TransientHandlerError' for failures worth retrying and
        'PermanentHandlerError' for failures that never will succeed.
        """
        pass

    def json_schema(self) -> ToolDescription:
        """Return the tool descriptor in OpenAI function-calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }
