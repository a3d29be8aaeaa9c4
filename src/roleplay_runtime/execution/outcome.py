"""
Execution outcome records and the audit log they are written to.

An 'ExecutionOutcome' is created exactly once per function-call request, when
the executor reaches a terminal state, and never changes afterwards. The audit
log enforces that: recording a second outcome for the same request raises
'ConflictError', which is what keeps two executor workers from both declaring a
terminal state for one request.
"""

import asyncio
from abc import ABC, abstractmethod
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from roleplay_runtime.errors import ConflictError, NotFound
from roleplay_runtime.utils.time import get_current_timestamp


class TerminalState(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED_PERMANENTLY = "failed_permanently"
    FAILED_EXHAUSTED_RETRIES = "failed_exhausted_retries"


class ExecutionOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    request_id: str
    function_name: str
    conversation_id: str
    message_id: str
    state: TerminalState
    result: dict[str, Any] | None = None
    error: str | None = None
    attempts: int
    elapsed_seconds: float
    finished_at: int = Field(default_factory=get_current_timestamp)

    @property
    def succeeded(self) -> bool:
        return self.state == TerminalState.SUCCEEDED


class AuditLog(ABC):
    """Abstract append-only store of execution outcomes."""

    @abstractmethod
    async def record(self, outcome: ExecutionOutcome) -> None:
        """Persist 'outcome'. Raise 'ConflictError' if the request already has one."""
        pass

    @abstractmethod
    async def get_outcome(self, request_id: str) -> ExecutionOutcome:
        """Return the outcome or raise 'NotFound'."""
        pass

    @abstractmethod
    async def list_outcomes(self, conversation_id: str | None = None) -> list[ExecutionOutcome]:
        """Outcomes in the order they were recorded, optionally for one conversation."""
        pass


class InMemoryAuditLog(AuditLog):
    def __init__(self) -> None:
        self._outcomes: dict[str, ExecutionOutcome] = {}
        self._lock = asyncio.Lock()

    async def record(self, outcome: ExecutionOutcome) -> None:
        async with self._lock:
            if outcome.request_id in self._outcomes:
                raise ConflictError(f"Request {outcome.request_id} already has a terminal outcome")
            self._outcomes[outcome.request_id] = outcome

    async def get_outcome(self, request_id: str) -> ExecutionOutcome:
        try:
            return self._outcomes[request_id]
        except KeyError:
            raise NotFound(f"No outcome recorded for request {request_id}") from None

    async def list_outcomes(self, conversation_id: str | None = None) -> list[ExecutionOutcome]:
        return [
            outcome
            for outcome in self._outcomes.values()
            if conversation_id is None or outcome.conversation_id == conversation_id
        ]
