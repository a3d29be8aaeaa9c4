"""
Retry policy for function-call dispatch.

'RetryPolicy.decide' is a pure function of the attempt number and the error
raised by that attempt. It knows nothing about the handler being retried, so
every handler type shares the same policy.
"""

from dataclasses import dataclass

from roleplay_runtime.execution.outcome import TerminalState
from roleplay_runtime.functions.base import PermanentHandlerError, TransientHandlerError

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (TransientHandlerError, TimeoutError, ConnectionError)


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0
    terminal_state: TerminalState | None = None


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff with a bounded number of attempts.

    Attributes:
        max_attempts: Total dispatches allowed, including the first one.
        base_delay: Delay in seconds after the first failed attempt.
        max_delay: Upper bound for any single delay.
        multiplier: Growth factor between consecutive delays.
    """

    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 10.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Delays must not be negative")

    @staticmethod
    def is_transient(error: BaseException) -> bool:
        if isinstance(error, PermanentHandlerError):
            return False
        return isinstance(error, TRANSIENT_ERRORS)

    def backoff(self, attempt: int) -> float:
        """Delay before the attempt following 'attempt' (1-based)."""
        return min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))

    def decide(self, attempt: int, error: BaseException) -> RetryDecision:
        if not self.is_transient(error):
            return RetryDecision(retry=False, terminal_state=TerminalState.FAILED_PERMANENTLY)
        if attempt >= self.max_attempts:
            return RetryDecision(retry=False, terminal_state=TerminalState.FAILED_EXHAUSTED_RETRIES)
        return RetryDecision(retry=True, delay=self.backoff(attempt))
