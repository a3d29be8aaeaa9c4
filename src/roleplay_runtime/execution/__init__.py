"""
Asynchronous function-call execution.

Chat turns enqueue 'FunctionCallRequest' objects onto an 'ExecutionQueue'; a
'FunctionExecutor' running as a background task drains it, retries transient
failures according to a 'RetryPolicy', and records every terminal result as an
'ExecutionOutcome':

    from roleplay_runtime.execution import ExecutionQueue, FunctionExecutor, InMemoryAuditLog

    queue = ExecutionQueue(capacity=100)
    executor = FunctionExecutor(queue, registry, InMemoryAuditLog())
    executor.start()
"""

from roleplay_runtime.execution.executor import FunctionExecutor
from roleplay_runtime.execution.outcome import AuditLog, ExecutionOutcome, InMemoryAuditLog, TerminalState
from roleplay_runtime.execution.queue import DEFAULT_QUEUE_CAPACITY, ExecutionQueue
from roleplay_runtime.execution.retry import RetryDecision, RetryPolicy

__all__ = [
    "DEFAULT_QUEUE_CAPACITY",
    "AuditLog",
    "ExecutionOutcome",
    "ExecutionQueue",
    "FunctionExecutor",
    "InMemoryAuditLog",
    "RetryDecision",
    "RetryPolicy",
    "TerminalState",
]
