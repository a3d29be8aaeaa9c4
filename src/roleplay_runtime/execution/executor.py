"""
Function executor.

'FunctionExecutor' drains the 'ExecutionQueue' and runs every request through
the same state machine:

    Dequeued -> Dispatching -> Succeeded
                            -> RetryScheduled -> Dispatching -> ...
                            -> FailedPermanently
                            -> FailedExhaustedRetries (retry budget spent)

A request belongs to exactly one worker from the moment it is dequeued, and
that worker owns its retry loop, so there is never more than one attempt of a
request in flight. Errors raised by handlers never leave the executor: they
become an 'ExecutionOutcome' in the audit log and, when a 'ConversationHistory'
is configured, a 'tool_call' message in the originating conversation. Failures
of the audit log, the history write or the metrics sink are logged and dropped.

Workers hand the history write to a background task and move on to the next
request, so a chat turn holding a conversation lock while it waits for queue
room never waits on a worker that waits on that same lock. Outcome messages of
one conversation still land in completion order.

By default a single worker consumes the queue. 'workers > 1' turns it into a
pool draining the same queue; completion order then no longer follows enqueue
order.
"""

import asyncio
import json
import time
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

from roleplay_runtime.conversation_database.history import ConversationHistory
from roleplay_runtime.errors import ConflictError, UnknownFunction
from roleplay_runtime.execution.outcome import AuditLog, ExecutionOutcome, TerminalState
from roleplay_runtime.execution.queue import ExecutionQueue
from roleplay_runtime.execution.retry import RetryPolicy
from roleplay_runtime.functions.base import FunctionCallRequest
from roleplay_runtime.functions.registry import FunctionRegistry
from roleplay_runtime.memory.base import Message, MessageRole
from roleplay_runtime.metrics import MetricsSink, NullMetricsSink, emit_safely


class FunctionExecutor:
    """
    Consumer of the execution queue.

    Attributes:
        history: Where outcomes are reflected into the conversation. 'None'
            disables reflection; outcomes are still audited.
        workers: Number of concurrent consumer tasks started by 'start()'.
        sleep: Coroutine used for backoff delays, replaceable in tests.
    """

    def __init__(
        self,
        queue: ExecutionQueue,
        registry: FunctionRegistry,
        audit_log: AuditLog,
        history: ConversationHistory | None = None,
        retry_policy: RetryPolicy | None = None,
        metrics: MetricsSink | None = None,
        workers: int = 1,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if workers < 1:
            raise ValueError("The executor needs at least one worker")
        self.queue = queue
        self.registry = registry
        self.audit_log = audit_log
        self.history = history
        self.retry_policy = retry_policy or RetryPolicy()
        self.metrics = metrics or NullMetricsSink()
        self.workers = workers
        self.sleep = sleep
        self._tasks: list[asyncio.Task[None]] = []
        self._reflections: set[asyncio.Task[None]] = set()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> list[asyncio.Task[None]]:
        if self.running:
            raise RuntimeError("Executor is already running")
        self._tasks = [
            asyncio.create_task(self.run(), name=f"function-executor-{index}") for index in range(self.workers)
        ]
        logger.info(f"Function executor started with {self.workers} worker(s)")
        return self._tasks

    async def stop(self) -> None:
        """Stop the workers once every queued request and its history write has finished.

        Enqueued requests always run to a terminal state; close the queue first
        so producers stop adding to it.
        """
        if self.running:
            await self.queue.join()
        while self._reflections:
            await asyncio.gather(*self._reflections, return_exceptions=True)
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Function executor stopped")

    async def run(self) -> None:
        while True:
            request = await self.queue.get()
            try:
                outcome, recorded = await self._settle(request)
                if recorded:
                    self._reflect_in_background(request, outcome)
            except Exception:
                logger.exception(f"Unexpected failure while processing request {request.id}")
            finally:
                self.queue.task_done()

    async def process(self, request: FunctionCallRequest) -> ExecutionOutcome:
        """Run one request to a terminal state, then audit it and write it into the conversation."""
        outcome, recorded = await self._settle(request)
        if recorded:
            await self._reflect(request, outcome)
        return outcome

    def _reflect_in_background(self, request: FunctionCallRequest, outcome: ExecutionOutcome) -> None:
        if self.history is None:
            return
        task = asyncio.create_task(self._reflect(request, outcome), name=f"reflect-{request.id}")
        self._reflections.add(task)
        task.add_done_callback(self._reflections.discard)

    async def _settle(self, request: FunctionCallRequest) -> tuple[ExecutionOutcome, bool]:
        started = time.monotonic()
        result: dict[str, Any] | None = None
        error: str | None = None

        try:
            handler = self.registry.resolve(request.function_name)
        except UnknownFunction as exc:
            state = TerminalState.FAILED_PERMANENTLY
            error = exc.message
        else:
            while True:
                request.attempts += 1
                logger.debug(f"Dispatching {request.function_name} request {request.id}, attempt {request.attempts}")
                try:
                    result = await handler.execute({**request.arguments, "_request_id": request.id})
                    state = TerminalState.SUCCEEDED
                    break
                except Exception as exc:
                    error = f"{type(exc).__name__}: {exc}"
                    decision = self.retry_policy.decide(request.attempts, exc)
                    if decision.terminal_state is not None:
                        state = decision.terminal_state
                        break
                    logger.warning(
                        f"{request.function_name} request {request.id} failed on attempt {request.attempts} "
                        f"({error}); retrying in {decision.delay:.2f}s"
                    )
                    await self.sleep(decision.delay)

        outcome = ExecutionOutcome(
            request_id=request.id,
            function_name=request.function_name,
            conversation_id=request.conversation_id,
            message_id=request.message_id,
            state=state,
            result=result if state == TerminalState.SUCCEEDED else None,
            error=None if state == TerminalState.SUCCEEDED else error,
            attempts=request.attempts,
            elapsed_seconds=time.monotonic() - started,
        )
        if outcome.succeeded:
            logger.info(f"{request.function_name} request {request.id} succeeded after {outcome.attempts} attempt(s)")
        else:
            logger.warning(f"{request.function_name} request {request.id} ended as {state}: {error}")

        recorded = await self._record(outcome)
        emit_safely(
            self.metrics,
            "function_call_outcomes",
            tags={"function": request.function_name, "state": str(state)},
        )
        return outcome, recorded

    async def _record(self, outcome: ExecutionOutcome) -> bool:
        try:
            await self.audit_log.record(outcome)
        except ConflictError:
            logger.warning(f"Request {outcome.request_id} already has an outcome; keeping the first one")
            return False
        except Exception:
            logger.exception(f"Audit log failed to record outcome of {outcome.request_id}")
        return True

    async def _reflect(self, request: FunctionCallRequest, outcome: ExecutionOutcome) -> None:
        if self.history is None:
            return
        if outcome.succeeded:
            text = f"{request.function_name} succeeded: {json.dumps(outcome.result, default=str)}"
        else:
            text = f"{request.function_name} failed ({outcome.state}) after {outcome.attempts} attempt(s): {outcome.error}"
        message = Message(
            conversation_id=request.conversation_id,
            role=MessageRole.TOOL_CALL,
            owner_id=request.owner_id,
            character_id=request.character_id,
            text_content=text,
            metadata={
                "function_name": request.function_name,
                "request_id": request.id,
                "tool_call_id": request.tool_call_id,
                "source_message_id": request.message_id,
                "state": str(outcome.state),
            },
        )
        try:
            await self.history.append(request.conversation_id, [message])
        except Exception:
            logger.exception(f"Could not reflect outcome of {request.id} into conversation {request.conversation_id}")
