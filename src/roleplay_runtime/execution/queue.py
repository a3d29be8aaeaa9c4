"""
Bounded FIFO channel between chat turns and the function executor.

Producers are the concurrent chat / regenerate calls; the consumer is the
executor. When the queue is full, 'put' waits instead of dropping work. A caller
that cannot wait forever passes a timeout and gets 'QueueSaturated' back, which
the runtime reports to the chat caller. Closing the queue also fails every
producer still waiting for room, so nothing lands after shutdown has begun.
"""

import asyncio

from loguru import logger

from roleplay_runtime.errors import QueueSaturated
from roleplay_runtime.functions.base import FunctionCallRequest

DEFAULT_QUEUE_CAPACITY = 100


class ExecutionQueue:
    def __init__(self, capacity: int = DEFAULT_QUEUE_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("Queue capacity must be positive")
        self.capacity = capacity
        self._queue: asyncio.Queue[FunctionCallRequest] = asyncio.Queue(maxsize=capacity)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        """Refuse further requests and release blocked producers; already queued ones are still delivered."""
        self._closed.set()

    async def put(self, request: FunctionCallRequest, timeout: float | None = None) -> None:
        if self.closed:
            raise QueueSaturated("Execution queue is closed")
        putting = asyncio.ensure_future(self._queue.put(request))
        closing = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({putting, closing}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            enqueued = putting.done()
        finally:
            closing.cancel()
            putting.cancel()
        if not enqueued:
            if self.closed:
                raise QueueSaturated("Execution queue was closed while waiting for room")
            raise QueueSaturated(f"Execution queue stayed full ({self.capacity} requests) for {timeout}s")
        logger.debug(f"Enqueued {request.function_name} request {request.id} (size={self.qsize()})")

    async def get(self) -> FunctionCallRequest:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()

    def qsize(self) -> int:
        return self._queue.qsize()

    def full(self) -> bool:
        return self._queue.full()

    def empty(self) -> bool:
        return self._queue.empty()
