"""
Detail Write Buffer

Batches detail writes (create / create-completed / complete / fail) so a
step that makes dozens of API calls does not cost one round-trip per call.

DESIGN RULES:
- FIFO: operations reach the store in the order they were added
- Flush when the queue reaches max_size, or after flush_interval of idleness
- At most one timer armed at a time
- flush() is serialized; a caller that flushes waits for an in-flight flush
- A failed write is logged and dropped (no retries, never raises)
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine, List, Optional, Protocol, Set

from observability.models import BufferedDetailWrite

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 50
DEFAULT_FLUSH_INTERVAL = 5.0


class TimerHandle(Protocol):
    def cancel(self) -> Any: ...


class Scheduler(Protocol):
    """Timer + background task source. Injected so tests can drive time."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> Any: ...

    async def wait_pending(self) -> None: ...


class AsyncioScheduler:
    """
    Scheduler backed by the running event loop.

    Spawned tasks are held until they finish; the loop only keeps weak
    references to them.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending_tasks(self) -> Set[asyncio.Task]:
        return set(self._tasks)

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(_log_task_failure)
        return task

    async def wait_pending(self) -> None:
        """Await every spawned task that has not finished yet."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


def _log_task_failure(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.warning(f"Background detail flush failed: {task.exception()}")


WriteFn = Callable[[BufferedDetailWrite], Awaitable[None]]


class DetailBuffer:
    """
    FIFO queue of pending detail writes.

    Args:
        write: Coroutine applying one operation to the store
        max_size: Queue length that triggers an immediate flush
        flush_interval: Idle seconds before a timer flush
        scheduler: Timer source (AsyncioScheduler by default)
    """

    def __init__(
        self,
        write: WriteFn,
        max_size: int = DEFAULT_BUFFER_SIZE,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        scheduler: Optional[Scheduler] = None,
    ):
        self._write = write
        self.max_size = max_size
        self.flush_interval = flush_interval
        self._scheduler = scheduler or AsyncioScheduler()
        self._queue: List[BufferedDetailWrite] = []
        self._timer: Optional[TimerHandle] = None
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def pending(self) -> List[BufferedDetailWrite]:
        return list(self._queue)

    async def add(self, operation: BufferedDetailWrite) -> None:
        self._queue.append(operation)

        if len(self._queue) >= self.max_size:
            await self.flush()
        elif self._timer is None:
            self._timer = self._scheduler.call_later(self.flush_interval, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._scheduler.spawn(self.flush())

    async def flush(self) -> int:
        """
        Drain the queue into the store.

        Returns:
            Number of operations attempted
        """
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        async with self._lock:
            batch, self._queue = self._queue, []
            for operation in batch:
                try:
                    await self._write(operation)
                except Exception as e:
                    logger.warning(
                        f"Detail write failed ({operation.op.value} {operation.detail_id}): {e}"
                    )
            if batch:
                logger.debug(f"Flushed {len(batch)} detail operations")
            return len(batch)

    async def drain(self) -> int:
        """Wait for background flushes, then flush whatever is left (shutdown)."""
        await self._scheduler.wait_pending()
        return await self.flush()
