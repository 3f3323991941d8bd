import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, List, Optional

from awesome_index.domain.exceptions import RateLimitExceededException
from awesome_index.domain.models import RefreshTask, utcnow

logger = logging.getLogger(__name__)

# Pause after every task, and between polls of an empty queue
DEFAULT_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BASE_SECONDS = 30.0

TaskExecutor = Callable[[RefreshTask], Awaitable[object]]


@dataclass
class _PendingTask:
    task: RefreshTask
    attempts: int = 0
    not_before: Optional[datetime] = None


class RefreshQueue:
    """
    Deduplicated, order-preserving queue of refresh work drained by a single worker.

    Producers may enqueue concurrently; a task equal to one already pending is
    ignored. The worker runs one task at a time and pauses a fixed interval
    after each one to keep load on the remote source low.

    Failed tasks are retried with exponential backoff up to ``max_attempts``
    times. A rate-limited task waits for the limit to reset without using up
    an attempt.
    """

    def __init__(
        self,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_base_seconds: float = DEFAULT_RETRY_BASE_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self.retry_base_seconds = retry_base_seconds
        self.clock = clock
        self._pending: deque[_PendingTask] = deque()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._pending)

    async def enqueue(self, task: RefreshTask) -> bool:
        """Adds a task unless an equal one is already pending. Returns whether it was added."""
        async with self._lock:
            return self._push(_PendingTask(task=task))

    async def enqueue_many(self, tasks: Iterable[RefreshTask]) -> int:
        async with self._lock:
            return sum(1 for task in tasks if self._push(_PendingTask(task=task)))

    async def pending(self) -> List[RefreshTask]:
        async with self._lock:
            return [entry.task for entry in self._pending]

    async def run(self, executor: TaskExecutor) -> None:
        """Worker loop; runs until cancelled."""
        logger.info("Refresh worker started.")
        while True:
            await self.run_once(executor)
            await asyncio.sleep(self.interval_seconds)

    async def run_once(self, executor: TaskExecutor) -> bool:
        """
        Executes the first pending task that is due, if any.

        Returns:
            bool: True if a task was executed, whatever its outcome.
        """
        entry = await self._pop_due()
        if entry is None:
            return False

        try:
            await executor(entry.task)
            logger.debug(f"Task completed: {entry.task!r}")

        except RateLimitExceededException as e:
            logger.warning(f"Task {entry.task!r} hit the rate limit; postponing until {e.reset_at}.")
            entry.not_before = e.reset_at
            await self._requeue(entry)

        except Exception as e:
            entry.attempts += 1
            if entry.attempts >= self.max_attempts:
                logger.error(f"Task {entry.task!r} failed {entry.attempts} times, dropping it: {e}")
                return True

            delay = self.retry_base_seconds * 2 ** (entry.attempts - 1)
            entry.not_before = self.clock() + timedelta(seconds=delay)
            logger.warning(
                f"Task {entry.task!r} failed (attempt {entry.attempts}/{self.max_attempts}): {e}. "
                f"Retrying in {delay:.0f}s."
            )
            await self._requeue(entry)

        return True

    def _push(self, entry: _PendingTask) -> bool:
        # Callers hold the lock.
        if any(pending.task == entry.task for pending in self._pending):
            return False
        self._pending.append(entry)
        return True

    async def _requeue(self, entry: _PendingTask) -> None:
        async with self._lock:
            if not self._push(entry):
                logger.debug(f"Task {entry.task!r} was enqueued again meanwhile; not requeueing.")

    async def _pop_due(self) -> Optional[_PendingTask]:
        now = self.clock()
        async with self._lock:
            for index, entry in enumerate(self._pending):
                if entry.not_before is None or entry.not_before <= now:
                    del self._pending[index]
                    return entry
        return None
