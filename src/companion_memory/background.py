"""
Best-effort background task queue.

Fire-and-forget work (saving raw chat messages, for example) is pushed
onto a bounded queue and executed by a fixed number of workers. When the
queue is full the task is dropped and logged. Failures never propagate
to the submitter; they are logged and published on an error channel
that callers may drain or observe through a callback.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable

from loguru import logger

from .config import BackgroundConfig

TaskFactory = Callable[[], Awaitable[object]]


@dataclass
class BackgroundFailure:
    """A background task that raised."""

    name: str
    error: BaseException
    timestamp: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


@dataclass
class _Job:
    name: str
    factory: TaskFactory


class BackgroundTaskQueue:
    """Bounded worker pool for best-effort tasks."""

    def __init__(
        self,
        config: BackgroundConfig | None = None,
        on_error: Callable[[BackgroundFailure], None] | None = None,
    ):
        """
        Args:
            config: Queue size, worker count and error channel size
            on_error: Optional synchronous callback for every failure
        """
        self.config = config or BackgroundConfig()
        self._queue: asyncio.Queue[_Job] = asyncio.Queue(
            maxsize=self.config.max_queue_size
        )
        self._errors: asyncio.Queue[BackgroundFailure] = asyncio.Queue(
            maxsize=self.config.error_channel_size
        )
        self._on_error = on_error
        self._workers: list[asyncio.Task] = []
        self._running = False

        self.total_submitted = 0
        self.total_completed = 0
        self.total_failed = 0
        self.total_dropped = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        """Start the workers."""
        if self._running:
            logger.warning("BackgroundTaskQueue is already running")
            return

        self._running = True
        for i in range(self.config.worker_count):
            self._workers.append(
                asyncio.create_task(self._worker(i), name=f"memory_background_{i}")
            )
        logger.info(
            f"BackgroundTaskQueue started ({self.config.worker_count} workers, "
            f"max {self.config.max_queue_size} queued)"
        )

    async def stop(self, timeout: float = 5.0) -> None:
        """Let queued tasks finish for up to ``timeout`` seconds, then cancel."""
        if not self._running:
            return

        self._running = False
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"BackgroundTaskQueue stopped with {self._queue.qsize()} "
                f"tasks still queued"
            )

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        logger.info("BackgroundTaskQueue stopped")

    def submit(self, name: str, factory: TaskFactory) -> bool:
        """Queue a task without waiting.

        Args:
            name: Label used in logs and failure records
            factory: Zero-argument callable returning the awaitable to run

        Returns:
            True if queued, False if dropped
        """
        if not self._running:
            self.total_dropped += 1
            logger.warning(f"Background task dropped, queue not running: {name}")
            return False

        try:
            self._queue.put_nowait(_Job(name=name, factory=factory))
        except asyncio.QueueFull:
            self.total_dropped += 1
            logger.warning(f"Background task dropped, queue full: {name}")
            return False

        self.total_submitted += 1
        return True

    async def join(self) -> None:
        """Wait until every queued task has run."""
        await self._queue.join()

    def drain_errors(self) -> list[BackgroundFailure]:
        """Remove and return all failures recorded so far."""
        failures = []
        while True:
            try:
                failures.append(self._errors.get_nowait())
            except asyncio.QueueEmpty:
                return failures

    async def _worker(self, worker_id: int) -> None:
        logger.debug(f"Background worker {worker_id} started")
        while True:
            job = await self._queue.get()
            try:
                await job.factory()
                self.total_completed += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._record_failure(BackgroundFailure(name=job.name, error=e))
            finally:
                self._queue.task_done()

    def _record_failure(self, failure: BackgroundFailure) -> None:
        self.total_failed += 1
        logger.warning(f"Background task {failure.name} failed: {failure.error}")

        if self._errors.full():
            # Oldest failure makes room for the newest.
            self._errors.get_nowait()
        self._errors.put_nowait(failure)

        if self._on_error is not None:
            try:
                self._on_error(failure)
            except Exception as e:
                logger.error(f"Background error callback failed: {e}")
