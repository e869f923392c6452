"""Periodic worker that re-runs the scheduler.

Two-phase runners hand their work to an external facility and return, so
the readiness loop has to be invoked again later to collect results. The
worker does that on a fixed interval, optionally followed by garbage
collection, and keeps running when a tick fails.

Features:
- Builder configuration (poll interval, garbage collection)
- Non-blocking start returning a WorkerHandle
- Graceful shutdown between ticks
"""

from __future__ import annotations

import asyncio
import logging
import os

from pytaskdeps.executor.collector import GarbageCollector
from pytaskdeps.executor.scheduler import Scheduler
from pytaskdeps.models import RunSummary

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 60.0


class Worker:
    """Runs ``scheduler.run_pending()`` every poll interval.

    Design Patterns:
    - Template Method: _run() defines the fixed tick loop
    - Builder: with_poll_interval(), with_garbage_collection() for configuration

    Usage:
        worker = Worker(scheduler, "worker-1") \\
            .with_poll_interval(30.0) \\
            .with_garbage_collection(GarbageCollector(store))

        handle = await worker.start()
        # ... let it run ...
        await handle.shutdown()
    """

    def __init__(self, scheduler: Scheduler, worker_id: str):
        """Initialize worker.

        Args:
            scheduler: Scheduler whose readiness loop is run on every tick
            worker_id: Identifier used in log messages
        """
        self._scheduler = scheduler
        self._worker_id = worker_id
        self._poll_interval = DEFAULT_POLL_INTERVAL
        self._collector: GarbageCollector | None = None

        self._shutdown_event = asyncio.Event()
        self._running = False
        self._ticks = 0
        self._last_summary: RunSummary | None = None

    def with_poll_interval(self, interval: float) -> Worker:
        """Configure seconds between ticks (builder pattern).

        Returns:
            self for method chaining
        """
        if interval <= 0:
            raise ValueError(f"Poll interval must be positive, got {interval}")
        self._poll_interval = interval
        return self

    def with_garbage_collection(self, collector: GarbageCollector) -> Worker:
        """Run the collector after every tick."""
        self._collector = collector
        return self

    def from_env(self) -> Worker:
        """Read ``PYTASKDEPS_POLL_INTERVAL`` (seconds) if set.

        Raises:
            WorkerError: If the value is not a positive number
        """
        interval = os.environ.get("PYTASKDEPS_POLL_INTERVAL")
        if interval:
            try:
                self.with_poll_interval(float(interval))
            except ValueError as e:
                raise WorkerError(f"Invalid PYTASKDEPS_POLL_INTERVAL: {e}") from e
        return self

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def ticks(self) -> int:
        """Number of completed ticks."""
        return self._ticks

    @property
    def last_summary(self) -> RunSummary | None:
        return self._last_summary

    async def start(self) -> WorkerHandle:
        """Start the tick loop in the background.

        Returns WorkerHandle immediately, letting caller decide
        whether to await or run concurrently.
        """
        self._running = True
        self._shutdown_event.clear()
        task = asyncio.create_task(self._run())
        return WorkerHandle(self, task)

    async def run_once(self) -> RunSummary:
        """Run one tick: the readiness loop, then garbage collection if configured."""
        summary = await self._scheduler.run_pending()
        if self._collector is not None:
            await self._collector.collect()
        self._ticks += 1
        self._last_summary = summary
        logger.info(f"Worker {self._worker_id} tick {self._ticks}: {summary}")
        return summary

    async def _run(self) -> None:
        logger.info(f"Worker {self._worker_id} started (interval={self._poll_interval}s)")
        while self._running and not self._shutdown_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Worker {self._worker_id} tick failed: {e}")

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._poll_interval)
            except TimeoutError:
                pass
        logger.info(f"Worker {self._worker_id} stopped")

    async def shutdown(self) -> None:
        """Stop after the current tick finishes."""
        logger.info(f"Worker {self._worker_id} shutting down...")
        self._running = False
        self._shutdown_event.set()


class WorkerHandle:
    """Handle for controlling a running worker.

    Usage:
        handle = await worker.start()
        await handle.shutdown()
    """

    def __init__(self, worker: Worker, task: asyncio.Task):
        self._worker = worker
        self._task = task

    def worker_id(self) -> str:
        return self._worker.worker_id

    def is_running(self) -> bool:
        """Return True if the worker task is still running."""
        return not self._task.done()

    async def shutdown(self) -> None:
        """Shutdown worker and wait for the loop to exit."""
        await self._worker.shutdown()
        await self._task
        logger.info("Worker handle closed")

    def abort(self) -> None:
        """Cancel the worker immediately, possibly mid-tick.

        Tasks claimed by an interrupted tick stay IN_PROGRESS.
        """
        self._task.cancel()


class WorkerError(Exception):
    """Worker configuration or operation failed."""

    pass
