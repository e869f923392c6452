"""
Scheduler - the readiness loop and dispatcher.

Design Principle: Single Responsibility
The scheduler decides WHICH tasks to visit and WHAT to do with errors.
Runners decide whether a visited task can start and how it finishes.

Algorithm (``run_pending``), repeated until a pass changes nothing:
1. Ask the store for every non-terminal task whose dependencies satisfy the
   readiness policy (one query, ascending id order).
2. Dispatch each: PENDING tasks to ``initiate_task``, IN_PROGRESS tasks to
   ``check_output``.
3. Record errors in the failing task's payload and cancel it. Errors never
   escape the batch run; the returned RunSummary is the feedback surface.

Completing one task can unblock its dependents, which the next pass picks
up; a chain of N tasks therefore completes in one call, in N passes.

Configuration uses builder methods or ``from_env()``:
    PYTASKDEPS_READINESS    TERMINAL (default) or STARTED
    PYTASKDEPS_MAX_PASSES   safety bound on passes per call (default 10000)
    PYTASKDEPS_CONCURRENCY  tasks dispatched concurrently per pass (default 1)
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from datetime import datetime

from pytaskdeps.executor.registry import RunnerRegistry
from pytaskdeps.facility import BatchFacility, FacilityError
from pytaskdeps.models import ReadinessPolicy, RunSummary, Task, TaskStatus, utc_now
from pytaskdeps.runners import (
    ConfigurationError,
    DispatchResult,
    RunnerContext,
    RunnerError,
    TaskNotFoundError,
)
from pytaskdeps.storage import StorageError, TaskStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_PASSES = 10_000


class Scheduler:
    """
    Drives PENDING tasks through their runners until nothing changes.

    All dependencies passed explicitly, no globals.

    Usage:
        store = await open_store("sqlite:///tasks.db")
        scheduler = Scheduler(store, default_registry(), facility).with_concurrency(4)
        summary = await scheduler.run_pending()
        print(summary.executed, summary.failed, summary.skipped)
    """

    def __init__(
        self,
        store: TaskStore,
        registry: RunnerRegistry,
        facility: BatchFacility | None = None,
    ):
        self._store = store
        self._registry = registry
        self._facility = facility
        self._readiness = ReadinessPolicy.TERMINAL
        self._max_passes = DEFAULT_MAX_PASSES
        self._concurrency = 1
        self._clock: Callable[[], datetime] = utc_now

    def __repr__(self) -> str:
        return (
            f"Scheduler(store={self._store!r}, readiness={self._readiness}, "
            f"concurrency={self._concurrency})"
        )

    # ========================================================================
    # Builder configuration
    # ========================================================================

    def with_readiness(self, policy: ReadinessPolicy) -> Scheduler:
        """Set the readiness policy used to find candidate tasks (builder pattern)."""
        self._readiness = policy
        return self

    def with_max_passes(self, max_passes: int) -> Scheduler:
        """Bound the number of readiness scans per ``run_pending`` call."""
        if max_passes < 1:
            raise ValueError(f"max_passes must be positive, got {max_passes}")
        self._max_passes = max_passes
        return self

    def with_concurrency(self, concurrency: int) -> Scheduler:
        """Dispatch up to ``concurrency`` ready tasks of one pass concurrently.

        Tasks in the same pass are independent (their dependencies are all
        satisfied), and every claim is a compare-and-set, so concurrent
        dispatch never runs a task twice.
        """
        if concurrency < 1:
            raise ValueError(f"concurrency must be positive, got {concurrency}")
        self._concurrency = concurrency
        return self

    def with_clock(self, clock: Callable[[], datetime]) -> Scheduler:
        """Override the time source used for payload timestamps (tests)."""
        self._clock = clock
        return self

    def from_env(self) -> Scheduler:
        """Read configuration from ``PYTASKDEPS_*`` environment variables.

        Raises:
            SchedulerError: If a variable holds an invalid value
        """
        readiness = os.environ.get("PYTASKDEPS_READINESS")
        max_passes = os.environ.get("PYTASKDEPS_MAX_PASSES")
        concurrency = os.environ.get("PYTASKDEPS_CONCURRENCY")
        try:
            if readiness:
                self.with_readiness(ReadinessPolicy.from_name(readiness))
            if max_passes:
                self.with_max_passes(int(max_passes))
            if concurrency:
                self.with_concurrency(int(concurrency))
        except ValueError as e:
            raise SchedulerError(f"Invalid scheduler configuration: {e}") from e
        return self

    @property
    def store(self) -> TaskStore:
        return self._store

    @property
    def registry(self) -> RunnerRegistry:
        return self._registry

    @property
    def readiness(self) -> ReadinessPolicy:
        return self._readiness

    # ========================================================================
    # Execution
    # ========================================================================

    async def run_pending(self) -> RunSummary:
        """Run the readiness loop to a fixed point.

        Returns:
            Counts of executed, failed, cancelled, skipped (still blocked)
            and awaiting (still IN_PROGRESS) tasks
        """
        summary = RunSummary()
        while summary.passes < self._max_passes:
            ready = await self._store.find_ready_tasks(self._readiness)
            summary.passes += 1
            if not ready:
                break

            changed = False
            for result in await self._dispatch_all(ready):
                self._record(summary, result)
                changed = changed or result.changed_state
            if not changed:
                break
        else:
            logger.warning(
                f"Readiness loop stopped after {self._max_passes} passes without reaching a fixed point"
            )

        counts = await self._store.count_by_status()
        summary.skipped = counts.pending
        summary.awaiting = counts.in_progress
        logger.info(f"Run finished: {summary}")
        return summary

    async def run_task(self, task_id: int) -> DispatchResult:
        """Visit a single task once, regardless of the readiness policy.

        The runner still refuses to start the task while a dependency is
        non-terminal, so this is safe to call at any time.
        """
        task = await self._store.get_task(task_id)
        if task is None:
            logger.error(f"Task {task_id} not found")
            return DispatchResult.FAILED
        return await self._dispatch(task)

    async def _dispatch_all(self, tasks: list[Task]) -> list[DispatchResult]:
        if self._concurrency <= 1:
            return [await self._dispatch(task) for task in tasks]

        semaphore = asyncio.Semaphore(self._concurrency)

        async def bounded(task: Task) -> DispatchResult:
            async with semaphore:
                return await self._dispatch(task)

        # gather preserves input order, so results stay in ascending id order.
        # The whole batch settles before a storage error is raised.
        outcomes = await asyncio.gather(*(bounded(task) for task in tasks), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return list(outcomes)

    async def _dispatch(self, task: Task) -> DispatchResult:
        if task.is_terminal:
            return DispatchResult.SKIPPED

        context = RunnerContext(store=self._store, facility=self._facility, clock=self._clock)
        try:
            runner = self._registry.resolve(task.handler_name, task.payload, context, task.id)
            if task.status is TaskStatus.PENDING:
                result = await runner.initiate_task(task.id)
            else:
                result = await runner.check_output(task.id)
        except StorageError:
            raise
        except Exception as e:
            return await self._handle_error(task, e)

        logger.debug(f"Task {task.id} ({task.handler_name}): {result}")
        return result

    async def _handle_error(self, task: Task, error: Exception) -> DispatchResult:
        """Classify an error by kind and record it on the task."""
        if isinstance(error, RunnerError | FacilityError) and error.is_retryable():
            logger.debug(f"Task {task.id} not ready yet: {error}")
            return DispatchResult.WAITING

        if isinstance(error, TaskNotFoundError):
            logger.error(f"Task {task.id} vanished while being scheduled")
            return DispatchResult.FAILED

        if isinstance(error, ConfigurationError):
            logger.error(f"Task {task.id} ({task.handler_name}) misconfigured: {error}")
        else:
            logger.exception(f"Task {task.id} ({task.handler_name}) failed: {error}")

        if await self._cancel_failed(task.id, error):
            return DispatchResult.FAILED
        return DispatchResult.SKIPPED

    async def _cancel_failed(self, task_id: int, error: Exception) -> bool:
        """Move a failed task to CANCELLED from whichever non-terminal state it is in."""
        patch = {
            "error": {
                "kind": getattr(error, "kind", type(error).__name__),
                "message": str(error),
            },
            "cancelReason": "error",
            "cancelledAt": self._clock().isoformat(),
        }
        task = await self._store.get_task(task_id)
        while task is not None and not task.is_terminal:
            if await self._store.transition_status(task_id, task.status, TaskStatus.CANCELLED, patch):
                return True
            task = await self._store.get_task(task_id)
        return False

    @staticmethod
    def _record(summary: RunSummary, result: DispatchResult) -> None:
        if result in (DispatchResult.EXECUTED, DispatchResult.AWAITING):
            summary.executed += 1
        elif result is DispatchResult.CANCELLED:
            summary.cancelled += 1
        elif result is DispatchResult.FAILED:
            summary.failed += 1


class SchedulerError(Exception):
    """Scheduler configuration or operation failed."""

    pass
