"""
Runner contract and shared base behaviour.

Every handler is constructed from its task payload and a ``RunnerContext``
and exposes ``initiate_task(task_id)``. ``BaseRunner`` implements the steps
every handler shares, so concrete runners only write ``execute_task``:

1. Load the task and its direct dependencies in one store call.
2. Cancel the task without running it when a dependency is CANCELLED
   (unless ``should_check_cancelled_dependencies()`` returns False).
3. Return NOT_READY, untouched, while any dependency is non-terminal.
4. Claim the task with a PENDING -> IN_PROGRESS compare-and-set, so a
   task is never dispatched twice.
5. Run ``execute_task`` and apply the ``TaskOutcome`` it returns.
   Exceptions propagate to the scheduler.
6. Release runner-local resources (``open``/``close``) on every exit path.
"""

from __future__ import annotations

import json
import logging
import math
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, ClassVar, Protocol, runtime_checkable

from pytaskdeps.facility import BatchFacility, FacilityError
from pytaskdeps.models import Task, TaskStatus, TaskWithDependencies, utc_now
from pytaskdeps.runners.errors import (
    ConfigurationError,
    DependencyDataError,
    TaskNotFoundError,
)
from pytaskdeps.runners.outcome import (
    AwaitingOutput,
    Cancelled,
    Completed,
    DispatchResult,
    TaskOutcome,
)
from pytaskdeps.storage import TaskStore

logger = logging.getLogger(__name__)

CORRELATION_KEY = "correlationId"
"""Payload key under which two-phase runners persist their correlation id."""


@dataclass
class RunnerContext:
    """Collaborators a runner may use. Passed explicitly, never global."""

    store: TaskStore
    facility: BatchFacility | None = None
    clock: Callable[[], datetime] = utc_now

    def now_iso(self) -> str:
        return self.clock().isoformat()


@runtime_checkable
class Runner(Protocol):
    """Capability interface the scheduler dispatches to."""

    async def initiate_task(self, task_id: int) -> DispatchResult: ...

    async def check_output(self, task_id: int) -> DispatchResult: ...


def parse_facility_output(output: Any, correlation_id: str | None = None) -> dict[str, Any]:
    """Normalize a raw facility output into a dict.

    Outputs that carry their body as JSON text under ``"content"`` (the
    shape chat-completion style services return) are decoded.

    Raises:
        FacilityError: If the output is not an object or its content is not JSON
    """
    if not isinstance(output, dict):
        raise FacilityError(f"Output is not an object: {output!r}", correlation_id)
    content = output.get("content")
    if not isinstance(content, str):
        return output
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as e:
        raise FacilityError(f"Output content is not valid JSON: {e}", correlation_id) from e
    if not isinstance(parsed, dict):
        raise FacilityError(f"Output content is not an object: {parsed!r}", correlation_id)
    return parsed


class BaseRunner(ABC):
    """
    Shared implementation of the runner contract.

    Subclasses implement ``execute_task`` and may override
    ``should_check_cancelled_dependencies``, ``open`` and ``close``.

    Usage:
        class DoubleRunner(BaseRunner):
            async def execute_task(self, work):
                return Completed({"value": work.task.payload["value"] * 2})
    """

    name: ClassVar[str | None] = None
    """Registry name; defaults to the class name."""

    def __init__(self, payload: dict[str, Any], context: RunnerContext):
        self.payload = payload
        self.context = context

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"

    @property
    def store(self) -> TaskStore:
        return self.context.store

    @property
    def runner_name(self) -> str:
        return self.name or type(self).__name__

    def should_check_cancelled_dependencies(self) -> bool:
        """Whether a CANCELLED dependency cancels this task before it runs."""
        return True

    async def open(self) -> None:
        """Acquire runner-local resources before the task is processed."""
        pass

    async def close(self) -> None:
        """Release runner-local resources. Always called, even on error."""
        pass

    @abstractmethod
    async def execute_task(self, work: TaskWithDependencies) -> TaskOutcome:
        """Run the handler's own logic on a claimed (IN_PROGRESS) task."""
        pass

    async def initiate_task(self, task_id: int) -> DispatchResult:
        await self.open()
        try:
            return await self._initiate(task_id)
        finally:
            await self.close()

    async def check_output(self, task_id: int) -> DispatchResult:
        """Collect external output for an IN_PROGRESS task.

        Synchronous handlers finish within ``initiate_task``, so an
        IN_PROGRESS task of theirs is being run by another caller (or was
        interrupted). It is left alone rather than dispatched a second time.
        """
        self.log(logging.DEBUG, "No output to collect for synchronous handler", task_id=task_id)
        return DispatchResult.WAITING

    async def _initiate(self, task_id: int) -> DispatchResult:
        work = await self.store.get_task_with_dependencies(task_id)
        if work is None:
            raise TaskNotFoundError(task_id)

        task = work.task
        if task.status is not TaskStatus.PENDING:
            self.log(logging.DEBUG, "Task already started", task_id=task_id, status=task.status)
            return DispatchResult.SKIPPED

        if self.should_check_cancelled_dependencies() and work.any_dependency_cancelled:
            cancelled_ids = work.cancelled_dependency_ids
            self.log(
                logging.INFO,
                "Dependency cancelled, cancelling task",
                task_id=task_id,
                dependencies=cancelled_ids,
            )
            changed = await self.store.transition_status(
                task_id,
                TaskStatus.PENDING,
                TaskStatus.CANCELLED,
                {
                    "cancelReason": "dependency_cancelled",
                    "cancelledDependencyIds": cancelled_ids,
                    "cancelledAt": self.context.now_iso(),
                },
            )
            return DispatchResult.CANCELLED if changed else DispatchResult.SKIPPED

        waiting_on = work.pending_dependency_ids
        if waiting_on:
            self.log(logging.DEBUG, "Dependencies not finished", task_id=task_id, waiting_on=waiting_on)
            return DispatchResult.NOT_READY

        if not await self.store.transition_status(task_id, TaskStatus.PENDING, TaskStatus.IN_PROGRESS):
            self.log(logging.DEBUG, "Task claimed by another caller", task_id=task_id)
            return DispatchResult.SKIPPED

        claimed = replace(work, task=replace(task, status=TaskStatus.IN_PROGRESS))
        self.log(logging.DEBUG, "Executing task", task_id=task_id)
        try:
            outcome = await self.execute_task(claimed)
        except Exception as e:
            self.log(logging.WARNING, "execute_task raised", task_id=task_id, error=repr(e))
            raise

        return await self.apply_outcome(task_id, outcome)

    async def apply_outcome(self, task_id: int, outcome: TaskOutcome) -> DispatchResult:
        """Write the outcome of an IN_PROGRESS task to the store."""
        match outcome:
            case Completed(result=result):
                patch = {**result, "completedAt": self.context.now_iso()}
                if await self.store.transition_status(
                    task_id, TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, patch
                ):
                    self.log(logging.INFO, "Task completed", task_id=task_id)
                    return DispatchResult.EXECUTED
            case AwaitingOutput(correlation_id=correlation_id):
                self.log(
                    logging.INFO,
                    "Awaiting external output",
                    task_id=task_id,
                    correlation_id=correlation_id,
                )
                return DispatchResult.AWAITING
            case Cancelled(reason=reason, details=details):
                patch = {**details, "cancelReason": reason, "cancelledAt": self.context.now_iso()}
                if await self.store.transition_status(
                    task_id, TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED, patch
                ):
                    self.log(logging.INFO, "Task cancelled itself", task_id=task_id, reason=reason)
                    return DispatchResult.CANCELLED
            case _:
                raise ConfigurationError(
                    f"execute_task returned {outcome!r}, expected a TaskOutcome",
                    task_id,
                    self.runner_name,
                )

        self.log(logging.WARNING, "Task changed state while running, outcome dropped", task_id=task_id)
        return DispatchResult.SKIPPED

    # ========================================================================
    # Dependency inspection
    # ========================================================================

    async def dependency_output(self, dependency: Task) -> dict[str, Any]:
        """Return what a dependency produced.

        Two-phase dependencies are read through the facility using the
        correlation id in their payload; the stored output is a repeatable
        read, so this is safe to call from any number of dependents.

        Raises:
            DependencyDataError: If the output is missing or unusable
        """
        if dependency.payload_error:
            raise DependencyDataError(
                f"Dependency {dependency.id} has an unreadable payload: {dependency.payload_error}",
                runner_name=self.runner_name,
                dependency_id=dependency.id,
            )

        correlation_id = dependency.payload.get(CORRELATION_KEY)
        if correlation_id is None:
            return dependency.payload

        if self.context.facility is None:
            raise DependencyDataError(
                f"Dependency {dependency.id} has a correlation id but no facility is configured",
                runner_name=self.runner_name,
                dependency_id=dependency.id,
            )
        try:
            output = await self.context.facility.fetch(correlation_id)
            return parse_facility_output(output, correlation_id)
        except FacilityError as e:
            raise DependencyDataError(
                f"Could not retrieve output of dependency {dependency.id}: {e}",
                runner_name=self.runner_name,
                dependency_id=dependency.id,
            ) from e

    async def read_dependency_value(self, dependency: Task, field: str) -> float:
        """Read a finite numeric ``field`` from a dependency's output.

        The field is looked up at the top level, then under ``"result"``.

        Raises:
            DependencyDataError: If the field is missing or not a finite number
        """
        output = await self.dependency_output(dependency)
        value = output.get(field)
        if value is None and isinstance(output.get("result"), dict):
            value = output["result"].get(field)

        if isinstance(value, bool) or not isinstance(value, int | float) or not math.isfinite(value):
            raise DependencyDataError(
                f"Dependency {dependency.id} has no numeric {field!r} (got {value!r})",
                runner_name=self.runner_name,
                dependency_id=dependency.id,
            )
        return value

    def require_payload(self, key: str, task_id: int | None = None) -> Any:
        """Return a required payload field.

        Raises:
            ConfigurationError: If the field is missing
        """
        if key not in self.payload:
            raise ConfigurationError(f"Missing required payload field {key!r}", task_id, self.runner_name)
        return self.payload[key]

    def log(self, level: int, message: str, **context: Any) -> None:
        """Structured log line: runner name, message and key=value context.

        The context is also attached to the record as ``extra`` fields so
        structured handlers can pick it up.
        """
        fields = " ".join(f"{key}={value}" for key, value in context.items())
        logger.log(
            level,
            f"{self.runner_name}: {message}" + (f" [{fields}]" if fields else ""),
            extra={"runner": self.runner_name, "context": context},
        )
