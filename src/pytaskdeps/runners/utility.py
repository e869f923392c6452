"""Aggregation and gate runners that work on upstream values.

- MedianRunner: median of whatever upstream values are available
- ThresholdGateRunner: cancels itself when an upstream value is too small
- ConstantRunner: completes immediately, optionally recording fixed output
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from pytaskdeps.models import TaskStatus, TaskWithDependencies
from pytaskdeps.runners.base import BaseRunner
from pytaskdeps.runners.errors import ConfigurationError, DependencyDataError, DependencyError
from pytaskdeps.runners.outcome import Cancelled, Completed, TaskOutcome

DEFAULT_VALUE_FIELD = "value"
DEFAULT_THRESHOLD = 1e-11


def median(values: Sequence[float]) -> float:
    """Median with the even/odd rule; an empty sequence gives 0.

    Examples:
        >>> median([1, 3])
        2.0
        >>> median([3, 1, 2])
        2
        >>> median([])
        0
    """
    if not values:
        return 0
    ordered = sorted(values)
    middle = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[middle - 1] + ordered[middle]) / 2
    return ordered[middle]


class MedianRunner(BaseRunner):
    """Record the median of every available upstream value.

    Opts out of cancellation checking: cancelled dependencies and
    dependencies whose value cannot be read are left out, and the median of
    the remaining values is recorded (0 when none remain).

    Payload:
        valueField: Field to read from each dependency (default "value")
        sourceHandler: Only read dependencies with this handler name (optional)
    """

    def should_check_cancelled_dependencies(self) -> bool:
        return False

    async def execute_task(self, work: TaskWithDependencies) -> TaskOutcome:
        task_id = work.task.id
        field = work.task.payload.get("valueField", DEFAULT_VALUE_FIELD)
        source_handler = work.task.payload.get("sourceHandler")

        values: list[float] = []
        source_ids: list[int] = []
        for dependency in work.dependencies:
            if source_handler and dependency.handler_name != source_handler:
                continue
            if dependency.status is not TaskStatus.COMPLETED:
                self.log(
                    logging.DEBUG,
                    "Skipping dependency that did not complete",
                    task_id=task_id,
                    dependency_id=dependency.id,
                    status=dependency.status,
                )
                continue
            try:
                values.append(await self.read_dependency_value(dependency, field))
            except DependencyDataError as e:
                self.log(logging.WARNING, "Skipping dependency", task_id=task_id, error=str(e))
                continue
            source_ids.append(dependency.id)

        result = median(values)
        self.log(logging.INFO, "Median computed", task_id=task_id, median=result, sources=len(values))
        return Completed({"median": result, "sourceValues": values, "sourceTaskIds": source_ids})


class ThresholdGateRunner(BaseRunner):
    """Pass an upstream value through only if it exceeds a threshold.

    When the value does not exceed the threshold the gate cancels itself,
    which cancels everything depending on it.

    Payload:
        threshold: Minimum (exclusive) value (default 1e-11)
        valueField: Field to read from the upstream task (default "value")
    """

    async def execute_task(self, work: TaskWithDependencies) -> TaskOutcome:
        task_id = work.task.id
        threshold = work.task.payload.get("threshold", DEFAULT_THRESHOLD)
        if isinstance(threshold, bool) or not isinstance(threshold, int | float):
            raise ConfigurationError(f"Invalid threshold {threshold!r}", task_id, self.runner_name)
        field = work.task.payload.get("valueField", DEFAULT_VALUE_FIELD)

        value, source_id = await self._first_value(work, field)
        if value > threshold:
            return Completed(
                {
                    "value": value,
                    "threshold": threshold,
                    "exceedsThreshold": True,
                    "sourceTaskId": source_id,
                }
            )

        self.log(logging.INFO, "Threshold not met", task_id=task_id, value=value, threshold=threshold)
        return Cancelled(
            "threshold_not_met",
            {
                "value": value,
                "threshold": threshold,
                "exceedsThreshold": False,
                "sourceTaskId": source_id,
            },
        )

    async def _first_value(self, work: TaskWithDependencies, field: str) -> tuple[float, int]:
        for dependency in work.completed_dependencies:
            try:
                return await self.read_dependency_value(dependency, field), dependency.id
            except DependencyDataError as e:
                self.log(logging.WARNING, "Skipping dependency", task_id=work.task.id, error=str(e))
        raise DependencyError(
            f"No upstream {field!r} value available", work.task.id, self.runner_name
        )


class ConstantRunner(BaseRunner):
    """Complete immediately.

    Payload:
        output: Dict merged into the payload on completion (optional)
    """

    async def execute_task(self, work: TaskWithDependencies) -> TaskOutcome:
        output: Any = work.task.payload.get("output", {})
        if not isinstance(output, dict):
            raise ConfigurationError(
                f"'output' must be an object, got {type(output).__name__}",
                work.task.id,
                self.runner_name,
            )
        return Completed(dict(output))
