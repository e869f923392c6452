"""
Task outcomes and dispatch results.

``execute_task`` returns a typed outcome instead of signalling through
exceptions. The base runner turns the outcome into a store transition, and
reports what happened to the scheduler as a ``DispatchResult``.

Example:
    ```python
    match outcome:
        case Completed(result):
            ...  # IN_PROGRESS -> COMPLETED, result merged into payload
        case AwaitingOutput(correlation_id):
            ...  # stays IN_PROGRESS, output collected on a later pass
        case Cancelled(reason, details):
            ...  # IN_PROGRESS -> CANCELLED, propagates to dependents
    ```
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

__all__ = [
    "Completed",
    "AwaitingOutput",
    "Cancelled",
    "TaskOutcome",
    "DispatchResult",
]


@dataclass(frozen=True)
class Completed:
    """The handler finished; ``result`` is merged into the task payload.

    The merge follows RFC 7396: a ``None`` value at any depth deletes that
    key instead of storing null, so ``{"result": {"why": None}}`` leaves no
    ``why`` key. Encode an explicit absence some other way (for example an
    empty string) when it must be kept.
    """

    result: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AwaitingOutput:
    """The handler submitted external work and the task stays IN_PROGRESS."""

    correlation_id: str


@dataclass(frozen=True)
class Cancelled:
    """The handler cancels its own task, e.g. because a business condition was not met.

    ``details`` is merged like ``Completed.result``, so ``None`` values are dropped.
    """

    reason: str
    details: dict[str, Any] = field(default_factory=dict)


TaskOutcome = Completed | AwaitingOutput | Cancelled


class DispatchResult(Enum):
    """What one runner invocation did to its task."""

    EXECUTED = "EXECUTED"
    """Task was completed by its handler."""

    AWAITING = "AWAITING"
    """Task was started and now waits for external output."""

    CANCELLED = "CANCELLED"
    """Task was cancelled by propagation or by its own handler."""

    FAILED = "FAILED"
    """Task was cancelled because of an error."""

    NOT_READY = "NOT_READY"
    """A dependency is not terminal yet; task untouched."""

    WAITING = "WAITING"
    """External output is not available yet; task untouched."""

    SKIPPED = "SKIPPED"
    """Task was already terminal or another caller claimed it first."""

    @property
    def changed_state(self) -> bool:
        return self in (
            DispatchResult.EXECUTED,
            DispatchResult.AWAITING,
            DispatchResult.CANCELLED,
            DispatchResult.FAILED,
        )

    def __str__(self) -> str:
        return self.value
