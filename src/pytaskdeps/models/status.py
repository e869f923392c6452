"""Status enumerations for task lifecycle tracking.

Defines the states a task moves through and the readiness policies the
scheduler uses to decide when a dependent may be visited.
"""

from __future__ import annotations

from enum import Enum


class TaskStatus(Enum):
    """Status of a task node in the dependency graph.

    Lifecycle:
        PENDING → IN_PROGRESS → COMPLETED/CANCELLED

    A PENDING task may also move straight to CANCELLED when one of its
    dependencies was cancelled or its handler cannot be resolved. Once a
    task is terminal its status never changes again.
    """

    PENDING = "PENDING"
    """Task is waiting for its dependencies or for the scheduler."""

    IN_PROGRESS = "IN_PROGRESS"
    """Task was claimed; its handler is running or awaiting external output."""

    COMPLETED = "COMPLETED"
    """Task finished and recorded its result."""

    CANCELLED = "CANCELLED"
    """Task was cancelled by propagation, by itself, or by an error."""

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (no more work needed)."""
        return self in (TaskStatus.COMPLETED, TaskStatus.CANCELLED)

    def can_transition_to(self, target: TaskStatus) -> bool:
        """Check whether moving from this status to ``target`` is allowed."""
        return target in _TRANSITIONS[self]

    def __str__(self) -> str:
        return self.value


_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


class ReadinessPolicy(Enum):
    """Which dependency statuses make a task a candidate for a scheduler visit.

    TERMINAL (default): every dependency is COMPLETED or CANCELLED.

    STARTED: every dependency is COMPLETED, CANCELLED or IN_PROGRESS. Tasks
    found this way are still re-checked by the runner, which refuses to
    start while any dependency is non-terminal, so the policy only changes
    which tasks get visited, never when they may leave PENDING.
    """

    TERMINAL = "TERMINAL"
    STARTED = "STARTED"

    @property
    def satisfied_by(self) -> tuple[TaskStatus, ...]:
        """Dependency statuses that satisfy this policy."""
        if self is ReadinessPolicy.STARTED:
            return (TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.IN_PROGRESS)
        return (TaskStatus.COMPLETED, TaskStatus.CANCELLED)

    def is_satisfied_by(self, status: TaskStatus) -> bool:
        return status in self.satisfied_by

    @classmethod
    def from_name(cls, name: str) -> ReadinessPolicy:
        """Parse a policy name case-insensitively.

        Raises:
            ValueError: If the name is not a known policy
        """
        try:
            return cls(name.strip().upper())
        except ValueError:
            valid = ", ".join(p.value for p in cls)
            raise ValueError(f"Unknown readiness policy {name!r} (expected one of: {valid})")

    def __str__(self) -> str:
        return self.value
