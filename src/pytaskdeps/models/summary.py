"""Run and store summaries reported back to callers."""

from __future__ import annotations

from dataclasses import dataclass

from pytaskdeps.models.status import TaskStatus


@dataclass
class RunSummary:
    """Outcome counts of one ``Scheduler.run_pending()`` invocation.

    Attributes:
        executed: Handler invocations that advanced a task (started it,
            completed it, or collected its external output)
        failed: Tasks moved to CANCELLED because of an error
        skipped: PENDING tasks still blocked when the loop reached its fixed point
        cancelled: Tasks cancelled by propagation or by their own handler
        awaiting: IN_PROGRESS tasks still waiting for external output at the end
        passes: Number of readiness scans performed
    """

    executed: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: int = 0
    awaiting: int = 0
    passes: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "executed": self.executed,
            "failed": self.failed,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "awaiting": self.awaiting,
            "passes": self.passes,
        }

    def __str__(self) -> str:
        return (
            f"executed={self.executed} failed={self.failed} skipped={self.skipped} "
            f"cancelled={self.cancelled} awaiting={self.awaiting} passes={self.passes}"
        )


@dataclass(frozen=True)
class TaskSummary:
    """Task counts per status across the whole store."""

    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    cancelled: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.in_progress + self.completed + self.cancelled

    @classmethod
    def from_counts(cls, counts: dict[TaskStatus, int]) -> TaskSummary:
        return cls(
            pending=counts.get(TaskStatus.PENDING, 0),
            in_progress=counts.get(TaskStatus.IN_PROGRESS, 0),
            completed=counts.get(TaskStatus.COMPLETED, 0),
            cancelled=counts.get(TaskStatus.CANCELLED, 0),
        )

    def as_dict(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "in_progress": self.in_progress,
            "completed": self.completed,
            "cancelled": self.cancelled,
            "total": self.total,
        }
