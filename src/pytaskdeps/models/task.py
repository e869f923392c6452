"""Task and dependency snapshot models.

A ``Task`` is an immutable snapshot of one row in the task store. Stores
hand out fresh snapshots on every read, so mutating a returned payload
never changes persisted state; all writes go through the store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pytaskdeps.models.status import TaskStatus


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


@dataclass(frozen=True)
class Task:
    """A node in the dependency graph.

    Attributes:
        id: Store-assigned identifier, increasing in creation order
        handler_name: Registry key of the runner that executes this task
        status: Current lifecycle status
        payload: Handler input and, after execution, its recorded state
        created_at: When the task was created
        updated_at: Last time status or payload changed
        completed_at: Set exactly once, when the task becomes COMPLETED
        payload_error: Why the stored payload could not be parsed, if it could not
    """

    id: int
    handler_name: str
    status: TaskStatus
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None
    payload_error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def __str__(self) -> str:
        return f"Task({self.id}, {self.handler_name}, {self.status})"


@dataclass(frozen=True)
class Dependency:
    """Edge meaning ``task_id`` cannot start until ``dependency_id`` is terminal."""

    task_id: int
    dependency_id: int


@dataclass(frozen=True)
class TaskWithDependencies:
    """A task together with snapshots of its direct dependencies.

    Loaded by a single store call so the runner sees one consistent view.
    Dependencies are ordered by ascending id.
    """

    task: Task
    dependencies: list[Task] = field(default_factory=list)

    @property
    def cancelled_dependency_ids(self) -> list[int]:
        return [d.id for d in self.dependencies if d.status is TaskStatus.CANCELLED]

    @property
    def any_dependency_cancelled(self) -> bool:
        return any(d.status is TaskStatus.CANCELLED for d in self.dependencies)

    @property
    def pending_dependency_ids(self) -> list[int]:
        """Ids of dependencies that are not terminal yet."""
        return [d.id for d in self.dependencies if not d.status.is_terminal]

    @property
    def all_dependencies_terminal(self) -> bool:
        return not self.pending_dependency_ids

    @property
    def completed_dependencies(self) -> list[Task]:
        return [d for d in self.dependencies if d.status is TaskStatus.COMPLETED]
