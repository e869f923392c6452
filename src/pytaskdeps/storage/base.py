"""
TaskStore - abstract interface for task graph persistence.

Design Pattern: Adapter Pattern
TaskStore defines the target interface that every storage backend
implements. SQLite, Redis and in-memory backends adapt to it, and the
scheduler, runners and collector depend only on this abstraction.

All coordination between overlapping scheduler invocations is expressed as
conditional updates against the store (``transition_status`` is a
compare-and-set), never as in-process locks held across calls.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pytaskdeps.models import (
    ReadinessPolicy,
    Task,
    TaskStatus,
    TaskSummary,
    TaskWithDependencies,
)


class StorageError(Exception):
    """Storage operation failed."""

    pass


class InvalidTransitionError(StorageError):
    """Requested status change is not allowed by the task state machine."""

    def __init__(self, from_status: TaskStatus, to_status: TaskStatus):
        super().__init__(f"Invalid status transition: {from_status} -> {to_status}")
        self.from_status = from_status
        self.to_status = to_status


def check_transition(from_status: TaskStatus, to_status: TaskStatus) -> None:
    """Guard clause shared by all backends.

    Raises:
        InvalidTransitionError: If the state machine forbids the transition
    """
    if not from_status.can_transition_to(to_status):
        raise InvalidTransitionError(from_status, to_status)


class TaskStore(ABC):
    """
    Abstract storage interface for tasks and their dependency edges.

    Every method is a coroutine. Returned ``Task`` objects are snapshots:
    callers never mutate stored state except through these methods.
    """

    # ========================================================================
    # Graph construction
    # ========================================================================

    @abstractmethod
    async def create_task(self, handler_name: str, payload: dict[str, Any] | None = None) -> Task:
        """
        Insert a new PENDING task.

        Args:
            handler_name: Registry key of the runner for this task
            payload: Initial handler configuration (JSON-serializable)

        Returns:
            The created task with its store-assigned id

        Raises:
            StorageError: If the payload cannot be serialized
        """
        pass

    @abstractmethod
    async def add_dependency(self, task_id: int, dependency_id: int) -> None:
        """
        Record that ``task_id`` cannot start until ``dependency_id`` is terminal.

        Adding an edge that already exists is a no-op.

        Raises:
            StorageError: If either task does not exist or the edge is a self-edge
        """
        pass

    # ========================================================================
    # Reads
    # ========================================================================

    @abstractmethod
    async def get_task(self, task_id: int) -> Task | None:
        """Return the task, or None if it does not exist."""
        pass

    @abstractmethod
    async def get_task_with_dependencies(self, task_id: int) -> TaskWithDependencies | None:
        """
        Load a task and its direct dependencies in a single fetch.

        Returns:
            The task with dependency snapshots ordered by id, or None
        """
        pass

    @abstractmethod
    async def get_dependents(self, task_id: int) -> list[Task]:
        """Return the direct dependents of a task, ordered by id."""
        pass

    @abstractmethod
    async def list_tasks(self, status: TaskStatus | None = None) -> list[Task]:
        """Return all tasks (optionally filtered by status), ordered by id."""
        pass

    @abstractmethod
    async def find_ready_tasks(
        self, policy: ReadinessPolicy = ReadinessPolicy.TERMINAL
    ) -> list[Task]:
        """
        Find non-terminal tasks whose dependencies all satisfy ``policy``.

        Tasks with no dependencies are always ready. Must be answered by a
        single query against the store.

        Returns:
            Matching tasks in ascending id (creation) order
        """
        pass

    @abstractmethod
    async def count_by_status(self) -> TaskSummary:
        """Return task counts per status."""
        pass

    # ========================================================================
    # Conditional writes
    # ========================================================================

    @abstractmethod
    async def transition_status(
        self,
        task_id: int,
        from_status: TaskStatus,
        to_status: TaskStatus,
        payload_patch: dict[str, Any] | None = None,
    ) -> bool:
        """
        Atomically move a task from ``from_status`` to ``to_status``.

        Compare-and-set: the update only happens if the task is still in
        ``from_status``. ``payload_patch`` is merged into the stored payload
        in the same atomic step. ``completed_at`` is set when ``to_status``
        is COMPLETED.

        Returns:
            True if this call performed the transition, False otherwise
            (task missing or no longer in ``from_status``)

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        pass

    @abstractmethod
    async def merge_payload(self, task_id: int, patch: dict[str, Any]) -> Task:
        """
        Atomically merge ``patch`` into the stored payload.

        Returns:
            The updated task

        Raises:
            StorageError: If the task does not exist
        """
        pass

    @abstractmethod
    async def delete_orphaned_tasks(self) -> list[int]:
        """
        Delete every terminal task whose dependents are all terminal.

        A terminal task with no dependents qualifies. Edges referencing a
        deleted task are removed with it. Implemented as a single statement
        or script so it stays correct under concurrent writers.

        Returns:
            Ids of the deleted tasks in ascending order
        """
        pass

    async def find_orphaned_tasks(self) -> list[int]:
        """Return the ids ``delete_orphaned_tasks()`` would delete right now."""
        tasks = await self.list_tasks()
        by_id = {t.id: t for t in tasks}
        orphaned = []
        for task in tasks:
            if not task.is_terminal:
                continue
            dependents = await self.get_dependents(task.id)
            if all(by_id.get(d.id, d).is_terminal for d in dependents):
                orphaned.append(task.id)
        return orphaned

    # ========================================================================
    # Lifecycle
    # ========================================================================

    @abstractmethod
    async def reset(self) -> None:
        """Delete all tasks and edges (for tests and demos)."""
        pass

    async def close(self) -> None:
        """Release connections. Default is a no-op."""
        pass

    async def __aenter__(self) -> TaskStore:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
