"""In-memory storage implementation for pytaskdeps.

Design Pattern: Adapter Pattern
InMemoryTaskStore adapts plain dictionaries to the TaskStore interface.

Instance is immediately usable after __init__. Every public method runs
under a single asyncio.Lock, which makes each call atomic with respect to
other coroutines in the same event loop.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import replace
from typing import Any

from pytaskdeps.models import (
    ReadinessPolicy,
    Task,
    TaskStatus,
    TaskSummary,
    TaskWithDependencies,
    encode_payload,
    merge_payload,
    utc_now,
)
from pytaskdeps.storage.base import StorageError, TaskStore, check_transition


class InMemoryTaskStore(TaskStore):
    """In-memory storage for tests and single-process demos.

    Can be substituted for SqliteTaskStore without changing client code.

    Usage:
        store = InMemoryTaskStore()
        task = await store.create_task("ConstantRunner", {"value": 1})
    """

    def __init__(self):
        # Storage: {task_id: Task}
        self._tasks: dict[int, Task] = {}

        # Edges in both directions: {task_id: {dependency_id}}, {dependency_id: {task_id}}
        self._dependencies: dict[int, set[int]] = {}
        self._dependents: dict[int, set[int]] = {}

        self._next_id = 1
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return "InMemoryTaskStore"

    def _snapshot(self, task: Task) -> Task:
        return replace(task, payload=copy.deepcopy(task.payload))

    async def create_task(self, handler_name: str, payload: dict[str, Any] | None = None) -> Task:
        payload = payload or {}
        try:
            encode_payload(payload)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Payload is not JSON-serializable: {e}") from e

        async with self._lock:
            now = utc_now()
            task = Task(
                id=self._next_id,
                handler_name=handler_name,
                status=TaskStatus.PENDING,
                payload=copy.deepcopy(payload),
                created_at=now,
                updated_at=now,
            )
            self._next_id += 1
            self._tasks[task.id] = task
            self._dependencies[task.id] = set()
            self._dependents[task.id] = set()
            return self._snapshot(task)

    async def add_dependency(self, task_id: int, dependency_id: int) -> None:
        if task_id == dependency_id:
            raise StorageError(f"Task {task_id} cannot depend on itself")

        async with self._lock:
            for tid in (task_id, dependency_id):
                if tid not in self._tasks:
                    raise StorageError(f"Task not found: {tid}")
            self._dependencies[task_id].add(dependency_id)
            self._dependents[dependency_id].add(task_id)

    async def get_task(self, task_id: int) -> Task | None:
        async with self._lock:
            task = self._tasks.get(task_id)
            return self._snapshot(task) if task else None

    async def get_task_with_dependencies(self, task_id: int) -> TaskWithDependencies | None:
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return None
            dependencies = [
                self._snapshot(self._tasks[dep_id])
                for dep_id in sorted(self._dependencies[task_id])
            ]
            return TaskWithDependencies(task=self._snapshot(task), dependencies=dependencies)

    async def get_dependents(self, task_id: int) -> list[Task]:
        async with self._lock:
            return [
                self._snapshot(self._tasks[tid]) for tid in sorted(self._dependents.get(task_id, ()))
            ]

    async def list_tasks(self, status: TaskStatus | None = None) -> list[Task]:
        async with self._lock:
            return [
                self._snapshot(task)
                for task_id, task in sorted(self._tasks.items())
                if status is None or task.status is status
            ]

    async def find_ready_tasks(
        self, policy: ReadinessPolicy = ReadinessPolicy.TERMINAL
    ) -> list[Task]:
        async with self._lock:
            ready = []
            for task_id, task in sorted(self._tasks.items()):
                if task.is_terminal:
                    continue
                if all(
                    policy.is_satisfied_by(self._tasks[dep_id].status)
                    for dep_id in self._dependencies[task_id]
                ):
                    ready.append(self._snapshot(task))
            return ready

    async def count_by_status(self) -> TaskSummary:
        async with self._lock:
            counts: dict[TaskStatus, int] = {}
            for task in self._tasks.values():
                counts[task.status] = counts.get(task.status, 0) + 1
            return TaskSummary.from_counts(counts)

    async def transition_status(
        self,
        task_id: int,
        from_status: TaskStatus,
        to_status: TaskStatus,
        payload_patch: dict[str, Any] | None = None,
    ) -> bool:
        check_transition(from_status, to_status)
        if payload_patch:
            try:
                encode_payload(payload_patch)
            except (TypeError, ValueError) as e:
                raise StorageError(f"Payload patch is not JSON-serializable: {e}") from e

        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status is not from_status:
                return False

            now = utc_now()
            self._tasks[task_id] = replace(
                task,
                status=to_status,
                payload=merge_payload(task.payload, payload_patch or {}),
                updated_at=now,
                completed_at=now if to_status is TaskStatus.COMPLETED else task.completed_at,
            )
            return True

    async def merge_payload(self, task_id: int, patch: dict[str, Any]) -> Task:
        try:
            encode_payload(patch)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Payload patch is not JSON-serializable: {e}") from e

        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise StorageError(f"Task not found: {task_id}")
            updated = replace(task, payload=merge_payload(task.payload, patch), updated_at=utc_now())
            self._tasks[task_id] = updated
            return self._snapshot(updated)

    async def delete_orphaned_tasks(self) -> list[int]:
        async with self._lock:
            # Evaluate the predicate against one snapshot, then delete together
            doomed = sorted(
                task_id
                for task_id, task in self._tasks.items()
                if task.is_terminal
                and all(self._tasks[d].is_terminal for d in self._dependents[task_id])
            )
            for task_id in doomed:
                for dep_id in self._dependencies.pop(task_id):
                    if dep_id in self._dependents:
                        self._dependents[dep_id].discard(task_id)
                for dependent_id in self._dependents.pop(task_id):
                    if dependent_id in self._dependencies:
                        self._dependencies[dependent_id].discard(task_id)
                del self._tasks[task_id]
            return doomed

    async def reset(self) -> None:
        async with self._lock:
            self._tasks.clear()
            self._dependencies.clear()
            self._dependents.clear()
            self._next_id = 1
