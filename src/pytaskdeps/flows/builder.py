"""Graph construction helper for flow builders.

The engine assumes the graph it is given is acyclic and that every
handler name is registered; ``FlowBuilder`` only creates rows, it does not
check either property.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from pytaskdeps.models import Task
from pytaskdeps.storage import TaskStore

logger = logging.getLogger(__name__)


class FlowBuilder:
    """Creates PENDING tasks and their dependency edges.

    Usage:
        builder = FlowBuilder(store)
        a = await builder.add_task("ConstantRunner", {"output": {"value": 1}})
        b = await builder.add_task("MedianRunner", depends_on=[a])
    """

    def __init__(self, store: TaskStore):
        self._store = store
        self._created: list[int] = []

    @property
    def store(self) -> TaskStore:
        return self._store

    @property
    def created_ids(self) -> list[int]:
        """Ids of the tasks created by this builder, in creation order."""
        return list(self._created)

    async def add_task(
        self,
        handler_name: str,
        payload: dict[str, Any] | None = None,
        depends_on: Iterable[Task | int] = (),
    ) -> Task:
        """Create a task that depends on every task in ``depends_on``."""
        dependency_ids = [d.id if isinstance(d, Task) else d for d in depends_on]
        task = await self._store.create_task(handler_name, payload)
        for dependency_id in dependency_ids:
            await self._store.add_dependency(task.id, dependency_id)
        self._created.append(task.id)
        logger.debug(f"Created {task} depending on {dependency_ids}")
        return task
