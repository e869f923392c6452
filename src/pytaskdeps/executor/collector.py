"""Garbage collection of finished subgraphs.

A terminal task whose dependents are all terminal can never be read again
by the scheduler or by any runner's retrieval path, so it is safe to
delete. The whole check-and-delete runs as one statement in the store.
"""

from __future__ import annotations

import logging

from pytaskdeps.storage import TaskStore

logger = logging.getLogger(__name__)


class GarbageCollector:
    """Deletes orphaned terminal tasks on demand.

    Usage:
        collector = GarbageCollector(store)
        deleted_ids = await collector.collect()
    """

    def __init__(self, store: TaskStore):
        self._store = store

    async def collect(self) -> list[int]:
        """Delete orphaned tasks and their edges.

        Returns:
            Ids of the deleted tasks
        """
        deleted = await self._store.delete_orphaned_tasks()
        if deleted:
            logger.info(f"Garbage collected {len(deleted)} tasks: {deleted}")
        else:
            logger.debug("Garbage collection found nothing to delete")
        return deleted

    async def dry_run(self) -> list[int]:
        """Return the ids ``collect()`` would delete, without deleting."""
        return await self._store.find_orphaned_tasks()
