"""Storage backends for task graph persistence.

Provides multiple storage implementations behind a common interface:
    - TaskStore: Abstract interface
    - SqliteTaskStore: SQLite-backed storage
    - RedisTaskStore: Redis-backed networked storage
    - InMemoryTaskStore: In-memory storage for testing
    - open_store: Connect a store from a URL

Design: Adapter Pattern + Dependency Inversion
    All storage implementations adapt to the TaskStore interface, so the
    scheduler and runners can switch backends without code changes.
"""

from pytaskdeps.storage.base import (
    InvalidTransitionError,
    StorageError,
    TaskStore,
)
from pytaskdeps.storage.factory import open_store

# Backends are imported lazily so that optional drivers (redis) are only
# required when actually used.


def __getattr__(name: str):
    """Lazy import storage implementations."""
    if name == "InMemoryTaskStore":
        from pytaskdeps.storage.memory import InMemoryTaskStore

        return InMemoryTaskStore
    elif name == "RedisTaskStore":
        from pytaskdeps.storage.redis import RedisTaskStore

        return RedisTaskStore
    elif name == "SqliteTaskStore":
        from pytaskdeps.storage.sqlite import SqliteTaskStore

        return SqliteTaskStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "TaskStore",
    "StorageError",
    "InvalidTransitionError",
    "open_store",
    "SqliteTaskStore",
    "RedisTaskStore",
    "InMemoryTaskStore",
]
