"""Open a task store from a URL.

Supported URLs:
    memory://                 InMemoryTaskStore
    sqlite://:memory:         SqliteTaskStore on an in-memory database
    sqlite:///path/to/db      SqliteTaskStore on a file (relative: sqlite://tasks.db)
    redis://host:port/db      RedisTaskStore (rediss:// also accepted)

When no URL is given, ``PYTASKDEPS_STORE_URL`` is consulted, then ``memory://``.
"""

from __future__ import annotations

import logging
import os

from pytaskdeps.storage.base import StorageError, TaskStore

logger = logging.getLogger(__name__)

STORE_URL_ENV = "PYTASKDEPS_STORE_URL"
DEFAULT_STORE_URL = "memory://"


async def open_store(url: str | None = None) -> TaskStore:
    """Create and connect the store described by ``url``.

    Raises:
        StorageError: If the URL scheme is not supported
    """
    url = url or os.environ.get(STORE_URL_ENV) or DEFAULT_STORE_URL
    scheme, sep, rest = url.partition("://")
    if not sep:
        raise StorageError(f"Invalid store URL (missing scheme): {url!r}")
    scheme = scheme.lower()

    if scheme == "memory":
        from pytaskdeps.storage.memory import InMemoryTaskStore

        store: TaskStore = InMemoryTaskStore()
    elif scheme == "sqlite":
        from pytaskdeps.storage.sqlite import SqliteTaskStore

        if not rest:
            raise StorageError(f"SQLite URL has no database path: {url!r}")
        store = SqliteTaskStore(rest)
        await store.connect()
    elif scheme in ("redis", "rediss"):
        from pytaskdeps.storage.redis import RedisTaskStore

        store = RedisTaskStore(url)
        await store.connect()
    else:
        raise StorageError(f"Unsupported store URL scheme: {scheme!r}")

    logger.debug(f"Opened {store!r} from {url}")
    return store
