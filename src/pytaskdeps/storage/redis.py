"""Redis-based task store implementation.

Provides a Redis backend for deployments where flow builders and the
scheduler run on different machines.

Data Structures (``{ns}`` is the configurable key namespace):
- {ns}:next_id (STRING): id counter (INCR)
- {ns}:tasks (ZSET): all task ids, score = id
- {ns}:task:{id} (HASH): id, handler_name, status, payload (JSON), timestamps
- {ns}:deps:{id} (SET): ids this task depends on
- {ns}:dependents:{id} (SET): ids that depend on this task

Atomicity:
- status compare-and-set and payload merges use WATCH/MULTI/EXEC and retry
  on conflict, so the JSON merge runs in Python with full fidelity
- readiness scans, edge creation, dependency loads and garbage collection
  run as server-side Lua scripts, one script per call
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

try:
    import redis.asyncio as redis
    from redis.exceptions import WatchError
except ImportError:
    raise ImportError("redis-py is required for RedisTaskStore. Install with: pip install redis")

from pytaskdeps.models import (
    ReadinessPolicy,
    Task,
    TaskStatus,
    TaskSummary,
    TaskWithDependencies,
    decode_payload,
    encode_payload,
    merge_payload,
    utc_now,
)
from pytaskdeps.storage.base import StorageError, TaskStore, check_transition

logger = logging.getLogger(__name__)

_ADD_DEPENDENCY_SCRIPT = """
local ns = ARGV[1]
local task_id = ARGV[2]
local dependency_id = ARGV[3]
if redis.call('EXISTS', ns .. ':task:' .. task_id) == 0 then
  return 'missing:' .. task_id
end
if redis.call('EXISTS', ns .. ':task:' .. dependency_id) == 0 then
  return 'missing:' .. dependency_id
end
redis.call('SADD', ns .. ':deps:' .. task_id, dependency_id)
redis.call('SADD', ns .. ':dependents:' .. dependency_id, task_id)
return 'ok'
"""

_LOAD_WITH_DEPENDENCIES_SCRIPT = """
local ns = ARGV[1]
local task_id = ARGV[2]
local rows = {}
local task = redis.call('HGETALL', ns .. ':task:' .. task_id)
if #task == 0 then
  return rows
end
table.insert(rows, task)
for _, dep in ipairs(redis.call('SMEMBERS', ns .. ':deps:' .. task_id)) do
  local row = redis.call('HGETALL', ns .. ':task:' .. dep)
  if #row > 0 then
    table.insert(rows, row)
  end
end
return rows
"""

_FIND_READY_SCRIPT = """
local ns = ARGV[1]
local satisfied = {}
for i = 2, #ARGV do
  satisfied[ARGV[i]] = true
end
local rows = {}
for _, id in ipairs(redis.call('ZRANGE', ns .. ':tasks', 0, -1)) do
  local key = ns .. ':task:' .. id
  local status = redis.call('HGET', key, 'status')
  if status == 'PENDING' or status == 'IN_PROGRESS' then
    local ready = true
    for _, dep in ipairs(redis.call('SMEMBERS', ns .. ':deps:' .. id)) do
      local dep_status = redis.call('HGET', ns .. ':task:' .. dep, 'status')
      if not satisfied[dep_status] then
        ready = false
        break
      end
    end
    if ready then
      table.insert(rows, redis.call('HGETALL', key))
    end
  end
end
return rows
"""

_DELETE_ORPHANED_SCRIPT = """
local ns = ARGV[1]
local function is_terminal(id)
  local status = redis.call('HGET', ns .. ':task:' .. id, 'status')
  return status == 'COMPLETED' or status == 'CANCELLED'
end
local doomed = {}
for _, id in ipairs(redis.call('ZRANGE', ns .. ':tasks', 0, -1)) do
  if is_terminal(id) then
    local orphaned = true
    for _, dependent in ipairs(redis.call('SMEMBERS', ns .. ':dependents:' .. id)) do
      if not is_terminal(dependent) then
        orphaned = false
        break
      end
    end
    if orphaned then
      table.insert(doomed, id)
    end
  end
end
for _, id in ipairs(doomed) do
  for _, dep in ipairs(redis.call('SMEMBERS', ns .. ':deps:' .. id)) do
    redis.call('SREM', ns .. ':dependents:' .. dep, id)
  end
  for _, dependent in ipairs(redis.call('SMEMBERS', ns .. ':dependents:' .. id)) do
    redis.call('SREM', ns .. ':deps:' .. dependent, id)
  end
  redis.call('DEL', ns .. ':task:' .. id, ns .. ':deps:' .. id, ns .. ':dependents:' .. id)
  redis.call('ZREM', ns .. ':tasks', id)
end
return doomed
"""


def _millis(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def _from_millis(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value) / 1000.0, tz=UTC)


class RedisTaskStore(TaskStore):
    """Redis task store using connection pooling.

    Usage:
        store = RedisTaskStore("redis://localhost:6379")
        await store.connect()
        task = await store.create_task("ConstantRunner", {"value": 1})
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        namespace: str = "pytaskdeps",
        max_connections: int = 16,
    ):
        """Initialize Redis task store.

        Args:
            redis_url: Redis connection URL
            namespace: Prefix for every key this store touches
            max_connections: Maximum pool size
        """
        self._redis_url = redis_url
        self._namespace = namespace
        self._max_connections = max_connections
        self._redis: redis.Redis | None = None
        self._scripts: dict[str, Any] = {}

    def __repr__(self) -> str:
        return f"RedisTaskStore({self._redis_url}, namespace={self._namespace!r})"

    async def connect(self) -> None:
        """Establish Redis connection pool and register Lua scripts."""
        if self._redis is not None:
            return
        self._redis = redis.from_url(
            self._redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=self._max_connections,
        )
        self._scripts = {
            "add_dependency": self._redis.register_script(_ADD_DEPENDENCY_SCRIPT),
            "load_with_dependencies": self._redis.register_script(_LOAD_WITH_DEPENDENCIES_SCRIPT),
            "find_ready": self._redis.register_script(_FIND_READY_SCRIPT),
            "delete_orphaned": self._redis.register_script(_DELETE_ORPHANED_SCRIPT),
        }

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _check_connected(self) -> None:
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")

    def _task_key(self, task_id: int | str) -> str:
        return f"{self._namespace}:task:{task_id}"

    def _deps_key(self, task_id: int | str) -> str:
        return f"{self._namespace}:deps:{task_id}"

    def _dependents_key(self, task_id: int | str) -> str:
        return f"{self._namespace}:dependents:{task_id}"

    @property
    def _tasks_key(self) -> str:
        return f"{self._namespace}:tasks"

    async def create_task(self, handler_name: str, payload: dict[str, Any] | None = None) -> Task:
        self._check_connected()
        payload_json = self._encode(payload or {})
        task_id = await self._redis.incr(f"{self._namespace}:next_id")
        now = _millis(utc_now())
        fields = {
            "id": task_id,
            "handler_name": handler_name,
            "status": TaskStatus.PENDING.value,
            "payload": payload_json,
            "created_at": now,
            "updated_at": now,
            "completed_at": "",
        }

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._task_key(task_id), mapping=fields)
            pipe.zadd(self._tasks_key, {str(task_id): task_id})
            await pipe.execute()

        return self._hash_to_task({k: str(v) for k, v in fields.items()})

    async def add_dependency(self, task_id: int, dependency_id: int) -> None:
        self._check_connected()
        if task_id == dependency_id:
            raise StorageError(f"Task {task_id} cannot depend on itself")

        result = await self._scripts["add_dependency"](
            args=[self._namespace, task_id, dependency_id]
        )
        if result != "ok":
            missing = result.split(":", 1)[1]
            raise StorageError(
                f"Cannot add dependency {task_id} -> {dependency_id}: task not found: {missing}"
            )

    async def get_task(self, task_id: int) -> Task | None:
        self._check_connected()
        fields = await self._redis.hgetall(self._task_key(task_id))
        return self._hash_to_task(fields) if fields else None

    async def get_task_with_dependencies(self, task_id: int) -> TaskWithDependencies | None:
        self._check_connected()
        rows = await self._scripts["load_with_dependencies"](args=[self._namespace, task_id])
        if not rows:
            return None
        tasks = [self._hash_to_task(self._pairs_to_dict(row)) for row in rows]
        return TaskWithDependencies(
            task=tasks[0], dependencies=sorted(tasks[1:], key=lambda t: t.id)
        )

    async def get_dependents(self, task_id: int) -> list[Task]:
        self._check_connected()
        ids = await self._redis.smembers(self._dependents_key(task_id))
        return await self._load_many(sorted(int(i) for i in ids))

    async def list_tasks(self, status: TaskStatus | None = None) -> list[Task]:
        self._check_connected()
        ids = await self._redis.zrange(self._tasks_key, 0, -1)
        tasks = await self._load_many([int(i) for i in ids])
        if status is None:
            return tasks
        return [t for t in tasks if t.status is status]

    async def find_ready_tasks(
        self, policy: ReadinessPolicy = ReadinessPolicy.TERMINAL
    ) -> list[Task]:
        self._check_connected()
        rows = await self._scripts["find_ready"](
            args=[self._namespace, *(s.value for s in policy.satisfied_by)]
        )
        return [self._hash_to_task(self._pairs_to_dict(row)) for row in rows]

    async def count_by_status(self) -> TaskSummary:
        counts: dict[TaskStatus, int] = {}
        for task in await self.list_tasks():
            counts[task.status] = counts.get(task.status, 0) + 1
        return TaskSummary.from_counts(counts)

    async def transition_status(
        self,
        task_id: int,
        from_status: TaskStatus,
        to_status: TaskStatus,
        payload_patch: dict[str, Any] | None = None,
    ) -> bool:
        """Compare-and-set using optimistic locking (WATCH/MULTI/EXEC).

        The transaction aborts if another client touched the task hash
        between WATCH and EXEC; we then re-read and re-check the status.
        """
        self._check_connected()
        check_transition(from_status, to_status)
        self._encode(payload_patch or {})
        key = self._task_key(task_id)

        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    status, payload_json = await pipe.hmget(key, "status", "payload")
                    if status != from_status.value:
                        await pipe.unwatch()
                        return False

                    now = _millis(utc_now())
                    fields = {
                        "status": to_status.value,
                        "payload": self._encode(
                            merge_payload(self._decode(task_id, payload_json), payload_patch or {})
                        ),
                        "updated_at": now,
                    }
                    if to_status is TaskStatus.COMPLETED:
                        fields["completed_at"] = now

                    pipe.multi()
                    pipe.hset(key, mapping=fields)
                    await pipe.execute()
                    return True
                except WatchError:
                    logger.debug(f"Concurrent update on task {task_id}, retrying transition")
                    continue

    async def merge_payload(self, task_id: int, patch: dict[str, Any]) -> Task:
        self._check_connected()
        self._encode(patch)
        key = self._task_key(task_id)

        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    fields = await pipe.hgetall(key)
                    if not fields:
                        await pipe.unwatch()
                        raise StorageError(f"Task not found: {task_id}")

                    fields["payload"] = self._encode(
                        merge_payload(self._decode(task_id, fields.get("payload")), patch)
                    )
                    fields["updated_at"] = str(_millis(utc_now()))

                    pipe.multi()
                    pipe.hset(key, mapping={k: fields[k] for k in ("payload", "updated_at")})
                    await pipe.execute()
                    return self._hash_to_task(fields)
                except WatchError:
                    logger.debug(f"Concurrent update on task {task_id}, retrying merge")
                    continue

    async def delete_orphaned_tasks(self) -> list[int]:
        self._check_connected()
        deleted = await self._scripts["delete_orphaned"](args=[self._namespace])
        return sorted(int(i) for i in deleted)

    async def reset(self) -> None:
        """Delete every key in this store's namespace."""
        self._check_connected()
        keys = [key async for key in self._redis.scan_iter(match=f"{self._namespace}:*")]
        if keys:
            await self._redis.delete(*keys)

    async def _load_many(self, ids: list[int]) -> list[Task]:
        if not ids:
            return []
        async with self._redis.pipeline(transaction=False) as pipe:
            for task_id in ids:
                pipe.hgetall(self._task_key(task_id))
            rows = await pipe.execute()
        return [self._hash_to_task(row) for row in rows if row]

    @staticmethod
    def _pairs_to_dict(row: list[str]) -> dict[str, str]:
        """Convert a flat HGETALL reply from Lua into a dict."""
        return dict(zip(row[::2], row[1::2], strict=True))

    @staticmethod
    def _encode(payload: dict[str, Any]) -> str:
        try:
            return encode_payload(payload)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Payload is not JSON-serializable: {e}") from e

    @staticmethod
    def _decode(task_id: int, payload_json: str | None) -> dict[str, Any]:
        try:
            return decode_payload(payload_json)
        except (json.JSONDecodeError, ValueError) as e:
            raise StorageError(f"Cannot update task {task_id}: corrupt payload: {e}") from e

    def _hash_to_task(self, fields: dict[str, str]) -> Task:
        payload_error = None
        try:
            payload = decode_payload(fields.get("payload"))
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Corrupt payload for task {fields.get('id')}: {e}")
            payload = {}
            payload_error = str(e)

        return Task(
            id=int(fields["id"]),
            handler_name=fields["handler_name"],
            status=TaskStatus(fields["status"]),
            payload=payload,
            created_at=_from_millis(fields.get("created_at")),
            updated_at=_from_millis(fields.get("updated_at")),
            completed_at=_from_millis(fields.get("completed_at")),
            payload_error=payload_error,
        )
