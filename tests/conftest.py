"""
Pytest configuration and fixtures for pytaskdeps tests.

Provides reusable fixtures for storage backends, the in-memory batch
facility, and a scripted responder for the prompt runners.
"""

import json
import os
import shutil
import tempfile
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest

from pytaskdeps import (
    InMemoryBatchFacility,
    InMemoryTaskStore,
    RunnerRegistry,
    Scheduler,
    SqliteTaskStore,
    TaskStore,
    default_registry,
)


def pytest_sessionfinish(session, exitstatus):
    """Force cleanup after all tests complete to prevent CI hanging."""
    if os.getenv("CI") or os.getenv("GITHUB_ACTIONS"):
        os._exit(exitstatus)


@pytest.fixture
async def in_memory_store() -> AsyncGenerator[InMemoryTaskStore, None]:
    """Async in-memory store fixture with automatic cleanup."""
    store = InMemoryTaskStore()
    yield store
    await store.reset()


@pytest.fixture
async def sqlite_memory_store() -> AsyncGenerator[SqliteTaskStore, None]:
    """Async SQLite in-memory store fixture with automatic cleanup."""
    store = SqliteTaskStore(":memory:")
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def temp_db_path():
    """Temporary database file path with automatic cleanup."""
    tmpdir = Path(tempfile.mkdtemp())
    db_path = tmpdir / "test.db"
    yield db_path
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
async def sqlite_file_store(temp_db_path: Path) -> AsyncGenerator[SqliteTaskStore, None]:
    """Async SQLite file-based store fixture with automatic cleanup."""
    store = SqliteTaskStore(str(temp_db_path))
    await store.connect()
    yield store
    await store.close()


@pytest.fixture(params=["memory", "sqlite"])
async def store(request) -> AsyncGenerator[TaskStore, None]:
    """Every local backend; tests using it run once per backend."""
    if request.param == "memory":
        backend: TaskStore = InMemoryTaskStore()
    else:
        backend = await SqliteTaskStore.in_memory()
    yield backend
    await backend.close()


@pytest.fixture
def registry() -> RunnerRegistry:
    return default_registry()


# ==============================================================================
# Scripted batch facility
# ==============================================================================


class ScriptedResponder:
    """Answers prompt requests according to the schema they ask for.

    Attributes can be changed per test to steer the evaluation flow.
    """

    def __init__(self):
        self.is_scientist = True
        self.worth_values = [0.001, 0.002, 0.003]
        self.has_injection = False
        self.requests: list[dict] = []
        self._worth_calls = 0

    def __call__(self, request: dict) -> dict:
        self.requests.append(request)
        schema = request.get("response_format", {}).get("json_schema", {}).get("schema", {})
        fields = schema.get("properties", {})

        if "isActiveScientistOrFOSSDev" in fields:
            body = {"isActiveScientistOrFOSSDev": self.is_scientist, "why": "scripted"}
        elif "randomizedPrompt" in fields:
            original = request["messages"][0]["content"].split("\n\n", 1)[-1]
            body = {"randomizedPrompt": f"Rephrased: {original}"}
        elif "worthAsFractionOfGDP" in fields:
            value = self.worth_values[self._worth_calls % len(self.worth_values)]
            self._worth_calls += 1
            body = {"worthAsFractionOfGDP": value, "why": "scripted"}
        elif "hasPromptInjection" in fields:
            body = {"hasPromptInjection": self.has_injection, "why": "scripted"}
        else:
            body = {"echo": request}
        return {"content": json.dumps(body)}


@pytest.fixture
def responder() -> ScriptedResponder:
    return ScriptedResponder()


@pytest.fixture
def facility(responder: ScriptedResponder) -> InMemoryBatchFacility:
    """Facility that answers immediately on submission."""
    return InMemoryBatchFacility(responder=responder, auto_complete=True)


@pytest.fixture
def manual_facility(responder: ScriptedResponder) -> InMemoryBatchFacility:
    """Facility whose outputs appear only after complete()/complete_all()."""
    return InMemoryBatchFacility(responder=responder)


@pytest.fixture
def scheduler(store: TaskStore, registry: RunnerRegistry, facility) -> Scheduler:
    return Scheduler(store, registry, facility)
