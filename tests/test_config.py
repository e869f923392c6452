"""
Configuration tests: store URLs and ``PYTASKDEPS_*`` environment variables.
"""

import pytest

from pytaskdeps import (
    InMemoryTaskStore,
    ReadinessPolicy,
    Scheduler,
    SchedulerError,
    StorageError,
    Worker,
    WorkerError,
    open_store,
)


@pytest.mark.asyncio
async def test_open_store_memory():
    store = await open_store("memory://")
    assert isinstance(store, InMemoryTaskStore)


@pytest.mark.asyncio
async def test_open_store_defaults_to_env(monkeypatch):
    monkeypatch.setenv("PYTASKDEPS_STORE_URL", "memory://")
    assert isinstance(await open_store(), InMemoryTaskStore)


@pytest.mark.asyncio
async def test_open_store_without_env_is_memory(monkeypatch):
    monkeypatch.delenv("PYTASKDEPS_STORE_URL", raising=False)
    assert isinstance(await open_store(), InMemoryTaskStore)


@pytest.mark.asyncio
@pytest.mark.parametrize("url", ["postgres://localhost/db", "no-scheme", "sqlite://"])
async def test_open_store_rejects_bad_urls(url):
    with pytest.raises(StorageError):
        await open_store(url)


def test_scheduler_from_env(monkeypatch, registry):
    monkeypatch.setenv("PYTASKDEPS_READINESS", "started")
    monkeypatch.setenv("PYTASKDEPS_MAX_PASSES", "5")
    monkeypatch.setenv("PYTASKDEPS_CONCURRENCY", "3")

    scheduler = Scheduler(InMemoryTaskStore(), registry).from_env()

    assert scheduler.readiness is ReadinessPolicy.STARTED
    assert scheduler._max_passes == 5
    assert scheduler._concurrency == 3


def test_scheduler_from_env_defaults(monkeypatch, registry):
    for name in ("PYTASKDEPS_READINESS", "PYTASKDEPS_MAX_PASSES", "PYTASKDEPS_CONCURRENCY"):
        monkeypatch.delenv(name, raising=False)

    scheduler = Scheduler(InMemoryTaskStore(), registry).from_env()

    assert scheduler.readiness is ReadinessPolicy.TERMINAL
    assert scheduler._concurrency == 1


@pytest.mark.parametrize(
    "name,value",
    [
        ("PYTASKDEPS_READINESS", "EVENTUALLY"),
        ("PYTASKDEPS_MAX_PASSES", "zero"),
        ("PYTASKDEPS_CONCURRENCY", "0"),
    ],
)
def test_scheduler_from_env_invalid(monkeypatch, registry, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(SchedulerError):
        Scheduler(InMemoryTaskStore(), registry).from_env()


def test_scheduler_builder_validation(registry):
    scheduler = Scheduler(InMemoryTaskStore(), registry)
    with pytest.raises(ValueError):
        scheduler.with_concurrency(0)
    with pytest.raises(ValueError):
        scheduler.with_max_passes(0)


def test_worker_from_env(monkeypatch, registry):
    monkeypatch.setenv("PYTASKDEPS_POLL_INTERVAL", "0.5")
    worker = Worker(Scheduler(InMemoryTaskStore(), registry), "w1").from_env()
    assert worker._poll_interval == 0.5


def test_worker_from_env_invalid(monkeypatch, registry):
    monkeypatch.setenv("PYTASKDEPS_POLL_INTERVAL", "-1")
    with pytest.raises(WorkerError):
        Worker(Scheduler(InMemoryTaskStore(), registry), "w1").from_env()


def test_readiness_policy_from_name():
    assert ReadinessPolicy.from_name("terminal") is ReadinessPolicy.TERMINAL
    assert ReadinessPolicy.from_name(" STARTED ") is ReadinessPolicy.STARTED
    with pytest.raises(ValueError):
        ReadinessPolicy.from_name("sometime")
