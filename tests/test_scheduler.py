"""
Scheduler tests: the readiness loop, cancellation propagation, error
handling and run summaries.
"""

import asyncio

import pytest

from pytaskdeps import (
    BaseRunner,
    Completed,
    DispatchResult,
    FlowBuilder,
    InMemoryTaskStore,
    ReadinessPolicy,
    RunnerRegistry,
    Scheduler,
    StorageError,
    TaskStatus,
    default_registry,
)


class DoubleRunner(BaseRunner):
    """Completes with twice the value of its single dependency (or its own payload)."""

    async def execute_task(self, work):
        if work.dependencies:
            base = await self.read_dependency_value(work.dependencies[0], "value")
        else:
            base = work.task.payload["value"]
        return Completed({"value": base * 2})


class ExplodingRunner(BaseRunner):
    async def execute_task(self, work):
        raise RuntimeError("boom")


class RecordingRunner(BaseRunner):
    """Counts invocations of execute_task across all instances."""

    calls: list[int] = []

    async def execute_task(self, work):
        RecordingRunner.calls.append(work.task.id)
        await asyncio.sleep(0)
        return Completed()


@pytest.fixture
def custom_registry():
    registry = default_registry()
    registry.register("DoubleRunner", DoubleRunner)
    registry.register("ExplodingRunner", ExplodingRunner)
    registry.register("RecordingRunner", RecordingRunner)
    return registry


# ==============================================================================
# Readiness loop
# ==============================================================================


@pytest.mark.asyncio
async def test_chain_completes_in_one_run(store, custom_registry):
    """A -> B -> C completes in one run_pending call, in order."""
    builder = FlowBuilder(store)
    a = await builder.add_task("DoubleRunner", {"value": 1})
    b = await builder.add_task("DoubleRunner", depends_on=[a])
    c = await builder.add_task("DoubleRunner", depends_on=[b])

    summary = await Scheduler(store, custom_registry).run_pending()

    assert summary.executed == 3
    assert summary.failed == 0
    assert summary.skipped == 0
    assert summary.passes >= 3

    assert (await store.get_task(a.id)).payload["value"] == 2
    assert (await store.get_task(b.id)).payload["value"] == 4
    final = await store.get_task(c.id)
    assert final.status is TaskStatus.COMPLETED
    assert final.payload["value"] == 8
    assert final.payload["completedAt"]


@pytest.mark.asyncio
async def test_second_run_is_a_noop(store, custom_registry):
    builder = FlowBuilder(store)
    await builder.add_task("DoubleRunner", {"value": 1})
    scheduler = Scheduler(store, custom_registry)

    await scheduler.run_pending()
    summary = await scheduler.run_pending()

    assert summary.executed == 0
    assert summary.passes == 1


@pytest.mark.asyncio
async def test_empty_store_summary(store, registry):
    summary = await Scheduler(store, registry).run_pending()
    assert summary.as_dict() == {
        "executed": 0,
        "failed": 0,
        "skipped": 0,
        "cancelled": 0,
        "awaiting": 0,
        "passes": 1,
    }


@pytest.mark.asyncio
async def test_task_is_never_started_twice(store, custom_registry):
    RecordingRunner.calls = []
    builder = FlowBuilder(store)
    tasks = [await builder.add_task("RecordingRunner") for _ in range(8)]

    scheduler = Scheduler(store, custom_registry).with_concurrency(4)
    await asyncio.gather(scheduler.run_pending(), scheduler.run_pending())

    assert sorted(RecordingRunner.calls) == [t.id for t in tasks]


@pytest.mark.concurrency
@pytest.mark.asyncio
async def test_concurrent_dispatch_completes_diamond(store, custom_registry):
    builder = FlowBuilder(store)
    root = await builder.add_task("DoubleRunner", {"value": 1})
    left = await builder.add_task("DoubleRunner", depends_on=[root])
    right = await builder.add_task("DoubleRunner", depends_on=[root])
    join = await builder.add_task("MedianRunner", depends_on=[left, right])

    summary = await Scheduler(store, custom_registry).with_concurrency(8).run_pending()

    assert summary.executed == 4
    assert (await store.get_task(join.id)).payload["median"] == 4


@pytest.mark.asyncio
async def test_max_passes_bounds_the_loop(store, custom_registry):
    builder = FlowBuilder(store)
    a = await builder.add_task("DoubleRunner", {"value": 1})
    b = await builder.add_task("DoubleRunner", depends_on=[a])

    summary = await Scheduler(store, custom_registry).with_max_passes(1).run_pending()

    assert summary.executed == 1
    assert summary.skipped == 1
    assert (await store.get_task(b.id)).status is TaskStatus.PENDING


@pytest.mark.asyncio
async def test_started_policy_still_waits_for_terminal_dependencies(
    store, registry, manual_facility
):
    builder = FlowBuilder(store)
    root = await builder.add_task("ScientistCheckRunner", {"userData": {"name": "Ada"}})
    child = await builder.add_task(
        "ConstantRunner", {"output": {"value": 1}}, depends_on=[root]
    )

    scheduler = Scheduler(store, registry, manual_facility).with_readiness(ReadinessPolicy.STARTED)
    summary = await scheduler.run_pending()

    assert (await store.get_task(root.id)).status is TaskStatus.IN_PROGRESS
    assert (await store.get_task(child.id)).status is TaskStatus.PENDING
    assert summary.awaiting == 1
    assert summary.skipped == 1


@pytest.mark.asyncio
async def test_run_task_missing_returns_failed(store, registry):
    assert await Scheduler(store, registry).run_task(404) is DispatchResult.FAILED


@pytest.mark.asyncio
async def test_run_task_on_blocked_task_is_not_ready(store, custom_registry):
    builder = FlowBuilder(store)
    a = await builder.add_task("DoubleRunner", {"value": 1})
    b = await builder.add_task("DoubleRunner", depends_on=[a])

    result = await Scheduler(store, custom_registry).run_task(b.id)

    assert result is DispatchResult.NOT_READY
    assert (await store.get_task(b.id)).status is TaskStatus.PENDING


# ==============================================================================
# Cancellation propagation
# ==============================================================================


@pytest.mark.asyncio
async def test_cancellation_propagates_without_running_handler(store, custom_registry):
    RecordingRunner.calls = []
    builder = FlowBuilder(store)
    a = await builder.add_task("ConstantRunner")
    b = await builder.add_task("RecordingRunner", depends_on=[a])
    c = await builder.add_task("RecordingRunner", depends_on=[b])
    await store.transition_status(a.id, TaskStatus.PENDING, TaskStatus.CANCELLED)

    summary = await Scheduler(store, custom_registry).run_pending()

    assert RecordingRunner.calls == []
    assert summary.cancelled == 2
    for task_id, cause in ((b.id, a.id), (c.id, b.id)):
        task = await store.get_task(task_id)
        assert task.status is TaskStatus.CANCELLED
        assert task.payload["cancelReason"] == "dependency_cancelled"
        assert task.payload["cancelledDependencyIds"] == [cause]
        assert "completedAt" not in task.payload
        assert task.completed_at is None


@pytest.mark.asyncio
async def test_cancellation_with_mixed_dependencies(store, custom_registry):
    builder = FlowBuilder(store)
    good = await builder.add_task("DoubleRunner", {"value": 1})
    bad = await builder.add_task("ConstantRunner")
    child = await builder.add_task("DoubleRunner", depends_on=[good, bad])
    await store.transition_status(bad.id, TaskStatus.PENDING, TaskStatus.CANCELLED)

    await Scheduler(store, custom_registry).run_pending()

    task = await store.get_task(child.id)
    assert task.status is TaskStatus.CANCELLED
    assert task.payload["cancelledDependencyIds"] == [bad.id]


@pytest.mark.asyncio
async def test_median_opts_out_of_cancellation(store, custom_registry):
    builder = FlowBuilder(store)
    a = await builder.add_task("DoubleRunner", {"value": 1})
    b = await builder.add_task("ConstantRunner")
    median = await builder.add_task("MedianRunner", depends_on=[a, b])
    await store.transition_status(b.id, TaskStatus.PENDING, TaskStatus.CANCELLED)

    await Scheduler(store, custom_registry).run_pending()

    task = await store.get_task(median.id)
    assert task.status is TaskStatus.COMPLETED
    assert task.payload["median"] == 2
    assert task.payload["sourceTaskIds"] == [a.id]


@pytest.mark.asyncio
async def test_median_of_all_cancelled_is_zero(store, registry):
    builder = FlowBuilder(store)
    a = await builder.add_task("ConstantRunner")
    median = await builder.add_task("MedianRunner", depends_on=[a])
    await store.transition_status(a.id, TaskStatus.PENDING, TaskStatus.CANCELLED)

    await Scheduler(store, registry).run_pending()

    task = await store.get_task(median.id)
    assert task.status is TaskStatus.COMPLETED
    assert task.payload["median"] == 0
    assert task.payload["sourceValues"] == []


# ==============================================================================
# Errors
# ==============================================================================


@pytest.mark.asyncio
async def test_handler_error_cancels_task_and_records_it(store, custom_registry):
    builder = FlowBuilder(store)
    bad = await builder.add_task("ExplodingRunner")
    child = await builder.add_task("DoubleRunner", depends_on=[bad])
    sibling = await builder.add_task("DoubleRunner", {"value": 5})

    summary = await Scheduler(store, custom_registry).run_pending()

    assert summary.failed == 1
    assert summary.cancelled == 1
    assert summary.executed == 1

    task = await store.get_task(bad.id)
    assert task.status is TaskStatus.CANCELLED
    assert task.payload["cancelReason"] == "error"
    assert task.payload["error"] == {"kind": "RuntimeError", "message": "boom"}
    assert (await store.get_task(child.id)).status is TaskStatus.CANCELLED
    assert (await store.get_task(sibling.id)).payload["value"] == 10


@pytest.mark.asyncio
async def test_unknown_handler_is_recorded(store, registry):
    builder = FlowBuilder(store)
    task = await builder.add_task("NoSuchRunner")

    summary = await Scheduler(store, registry).run_pending()

    assert summary.failed == 1
    stored = await store.get_task(task.id)
    assert stored.status is TaskStatus.CANCELLED
    assert stored.payload["error"]["kind"] == "unknown_runner"
    assert "NoSuchRunner" in stored.payload["error"]["message"]


@pytest.mark.asyncio
async def test_configuration_error_is_recorded(store, registry):
    builder = FlowBuilder(store)
    task = await builder.add_task("ConstantRunner", {"output": [1, 2]})

    summary = await Scheduler(store, registry).run_pending()

    assert summary.failed == 1
    stored = await store.get_task(task.id)
    assert stored.payload["error"]["kind"] == "configuration_error"


@pytest.mark.asyncio
async def test_storage_errors_propagate(custom_registry):
    class BrokenStore(InMemoryTaskStore):
        async def count_by_status(self):
            raise StorageError("disk on fire")

    with pytest.raises(StorageError):
        await Scheduler(BrokenStore(), custom_registry).run_pending()


@pytest.mark.asyncio
@pytest.mark.concurrency
async def test_storage_error_waits_for_concurrent_siblings(store, custom_registry):
    class DiskFullRunner(BaseRunner):
        async def execute_task(self, work):
            raise StorageError("disk full")

    class SlowRunner(BaseRunner):
        async def execute_task(self, work):
            await asyncio.sleep(0.05)
            return Completed({"done": True})

    custom_registry.register("DiskFullRunner", DiskFullRunner)
    custom_registry.register("SlowRunner", SlowRunner)
    builder = FlowBuilder(store)
    await builder.add_task("DiskFullRunner")
    slow = [await builder.add_task("SlowRunner") for _ in range(3)]

    scheduler = Scheduler(store, custom_registry).with_concurrency(4)
    with pytest.raises(StorageError, match="disk full"):
        await scheduler.run_pending()

    # Siblings finished before the error surfaced
    for task in slow:
        assert (await store.get_task(task.id)).status is TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_registry_without_runners_fails_every_task(store):
    builder = FlowBuilder(store)
    await builder.add_task("ConstantRunner")
    await builder.add_task("ConstantRunner")

    summary = await Scheduler(store, RunnerRegistry()).run_pending()

    assert summary.failed == 2
    assert (await store.count_by_status()).cancelled == 2
