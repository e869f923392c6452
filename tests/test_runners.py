"""
Built-in runner tests: median, threshold gate, constant and prompt runners.
"""

from datetime import UTC, datetime, timedelta

import pytest

from pytaskdeps import (
    Cancelled,
    Completed,
    ConfigurationError,
    DispatchResult,
    FlowBuilder,
    InMemoryBatchFacility,
    RunnerContext,
    Scheduler,
    TaskStatus,
)
from pytaskdeps.facility import FacilityError
from pytaskdeps.runners import (
    BaseRunner,
    ConstantRunner,
    MedianRunner,
    PromptInjectionRunner,
    WorthAssessmentRunner,
    median,
    parse_facility_output,
)
from pytaskdeps.runners.prompt import DATA_PLACEHOLDER, parse_duration


async def _values(store, values, handler="ConstantRunner"):
    builder = FlowBuilder(store)
    return [await builder.add_task(handler, {"output": {"value": v}}) for v in values]


# ==============================================================================
# Median
# ==============================================================================


@pytest.mark.parametrize(
    "values,expected",
    [([1, 3], 2), ([1, 2, 3], 2), ([], 0), ([5], 5), ([4, 1, 3, 2], 2.5)],
)
def test_median_rule(values, expected):
    assert median(values) == expected


@pytest.mark.asyncio
@pytest.mark.parametrize("values,expected", [([1, 3], 2), ([1, 2, 3], 2)])
async def test_median_runner(store, registry, values, expected):
    sources = await _values(store, values)
    task = await FlowBuilder(store).add_task("MedianRunner", depends_on=sources)

    await Scheduler(store, registry).run_pending()

    stored = await store.get_task(task.id)
    assert stored.status is TaskStatus.COMPLETED
    assert stored.payload["median"] == expected
    assert sorted(stored.payload["sourceValues"]) == sorted(values)


@pytest.mark.asyncio
async def test_median_runner_without_dependencies(store, registry):
    task = await FlowBuilder(store).add_task("MedianRunner")

    await Scheduler(store, registry).run_pending()

    assert (await store.get_task(task.id)).payload["median"] == 0


@pytest.mark.asyncio
async def test_median_filters_by_source_handler_and_field(store, registry):
    builder = FlowBuilder(store)
    wanted = await builder.add_task("ConstantRunner", {"output": {"score": 10}})
    other = await builder.add_task("OtherConstant", {"output": {"score": 99}})
    registry.register("OtherConstant", ConstantRunner)
    task = await builder.add_task(
        "MedianRunner",
        {"valueField": "score", "sourceHandler": "ConstantRunner"},
        depends_on=[wanted, other],
    )

    await Scheduler(store, registry).run_pending()

    stored = await store.get_task(task.id)
    assert stored.payload["median"] == 10
    assert stored.payload["sourceTaskIds"] == [wanted.id]


@pytest.mark.asyncio
async def test_median_skips_non_numeric_values(store, registry):
    builder = FlowBuilder(store)
    good = await builder.add_task("ConstantRunner", {"output": {"value": 3}})
    text = await builder.add_task("ConstantRunner", {"output": {"value": "three"}})
    flag = await builder.add_task("ConstantRunner", {"output": {"value": True}})
    task = await builder.add_task("MedianRunner", depends_on=[good, text, flag])

    await Scheduler(store, registry).run_pending()

    stored = await store.get_task(task.id)
    assert stored.payload["median"] == 3
    assert stored.payload["sourceValues"] == [3]


# ==============================================================================
# Threshold gate
# ==============================================================================


@pytest.mark.asyncio
async def test_threshold_below_cancels_gate_and_dependents(store, registry):
    (source,) = await _values(store, [1e-12])
    builder = FlowBuilder(store)
    gate = await builder.add_task("ThresholdGateRunner", {"threshold": 1e-11}, depends_on=[source])
    after = await builder.add_task("ConstantRunner", depends_on=[gate])

    summary = await Scheduler(store, registry).run_pending()

    stored = await store.get_task(gate.id)
    assert stored.status is TaskStatus.CANCELLED
    assert stored.payload["cancelReason"] == "threshold_not_met"
    assert stored.payload["exceedsThreshold"] is False
    assert (await store.get_task(after.id)).status is TaskStatus.CANCELLED
    assert summary.cancelled == 2


@pytest.mark.asyncio
async def test_threshold_above_completes(store, registry):
    (source,) = await _values(store, [1e-10])
    gate = await FlowBuilder(store).add_task("ThresholdGateRunner", depends_on=[source])

    await Scheduler(store, registry).run_pending()

    stored = await store.get_task(gate.id)
    assert stored.status is TaskStatus.COMPLETED
    assert stored.payload["exceedsThreshold"] is True
    assert stored.payload["value"] == 1e-10
    assert stored.payload["threshold"] == 1e-11
    assert stored.payload["sourceTaskId"] == source.id


@pytest.mark.asyncio
async def test_threshold_equal_does_not_pass(store, registry):
    (source,) = await _values(store, [0.5])
    gate = await FlowBuilder(store).add_task(
        "ThresholdGateRunner", {"threshold": 0.5}, depends_on=[source]
    )

    await Scheduler(store, registry).run_pending()

    assert (await store.get_task(gate.id)).status is TaskStatus.CANCELLED


@pytest.mark.asyncio
async def test_threshold_without_value_is_dependency_error(store, registry):
    source = await FlowBuilder(store).add_task("ConstantRunner")
    gate = await FlowBuilder(store).add_task("ThresholdGateRunner", depends_on=[source])

    summary = await Scheduler(store, registry).run_pending()

    stored = await store.get_task(gate.id)
    assert summary.failed == 1
    assert stored.payload["error"]["kind"] == "dependency_error"


@pytest.mark.asyncio
async def test_threshold_invalid_configuration(store, registry):
    (source,) = await _values(store, [1.0])
    gate = await FlowBuilder(store).add_task(
        "ThresholdGateRunner", {"threshold": "high"}, depends_on=[source]
    )

    await Scheduler(store, registry).run_pending()

    assert (await store.get_task(gate.id)).payload["error"]["kind"] == "configuration_error"


# ==============================================================================
# Base runner contract
# ==============================================================================


class WrongOutcomeRunner(BaseRunner):
    async def execute_task(self, work):
        return {"not": "an outcome"}


class LifecycleRunner(BaseRunner):
    events: list[str] = []

    async def open(self):
        LifecycleRunner.events.append("open")

    async def close(self):
        LifecycleRunner.events.append("close")

    async def execute_task(self, work):
        raise ValueError("nope")


@pytest.mark.asyncio
async def test_non_outcome_is_configuration_error(store, registry):
    registry.register("WrongOutcomeRunner", WrongOutcomeRunner)
    task = await FlowBuilder(store).add_task("WrongOutcomeRunner")

    await Scheduler(store, registry).run_pending()

    assert (await store.get_task(task.id)).payload["error"]["kind"] == "configuration_error"


@pytest.mark.asyncio
async def test_close_runs_when_execute_fails(store, registry):
    LifecycleRunner.events = []
    registry.register("LifecycleRunner", LifecycleRunner)
    await FlowBuilder(store).add_task("LifecycleRunner")

    await Scheduler(store, registry).run_pending()

    assert LifecycleRunner.events == ["open", "close"]


@pytest.mark.asyncio
async def test_initiate_twice_skips(store):
    task = await FlowBuilder(store).add_task("MedianRunner")
    runner = MedianRunner({}, RunnerContext(store=store))

    assert await runner.initiate_task(task.id) is DispatchResult.EXECUTED
    assert await runner.initiate_task(task.id) is DispatchResult.SKIPPED


@pytest.mark.asyncio
async def test_synchronous_runner_leaves_in_progress_task_alone(store):
    task = await FlowBuilder(store).add_task("MedianRunner")
    await store.transition_status(task.id, TaskStatus.PENDING, TaskStatus.IN_PROGRESS)
    runner = MedianRunner({}, RunnerContext(store=store))

    assert await runner.check_output(task.id) is DispatchResult.WAITING
    assert (await store.get_task(task.id)).status is TaskStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_apply_outcome_after_external_cancel_is_dropped(store):
    task = await FlowBuilder(store).add_task("MedianRunner")
    await store.transition_status(task.id, TaskStatus.PENDING, TaskStatus.CANCELLED)
    runner = MedianRunner({}, RunnerContext(store=store))

    assert await runner.apply_outcome(task.id, Completed({"x": 1})) is DispatchResult.SKIPPED
    assert await runner.apply_outcome(task.id, Cancelled("late")) is DispatchResult.SKIPPED
    assert "x" not in (await store.get_task(task.id)).payload


@pytest.mark.asyncio
async def test_none_in_result_removes_key(store):
    task = await FlowBuilder(store).add_task("MedianRunner", {"result": {"why": "old"}})
    await store.transition_status(task.id, TaskStatus.PENDING, TaskStatus.IN_PROGRESS)
    runner = MedianRunner({}, RunnerContext(store=store))

    outcome = Completed({"result": {"why": None, "value": 1}})
    assert await runner.apply_outcome(task.id, outcome) is DispatchResult.EXECUTED

    assert (await store.get_task(task.id)).payload["result"] == {"value": 1}


def test_require_payload():
    runner = MedianRunner({"present": 1}, RunnerContext(store=None))
    assert runner.require_payload("present") == 1
    with pytest.raises(ConfigurationError):
        runner.require_payload("absent", 7)


# ==============================================================================
# Facility output parsing and prompt runners
# ==============================================================================


def test_parse_facility_output_decodes_content():
    assert parse_facility_output({"content": '{"a": 1}'}) == {"a": 1}
    assert parse_facility_output({"a": 1}) == {"a": 1}
    with pytest.raises(FacilityError):
        parse_facility_output({"content": "[1]"})
    with pytest.raises(FacilityError):
        parse_facility_output("text")


@pytest.mark.parametrize(
    "text,days", [("30d", 30), ("2w", 14), ("6m", 180), ("1y", 365), (" 1Y ", 365)]
)
def test_parse_duration(text, days):
    assert parse_duration(text) == timedelta(days=days)


@pytest.mark.parametrize("text", ["", "y", "1x", "-1d", "1.5y"])
def test_parse_duration_rejects(text):
    with pytest.raises(ValueError):
        parse_duration(text)


@pytest.mark.asyncio
async def test_worth_prompt_uses_randomized_prompt(store, registry, responder, facility):
    builder = FlowBuilder(store)
    randomize = await builder.add_task(
        "RandomizePromptRunner", {"originalPrompt": f"Rate {DATA_PLACEHOLDER} of <WORLD_GDP>"}
    )
    worth = await builder.add_task(
        "WorthAssessmentRunner",
        {"userData": {"name": "Ada"}, "worldGdp": 100},
        depends_on=[randomize],
    )

    await Scheduler(store, registry, facility).run_pending()

    prompt = responder.requests[-1]["messages"][0]["content"]
    assert prompt.startswith("Rephrased: Rate ")
    assert '{"name": "Ada"}' in prompt
    assert prompt.endswith("of 100")
    assert (await store.get_task(worth.id)).status is TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_prompt_request_shape(store):
    task = await FlowBuilder(store).add_task("WorthAssessmentRunner", {"userData": {"id": 1}})
    work = await store.get_task_with_dependencies(task.id)
    runner = WorthAssessmentRunner(task.payload, RunnerContext(store=store))

    request = await runner.build_request(work)

    assert request["model"] == "gpt-4o-mini"
    assert request["temperature"] == 0
    assert request["response_format"]["type"] == "json_schema"
    content = request["messages"][0]["content"]
    assert "<WORLD_GDP>" not in content
    assert content.endswith('Input: {"id": 1}')


@pytest.mark.asyncio
async def test_prompt_injection_records_ban(store):
    task = await FlowBuilder(store).add_task(
        "PromptInjectionRunner", {"banDuration": "1y", "banReason": "spam"}
    )
    now = datetime(2025, 1, 1, tzinfo=UTC)
    runner = PromptInjectionRunner(
        task.payload, RunnerContext(store=store, facility=InMemoryBatchFacility(), clock=lambda: now)
    )

    outcome = await runner.handle_output(task, {"hasPromptInjection": True, "why": "x"})

    assert isinstance(outcome, Completed)
    assert outcome.result["hasPromptInjection"] is True
    assert outcome.result["banUntil"] == (now + timedelta(days=365)).isoformat()
    assert outcome.result["banReason"] == "spam"


@pytest.mark.asyncio
async def test_prompt_injection_clean(store):
    task = await FlowBuilder(store).add_task("PromptInjectionRunner", {"banDuration": "1y"})
    runner = PromptInjectionRunner(task.payload, RunnerContext(store=store))

    outcome = await runner.handle_output(task, {"hasPromptInjection": False, "why": "x"})

    assert outcome.result["hasPromptInjection"] is False
    assert "banUntil" not in outcome.result

