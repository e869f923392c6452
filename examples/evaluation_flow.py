"""
User Evaluation Flow

Builds the evaluation graph for one user and runs it against an in-memory
batch facility that answers with canned model responses.

Scenario:
- Onboarding check (is the user an active scientist or FOSS dev?)
- Three worth assessments, each with its own randomized prompt
- A threshold gate per assessment guarding a prompt-injection check
- The median of the assessments is the user's evaluation result

The facility completes requests only between scheduler runs, so the
example shows two-phase tasks waiting IN_PROGRESS and being collected on
the next run.

Run:
    PYTHONPATH=src python examples/evaluation_flow.py
"""

import asyncio
import json
import logging
import random

from pytaskdeps import (
    FlowBuilder,
    InMemoryBatchFacility,
    InMemoryTaskStore,
    Scheduler,
    build_evaluation_flow,
    default_registry,
    get_evaluation_result,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def fake_model(request: dict) -> dict:
    """Answer a chat-completion request according to its response schema."""
    schema = request["response_format"]["json_schema"]["schema"]["properties"]
    if "isActiveScientistOrFOSSDev" in schema:
        body = {"isActiveScientistOrFOSSDev": True, "why": "maintains a numerics library"}
    elif "randomizedPrompt" in schema:
        prompt = request["messages"][0]["content"].split("\n\n", 1)[-1]
        body = {"randomizedPrompt": f"In other words: {prompt}"}
    elif "worthAsFractionOfGDP" in schema:
        body = {"worthAsFractionOfGDP": random.uniform(1e-9, 1e-8), "why": "estimate"}
    else:
        body = {"hasPromptInjection": False, "why": "no suspicious content"}
    return {"content": json.dumps(body)}


async def main():
    store = InMemoryTaskStore()
    facility = InMemoryBatchFacility(responder=fake_model)
    scheduler = Scheduler(store, default_registry(), facility)

    await build_evaluation_flow(
        FlowBuilder(store),
        user_id=1,
        user_data={"name": "Grace Hopper", "homepage": "https://example.org/grace"},
    )

    run = 0
    while True:
        run += 1
        summary = await scheduler.run_pending()
        logger.info(f"Run {run}: {summary}")
        if summary.awaiting == 0 and summary.skipped == 0:
            break
        completed = await facility.complete_all()
        logger.info(f"Facility answered {completed} requests")

    result = await get_evaluation_result(store, 1)
    print(f"\nEvaluation result: {result}")
    print(f"Final counts: {(await store.count_by_status()).as_dict()}")


if __name__ == "__main__":
    asyncio.run(main())
