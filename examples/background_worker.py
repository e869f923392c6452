"""
Background Worker Example

A Worker re-runs the scheduler on a fixed interval, so two-phase tasks
submitted on one tick are collected on a later one, and finished graphs
are garbage collected after every tick.

Configuration can come from the environment:
    PYTASKDEPS_STORE_URL      e.g. sqlite://data/worker.db or redis://localhost:6379/0
    PYTASKDEPS_POLL_INTERVAL  seconds between ticks
    PYTASKDEPS_CONCURRENCY    tasks dispatched concurrently per pass

Run:
    PYTHONPATH=src python examples/background_worker.py
"""

import asyncio
import json
import logging

from pytaskdeps import (
    FlowBuilder,
    GarbageCollector,
    InMemoryBatchFacility,
    Scheduler,
    Worker,
    default_registry,
    open_store,
)

logging.basicConfig(level=logging.INFO, format="%(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


async def slow_model(request: dict) -> dict:
    await asyncio.sleep(0.1)
    return {"content": json.dumps({"isActiveScientistOrFOSSDev": True, "why": "demo"})}


async def main():
    store = await open_store()
    facility = InMemoryBatchFacility(responder=slow_model)

    builder = FlowBuilder(store)
    for user_id in range(3):
        check = await builder.add_task(
            "ScientistCheckRunner", {"userId": user_id, "userData": {"id": user_id}}
        )
        await builder.add_task("ConstantRunner", {"output": {"onboarded": True}}, depends_on=[check])

    scheduler = Scheduler(store, default_registry(), facility).from_env()
    worker = (
        Worker(scheduler, "worker-1")
        .with_poll_interval(0.5)
        .with_garbage_collection(GarbageCollector(store))
        .from_env()
    )
    handle = await worker.start()

    # Stand-in for the external service finishing requests in the background
    for _ in range(3):
        await asyncio.sleep(0.5)
        await facility.complete_all()

    await asyncio.sleep(1.0)
    await handle.shutdown()

    logger.info(f"Ticks: {worker.ticks}, last summary: {worker.last_summary}")
    logger.info(f"Remaining tasks: {(await store.count_by_status()).as_dict()}")
    await store.close()


if __name__ == "__main__":
    asyncio.run(main())
