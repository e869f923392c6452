"""
Simple Chain Example - SQLite Version

Three sources feed a median, and a threshold gate decides whether the
final step runs at all.

## Pattern Shown: Readiness Loop

    source(1) ─┐
    source(3) ─┼─> MedianRunner ─> ThresholdGateRunner ─> ConstantRunner
    source(8) ─┘

- One ``run_pending()`` call drives the whole graph to completion
- Each pass picks up the tasks the previous pass unblocked
- Raising the threshold above the median cancels the gate and its dependent

## Run with:
```bash
PYTHONPATH=src python examples/simple_chain.py
```
"""

import asyncio
import logging

from pytaskdeps import FlowBuilder, GarbageCollector, Scheduler, SqliteTaskStore, default_registry

logging.basicConfig(level=logging.INFO, format="%(name)s - %(levelname)s - %(message)s")


async def main():
    store = SqliteTaskStore("data/simple_chain.db")
    await store.connect()
    await store.reset()

    builder = FlowBuilder(store)
    sources = [
        await builder.add_task("ConstantRunner", {"output": {"value": v}}) for v in (1, 3, 8)
    ]
    median = await builder.add_task("MedianRunner", depends_on=sources)
    gate = await builder.add_task(
        "ThresholdGateRunner", {"threshold": 2, "valueField": "median"}, depends_on=[median]
    )
    final = await builder.add_task(
        "ConstantRunner", {"output": {"message": "median is large enough"}}, depends_on=[gate]
    )

    summary = await Scheduler(store, default_registry()).run_pending()
    print(f"\nRun summary: {summary}")

    for task in await store.list_tasks():
        print(f"  {task}: {task.payload}")

    result = await store.get_task(final.id)
    print(f"\nFinal task: {result.status}")

    deleted = await GarbageCollector(store).collect()
    print(f"Garbage collected {len(deleted)} tasks")
    await store.close()


if __name__ == "__main__":
    asyncio.run(main())
