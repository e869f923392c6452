"""
pytaskdeps: persistent DAG task scheduler with pluggable runners

Tasks are nodes in a dependency graph stored in a TaskStore. A Scheduler
repeatedly finds tasks whose dependencies have finished and hands each to
the runner registered under its handler name. Runners either finish
synchronously or submit work to an external batch facility and finish on a
later pass. Cancellation propagates from a task to its dependents, and a
GarbageCollector removes finished subgraphs.

Design Pattern: Façade Pattern
This module re-exports the public API from the subpackages.

Example:
    ```python
    import asyncio
    from pytaskdeps import FlowBuilder, Scheduler, default_registry, open_store

    async def main():
        store = await open_store("sqlite:///tasks.db")
        builder = FlowBuilder(store)

        a = await builder.add_task("ConstantRunner", {"output": {"value": 1}})
        b = await builder.add_task("ConstantRunner", {"output": {"value": 3}})
        await builder.add_task("MedianRunner", depends_on=[a, b])

        summary = await Scheduler(store, default_registry()).run_pending()
        print(summary)
        await store.close()

    asyncio.run(main())
    ```
"""

# Models
from pytaskdeps.models import (
    ReadinessPolicy,
    RunSummary,
    Task,
    TaskStatus,
    TaskSummary,
    TaskWithDependencies,
    merge_payload,
)

# Storage (Adapter pattern)
from pytaskdeps.storage import (
    InvalidTransitionError,
    StorageError,
    TaskStore,
    open_store,
)
from pytaskdeps.storage.memory import InMemoryTaskStore
from pytaskdeps.storage.sqlite import SqliteTaskStore

# External facility
from pytaskdeps.facility import (
    BatchFacility,
    FacilityError,
    InMemoryBatchFacility,
    OutputNotReadyError,
)

# Runners
from pytaskdeps.runners import (
    AwaitingOutput,
    BaseRunner,
    Cancelled,
    Completed,
    ConfigurationError,
    ConstantRunner,
    DependencyDataError,
    DependencyError,
    DispatchResult,
    MedianRunner,
    RunnerContext,
    RunnerError,
    TaskNotFoundError,
    ThresholdGateRunner,
    TwoPhaseRunner,
    UnknownRunnerError,
)

# Execution
from pytaskdeps.executor import (
    GarbageCollector,
    RunnerRegistry,
    Scheduler,
    SchedulerError,
    Worker,
    WorkerError,
    WorkerHandle,
    default_registry,
)

# Flows
from pytaskdeps.flows import FlowBuilder, build_evaluation_flow, get_evaluation_result

__version__ = "0.1.0"

__all__ = [
    # Models
    "Task",
    "TaskWithDependencies",
    "TaskStatus",
    "ReadinessPolicy",
    "RunSummary",
    "TaskSummary",
    "merge_payload",
    # Storage
    "TaskStore",
    "StorageError",
    "InvalidTransitionError",
    "InMemoryTaskStore",
    "SqliteTaskStore",
    "open_store",
    # Facility
    "BatchFacility",
    "FacilityError",
    "OutputNotReadyError",
    "InMemoryBatchFacility",
    # Runners
    "BaseRunner",
    "TwoPhaseRunner",
    "RunnerContext",
    "Completed",
    "AwaitingOutput",
    "Cancelled",
    "DispatchResult",
    "RunnerError",
    "ConfigurationError",
    "UnknownRunnerError",
    "DependencyError",
    "DependencyDataError",
    "TaskNotFoundError",
    "MedianRunner",
    "ThresholdGateRunner",
    "ConstantRunner",
    # Execution
    "RunnerRegistry",
    "default_registry",
    "Scheduler",
    "SchedulerError",
    "GarbageCollector",
    "Worker",
    "WorkerHandle",
    "WorkerError",
    # Flows
    "FlowBuilder",
    "build_evaluation_flow",
    "get_evaluation_result",
]
