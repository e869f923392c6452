"""Execution layer: registry, scheduler, garbage collector and worker."""

from pytaskdeps.executor.collector import GarbageCollector
from pytaskdeps.executor.registry import RunnerFactory, RunnerRegistry, default_registry
from pytaskdeps.executor.scheduler import Scheduler, SchedulerError
from pytaskdeps.executor.worker import Worker, WorkerError, WorkerHandle

__all__ = [
    "RunnerRegistry",
    "RunnerFactory",
    "default_registry",
    "Scheduler",
    "SchedulerError",
    "GarbageCollector",
    "Worker",
    "WorkerHandle",
    "WorkerError",
]
