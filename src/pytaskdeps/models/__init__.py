"""Data models for the task dependency engine.

Re-exports the task snapshot types, status enumerations, summaries and the
payload merge helpers used by every store.
"""

from pytaskdeps.models.payload import decode_payload, encode_payload, merge_payload
from pytaskdeps.models.status import ReadinessPolicy, TaskStatus
from pytaskdeps.models.summary import RunSummary, TaskSummary
from pytaskdeps.models.task import Dependency, Task, TaskWithDependencies, utc_now

__all__ = [
    "Task",
    "Dependency",
    "TaskWithDependencies",
    "TaskStatus",
    "ReadinessPolicy",
    "RunSummary",
    "TaskSummary",
    "merge_payload",
    "encode_payload",
    "decode_payload",
    "utc_now",
]
