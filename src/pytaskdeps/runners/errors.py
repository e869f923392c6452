"""Runner error taxonomy.

The scheduler decides what to do with an error by its kind:
``is_retryable()`` errors leave the task untouched for a later pass, every
other error cancels the owning task and is recorded in its payload.
"""

from __future__ import annotations


class RunnerError(Exception):
    """Base class for errors raised while running a task."""

    kind = "runner_error"

    def __init__(self, message: str, task_id: int | None = None, runner_name: str | None = None):
        super().__init__(message)
        self.task_id = task_id
        self.runner_name = runner_name

    def is_retryable(self) -> bool:
        return False


class ConfigurationError(RunnerError):
    """Deployment defect: unknown handler, missing or invalid payload field."""

    kind = "configuration_error"


class UnknownRunnerError(ConfigurationError):
    """No runner is registered under the task's handler name."""

    kind = "unknown_runner"

    def __init__(self, handler_name: str, task_id: int | None = None):
        super().__init__(f"No runner registered for {handler_name!r}", task_id, handler_name)
        self.handler_name = handler_name


class DependencyError(RunnerError):
    """A handler that needs at least one valid upstream value found none."""

    kind = "dependency_error"

    def __init__(
        self,
        message: str,
        task_id: int | None = None,
        runner_name: str | None = None,
        dependency_id: int | None = None,
    ):
        super().__init__(message, task_id, runner_name)
        self.dependency_id = dependency_id


class DependencyDataError(DependencyError):
    """One dependency's payload or output is missing or unusable.

    Aggregating handlers catch this per dependency, log a warning and drop
    that dependency's contribution.
    """

    kind = "dependency_data_error"


class TaskNotFoundError(RunnerError):
    """The task row vanished between scheduling and execution."""

    kind = "task_not_found"

    def __init__(self, task_id: int):
        super().__init__(f"Task not found: {task_id}", task_id)
