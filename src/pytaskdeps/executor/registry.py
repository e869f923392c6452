"""Runner registry: handler name -> runner factory.

The registry is an ordinary object built at process start and handed to
the scheduler. There is no module-level registry, so tests and separate
schedulers never see each other's registrations.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping
from typing import Any

from pytaskdeps.runners import (
    ConstantRunner,
    MedianRunner,
    PromptInjectionRunner,
    RandomizePromptRunner,
    Runner,
    RunnerContext,
    ScientistCheckRunner,
    ThresholdGateRunner,
    UnknownRunnerError,
    WorthAssessmentRunner,
)

logger = logging.getLogger(__name__)

RunnerFactory = Callable[[dict[str, Any], RunnerContext], Runner]
"""Builds a runner from a task payload and the runner context (usually the class itself)."""


class RunnerRegistry:
    """Registry mapping handler names to runner factories.

    Example:
        ```python
        registry = RunnerRegistry()
        registry.register("MedianRunner", MedianRunner)
        runner = registry.resolve("MedianRunner", task.payload, context)
        ```
    """

    def __init__(self, runners: Mapping[str, RunnerFactory] | None = None):
        """Create a registry, optionally pre-populated from a mapping."""
        self._factories: dict[str, RunnerFactory] = {}
        for name, factory in (runners or {}).items():
            self.register(name, factory)

    def register(self, name: str, factory: RunnerFactory) -> RunnerRegistry:
        """Register a runner factory under ``name``.

        Registering an existing name replaces the previous factory.

        Returns:
            self for method chaining
        """
        if not name:
            raise ValueError("Runner name must not be empty")
        if name in self._factories:
            logger.debug(f"Replacing runner registration: {name}")
        else:
            logger.debug(f"Registered runner: {name}")
        self._factories[name] = factory
        return self

    def resolve(
        self,
        name: str,
        payload: dict[str, Any],
        context: RunnerContext,
        task_id: int | None = None,
    ) -> Runner:
        """Instantiate the runner registered under ``name``.

        Raises:
            UnknownRunnerError: If nothing is registered under ``name``
        """
        factory = self._factories.get(name)
        if factory is None:
            raise UnknownRunnerError(name, task_id)
        return factory(payload, context)

    def names(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, name: object) -> bool:
        return name in self._factories

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())

    def __len__(self) -> int:
        return len(self._factories)

    def is_empty(self) -> bool:
        return not self._factories


def default_registry() -> RunnerRegistry:
    """Registry with every built-in runner under its class name."""
    return RunnerRegistry(
        {
            "ConstantRunner": ConstantRunner,
            "MedianRunner": MedianRunner,
            "ThresholdGateRunner": ThresholdGateRunner,
            "ScientistCheckRunner": ScientistCheckRunner,
            "RandomizePromptRunner": RandomizePromptRunner,
            "WorthAssessmentRunner": WorthAssessmentRunner,
            "PromptInjectionRunner": PromptInjectionRunner,
        }
    )
