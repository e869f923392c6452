"""Runner contract, shared base behaviour and built-in runners."""

from pytaskdeps.runners.base import (
    CORRELATION_KEY,
    BaseRunner,
    Runner,
    RunnerContext,
    parse_facility_output,
)
from pytaskdeps.runners.errors import (
    ConfigurationError,
    DependencyDataError,
    DependencyError,
    RunnerError,
    TaskNotFoundError,
    UnknownRunnerError,
)
from pytaskdeps.runners.outcome import (
    AwaitingOutput,
    Cancelled,
    Completed,
    DispatchResult,
    TaskOutcome,
)
from pytaskdeps.runners.prompt import (
    PromptInjectionRunner,
    PromptRunner,
    RandomizePromptRunner,
    ScientistCheckRunner,
    WorthAssessmentRunner,
)
from pytaskdeps.runners.two_phase import TwoPhaseRunner
from pytaskdeps.runners.utility import (
    ConstantRunner,
    MedianRunner,
    ThresholdGateRunner,
    median,
)

__all__ = [
    "CORRELATION_KEY",
    "BaseRunner",
    "Runner",
    "RunnerContext",
    "TwoPhaseRunner",
    "parse_facility_output",
    "Completed",
    "AwaitingOutput",
    "Cancelled",
    "TaskOutcome",
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
    "median",
    "PromptRunner",
    "ScientistCheckRunner",
    "RandomizePromptRunner",
    "WorthAssessmentRunner",
    "PromptInjectionRunner",
]
