"""Flow builders: construct task graphs before handing them to the scheduler."""

from pytaskdeps.flows.builder import FlowBuilder
from pytaskdeps.flows.evaluation import build_evaluation_flow, get_evaluation_result

__all__ = ["FlowBuilder", "build_evaluation_flow", "get_evaluation_result"]
