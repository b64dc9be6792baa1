"""
Execution Layer - Turn Orchestration

Defines the ConditionEvaluator, StepResolver, RoutingEngine, ToolExecutor
and the ResponsePipeline that ties them into one turn cycle.
"""

from route_orchestrator.execution.conditions import ConditionEvaluation, ConditionEvaluator
from route_orchestrator.execution.steps import StepResolution, StepResolver, StepTransition
from route_orchestrator.execution.routing import RoutingEngine, RoutingOutcome
from route_orchestrator.execution.tools import ToolExecution, ToolExecutor
from route_orchestrator.execution.pipeline import (
    RespondParams,
    ResponsePipeline,
    StreamChunk,
    TurnResult,
)

__all__ = [
    "ConditionEvaluation",
    "ConditionEvaluator",
    "StepResolution",
    "StepResolver",
    "StepTransition",
    "RoutingEngine",
    "RoutingOutcome",
    "ToolExecution",
    "ToolExecutor",
    "RespondParams",
    "ResponsePipeline",
    "StreamChunk",
    "TurnResult",
]
