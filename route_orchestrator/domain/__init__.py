"""
Domain Layer - Static Configuration Models

Defines the configuration an agent is built from: Routes, their step
graphs, Steps, Tools, condition expressions and prompt knowledge.
"""

from route_orchestrator.domain.conditions import (
    Condition,
    ConditionList,
    ConditionLogic,
    PredicateCondition,
    TextCondition,
    as_condition,
)
from route_orchestrator.domain.graph import END_ROUTE, StepGraph, StepGraphError
from route_orchestrator.domain.models import (
    AgentProfile,
    EndStep,
    Guideline,
    OnComplete,
    Route,
    Step,
    Term,
    Tool,
    ToolContext,
    ToolResult,
)
from route_orchestrator.domain.registry import DomainRegistry

__all__ = [
    "Condition",
    "ConditionList",
    "ConditionLogic",
    "PredicateCondition",
    "TextCondition",
    "as_condition",
    "END_ROUTE",
    "StepGraph",
    "StepGraphError",
    "AgentProfile",
    "EndStep",
    "Guideline",
    "OnComplete",
    "Route",
    "Step",
    "Term",
    "Tool",
    "ToolContext",
    "ToolResult",
    "DomainRegistry",
]
