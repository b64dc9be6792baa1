"""
Route Orchestrator

Multi-turn conversation orchestration for language-model agents: route
selection, per-route step graphs, data collection, tool calling and
deferred route transitions.
"""

from route_orchestrator.cancellation import CancellationToken
from route_orchestrator.domain import (
    END_ROUTE,
    DomainRegistry,
    EndStep,
    Guideline,
    OnComplete,
    Route,
    Step,
    StepGraph,
    Term,
    Tool,
    ToolContext,
    ToolResult,
)
from route_orchestrator.state import Message, SessionState
from route_orchestrator.execution import StreamChunk, TurnResult
from route_orchestrator.services.agent import Agent

__all__ = [
    "CancellationToken",
    # Domain Layer
    "END_ROUTE",
    "DomainRegistry",
    "EndStep",
    "Guideline",
    "OnComplete",
    "Route",
    "Step",
    "StepGraph",
    "Term",
    "Tool",
    "ToolContext",
    "ToolResult",
    # State Layer
    "Message",
    "SessionState",
    # Execution Layer
    "StreamChunk",
    "TurnResult",
    "Agent",
]
