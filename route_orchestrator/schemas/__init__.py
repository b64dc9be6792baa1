"""
Schemas - Structured Output Models for LLM Responses

Defines the Pydantic models used for structured LLM outputs, ensuring
predictable and parseable results from routing, response and completion
calls.
"""

from route_orchestrator.schemas.responses import (
    CompletionResponse,
    FallbackResponse,
    MessageResponse,
    build_extraction_model,
    build_routing_model,
    build_step_response_model,
    route_scores,
)

__all__ = [
    "CompletionResponse",
    "FallbackResponse",
    "MessageResponse",
    "build_extraction_model",
    "build_routing_model",
    "build_step_response_model",
    "route_scores",
]
