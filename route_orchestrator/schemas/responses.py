"""
Schemas - Structured Output Models for LLM Responses

This module defines the Pydantic models the model's structured output must
match. Static replies (completion, fallback) use fixed models; routing and
step responses depend on the configured routes, so their models are built
per call with pydantic.create_model.
"""

from typing import Any, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, Field, create_model

from ..domain.models import Route, Step


class MessageResponse(BaseModel):
    """The strict JSON structure for replies that only carry text."""
    message: str = Field(
        ...,
        description="The natural language response to show the user."
    )


class CompletionResponse(MessageResponse):
    """Wrap-up reply sent when a route has collected everything it needs."""
    pass


class FallbackResponse(MessageResponse):
    """Reply generated when no route applies."""
    pass


# =============================================================================
# Routing
# =============================================================================

def build_routing_model(routes: List[Route]) -> Type[BaseModel]:
    """
    Build the routing decision model.

    Every route gets an integer score field (0-100). Field names are
    positional; the route id is the alias, so dumping by alias yields
    {route_id: score}.
    """
    score_fields: Dict[str, Any] = {
        f"route_{index}": (
            int,
            Field(..., ge=0, le=100, alias=route.id, description=f"Score for '{route.title}'"),
        )
        for index, route in enumerate(routes)
    }
    scores_model = create_model("RouteScores", **score_fields)

    fields: Dict[str, Any] = {
        "context": (str, Field(..., description="One sentence summary of what the user wants right now.")),
        "routes": (scores_model, Field(..., description="Relevance score 0-100 for every route.")),
        "response_directives": (
            List[str],
            Field(default_factory=list, description="Short points the reply should address."),
        ),
    }
    return create_model("RoutingDecision", **fields)


def route_scores(decision: BaseModel) -> Dict[str, int]:
    """Extract {route_id: score} from a RoutingDecision instance."""
    return decision.routes.model_dump(by_alias=True)


# =============================================================================
# Data Collection
# =============================================================================

def _field_annotation(route: Route, name: str) -> Any:
    if route.data_model is not None and name in route.data_model.model_fields:
        return route.data_model.model_fields[name].annotation
    return str


def _collect_fields(route: Route, names: List[str]) -> Dict[str, Tuple[Any, Any]]:
    fields: Dict[str, Tuple[Any, Any]] = {}
    for name in names:
        annotation = _field_annotation(route, name)
        fields[name] = (Optional[annotation], Field(None, description=f"Value of '{name}' if the user provided it."))
    return fields


def build_step_response_model(route: Route, step: Optional[Step]) -> Type[BaseModel]:
    """
    {message, data?, <collectible fields>...}

    The step's collect fields come first; the remaining route fields are
    included so a user answering ahead of the flow is still captured.
    """
    names = list(step.collect) if step else []
    for name in route.collectible_fields:
        if name not in names:
            names.append(name)

    fields: Dict[str, Any] = {
        "message": (str, Field(..., description="The natural language response to show the user.")),
    }
    if route.response_output_model is not None:
        fields["data"] = (Optional[route.response_output_model], Field(None))
    fields.update(_collect_fields(route, names))
    return create_model("StepResponse", **fields)


def build_extraction_model(route: Route) -> Type[BaseModel]:
    """Every collectible field of the route, all optional."""
    return create_model("ExtractedData", **_collect_fields(route, route.collectible_fields))
