"""
Prompt building for routing, step responses, extraction, completion and
fallback replies.

Builders collect the template variables; the wording lives in the
.jinja2 files. User-authored strings (step prompts, guideline conditions)
are rendered against the TemplateContext first so they may reference
collected data.
"""

from typing import Any, Dict, List, Optional

from ...domain.models import AgentProfile, Guideline, Route, Step, Term, Tool
from ..templating import TemplateContext, render_template
from .loader import render
from .templates import Template


# =============================================================================
# HELPERS
# =============================================================================

def merge_terms(agent_terms: List[Term], route_terms: List[Term]) -> List[Term]:
    """Union by name (case-insensitive); route-level definitions win."""
    merged: Dict[str, Term] = {}
    for term in list(agent_terms) + list(route_terms):
        merged[term.name.lower()] = term
    return list(merged.values())


def format_guidelines(guidelines: List[Guideline], ctx: TemplateContext) -> List[str]:
    lines = []
    for guideline in guidelines:
        if not guideline.enabled:
            continue
        action = render_template(guideline.action, ctx)
        if guideline.condition:
            lines.append(f"When {render_template(guideline.condition, ctx)}, then {action}")
        else:
            lines.append(action)
    return lines


def _history_vars(ctx: TemplateContext, window: Optional[int]) -> Dict[str, Any]:
    history = ctx.history[-window:] if window else ctx.history
    return {"history": history, "last_message": ctx.last_user_message()}


def _knowledge_vars(
    ctx: TemplateContext,
    route: Optional[Route],
    agent_terms: List[Term],
    agent_guidelines: List[Guideline],
) -> Dict[str, Any]:
    route_guidelines = route.guidelines if route else []
    return {
        "rules": [render_template(rule, ctx) for rule in (route.rules if route else [])],
        "prohibitions": [render_template(item, ctx) for item in (route.prohibitions if route else [])],
        "guidelines": format_guidelines(list(agent_guidelines) + list(route_guidelines), ctx),
        "terms": merge_terms(agent_terms, route.terms if route else []),
    }


# =============================================================================
# BUILDER FUNCTIONS
# =============================================================================

def build_routing_prompt(
    agent: Optional[AgentProfile],
    routes: List[Route],
    route_conditions: Dict[str, List[str]],
    ctx: TemplateContext,
    active_route: Optional[Route] = None,
    active_steps: Optional[List[Step]] = None,
    history_window: Optional[int] = None,
) -> str:
    """
    Build the prompt asking the model to score every eligible route.

    route_conditions maps route id to the text leaves of its `when`
    condition, shown as "Triggered when: ...".
    """
    route_views = [
        {
            "id": route.id,
            "title": route.title,
            "description": render_template(route.description, ctx),
            "conditions": [render_template(text, ctx) for text in route_conditions.get(route.id, [])],
        }
        for route in routes
    ]
    return render(
        Template.ROUTING,
        agent=agent,
        routes=route_views,
        active_route=active_route,
        active_steps=active_steps or [],
        collected_data=ctx.data,
        **_history_vars(ctx, history_window),
    )


def build_step_response_prompt(
    agent: Optional[AgentProfile],
    route: Route,
    step: Optional[Step],
    ctx: TemplateContext,
    directives: List[str],
    tools: List[Tool],
    agent_terms: List[Term],
    agent_guidelines: List[Guideline],
    history_window: Optional[int] = None,
) -> str:
    step_prompt = None
    fields_to_collect: List[str] = []
    if step is not None:
        step_prompt = render_template(step.prompt or step.description, ctx)
        fields_to_collect = [name for name in step.collect if ctx.data.get(name) is None]

    return render(
        Template.STEP_RESPONSE,
        agent=agent,
        route=route,
        step_prompt=step_prompt,
        fields_to_collect=fields_to_collect,
        missing_fields=route.missing_fields(ctx.data),
        collected_data=ctx.data,
        directives=directives,
        tools=tools,
        **_knowledge_vars(ctx, route, agent_terms, agent_guidelines),
        **_history_vars(ctx, history_window),
    )


def build_extraction_prompt(route: Route, ctx: TemplateContext, history_window: Optional[int] = None) -> str:
    return render(
        Template.DATA_EXTRACTION,
        route=route,
        fields=route.collectible_fields,
        collected_data=ctx.data,
        **_history_vars(ctx, history_window),
    )


def build_completion_prompt(
    agent: Optional[AgentProfile],
    route: Route,
    ctx: TemplateContext,
    agent_terms: List[Term],
    agent_guidelines: List[Guideline],
    history_window: Optional[int] = None,
) -> str:
    return render(
        Template.ROUTE_COMPLETION,
        agent=agent,
        route=route,
        prompt=render_template(route.end_step.prompt, ctx),
        collected_data=ctx.data,
        **_knowledge_vars(ctx, route, agent_terms, agent_guidelines),
        **_history_vars(ctx, history_window),
    )


def build_fallback_prompt(
    agent: Optional[AgentProfile],
    ctx: TemplateContext,
    agent_terms: List[Term],
    agent_guidelines: List[Guideline],
    history_window: Optional[int] = None,
) -> str:
    return render(
        Template.FALLBACK_RESPONSE,
        agent=agent,
        **_knowledge_vars(ctx, None, agent_terms, agent_guidelines),
        **_history_vars(ctx, history_window),
    )
