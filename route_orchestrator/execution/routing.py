"""
Routing Engine - Route and Step Selection

Decides, once per turn, which route applies and which of its steps runs.

Order of precedence:
1. A pending transition left by a completed route always wins.
2. Routes whose skip_if predicates fire (OR) are excluded, as are routes
   whose `when` predicates fail (AND).
3. One surviving route is selected directly. Several are scored 0-100 by
   the model from their descriptions and natural-language conditions; the
   highest score wins and ties go to the earliest-declared route.

The step is then resolved deterministically by the StepResolver.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ..cancellation import CancellationToken, check_cancelled
from ..domain.conditions import ConditionLogic
from ..domain.models import AgentProfile, Route, Step
from ..llm.interface import GenerationRequest, LLMProvider
from ..schemas.responses import build_routing_model, route_scores
from ..state.models import Message, SessionState
from ..state.session import clear_pending_transition, enter_route, merge_collected
from .conditions import ConditionEvaluator
from .prompts.builders import build_routing_prompt
from .steps import StepResolver, StepTransition
from .templating import TemplateContext, build_template_context

logger = logging.getLogger(__name__)


@dataclass
class RoutingOutcome:
    """
    Result of the routing phase.

    `session` already points at the selected route (entered, initial data
    merged) but not yet at `step`; the pipeline enters the step.
    """
    session: SessionState
    route: Optional[Route] = None
    step: Optional[Step] = None
    directives: List[str] = field(default_factory=list)
    is_route_complete: bool = False
    scores: Dict[str, int] = field(default_factory=dict)
    forced: bool = False
    transition: Optional[StepTransition] = None


class RoutingEngine:
    def __init__(
        self,
        llm_provider: LLMProvider,
        evaluator: Optional[ConditionEvaluator] = None,
        step_resolver: Optional[StepResolver] = None,
        agent: Optional[AgentProfile] = None,
        min_route_score: int = 0,
        temperature: float = 0.0,
        history_window: Optional[int] = None,
    ):
        self.llm = llm_provider
        self.evaluator = evaluator or ConditionEvaluator()
        self.step_resolver = step_resolver or StepResolver(self.evaluator)
        self.agent = agent
        self.min_route_score = min_route_score
        self.temperature = temperature
        self.history_window = history_window

    async def decide(
        self,
        routes: List[Route],
        session: SessionState,
        history: List[Message],
        context: Dict,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RoutingOutcome:
        if not routes:
            return RoutingOutcome(session=session)

        # 1. Pending transition (always wins over scoring)
        forced_route, session = self._consume_pending_transition(routes, session)

        ctx = build_template_context(session, history, context)
        directives: List[str] = []
        scores: Dict[str, int] = {}

        if forced_route is not None:
            route = forced_route
        else:
            # 2. Gating
            eligible = await self.filter_routes(routes, ctx)
            if not eligible:
                logger.info("No eligible route after skip/when gating")
                return RoutingOutcome(session=session)

            # 3. Selection
            if len(eligible) == 1:
                route = eligible[0]
                logger.debug(f"Single eligible route '{route.id}', skipping scoring")
            else:
                check_cancelled(cancel_token)
                scores, directives = await self._score_routes(eligible, session, ctx, cancel_token)
                selection = self.decide_route_from_scores(eligible, scores)
                if selection is None:
                    logger.info(f"No route reached the minimum score {self.min_route_score}: {scores}")
                    return RoutingOutcome(session=session, scores=scores, directives=directives)
                route, best = selection
                logger.info(f"Route '{route.id}' selected with score {best}")

        # 4. Enter the route if it is not the active one
        if forced_route is not None or session.current_route is None or session.current_route.id != route.id:
            session = enter_route(session, route.id, route.title)
            if route.initial_data:
                session = merge_collected(session, route.initial_data)
            logger.info(f"Entered route '{route.id}'")

        step, is_complete, transition = await self.resolve_step(route, session, history, context)
        return RoutingOutcome(
            session=session,
            route=route,
            step=step,
            directives=directives,
            is_route_complete=is_complete,
            scores=scores,
            forced=forced_route is not None,
            transition=transition,
        )

    # ==========================================================================
    # Pending Transitions
    # ==========================================================================

    def _consume_pending_transition(
        self, routes: List[Route], session: SessionState
    ) -> Tuple[Optional[Route], SessionState]:
        pending = session.pending_transition
        if pending is None:
            return None, session

        target = find_route(routes, pending.target_route_id)
        session = clear_pending_transition(session)
        if target is None:
            logger.warning(f"Pending transition target '{pending.target_route_id}' not found, clearing it")
            return None, session

        logger.info(f"Applying pending transition to '{target.id}' ({pending.reason})")
        return target, session

    # ==========================================================================
    # Gating & Scoring
    # ==========================================================================

    async def filter_routes(self, routes: List[Route], ctx: TemplateContext) -> List[Route]:
        eligible = []
        for route in routes:
            if route.skip_if is not None:
                skip = await self.evaluator.evaluate(route.skip_if, ctx, ConditionLogic.OR)
                if skip.programmatic_result:
                    logger.debug(f"Route '{route.id}' excluded by skip_if")
                    continue
            if route.when is not None:
                when = await self.evaluator.evaluate(route.when, ctx, ConditionLogic.AND)
                if when.has_programmatic_conditions and not when.programmatic_result:
                    logger.debug(f"Route '{route.id}' excluded by its activation predicates")
                    continue
            eligible.append(route)
        return eligible

    async def _score_routes(
        self,
        routes: List[Route],
        session: SessionState,
        ctx: TemplateContext,
        cancel_token: Optional[CancellationToken],
    ) -> Tuple[Dict[str, int], List[str]]:
        route_conditions: Dict[str, List[str]] = {}
        for route in routes:
            evaluation = await self.evaluator.evaluate(route.when, ctx, ConditionLogic.AND)
            route_conditions[route.id] = evaluation.ai_context_strings

        active_route = find_route(routes, session.current_route.id) if session.current_route else None
        active_steps: List[Step] = []
        if active_route is not None:
            current_id = session.current_step.id if session.current_step else None
            resolution = await self.step_resolver.resolve(active_route, current_id, ctx)
            active_steps = resolution.candidates

        prompt = build_routing_prompt(
            agent=self.agent,
            routes=routes,
            route_conditions=route_conditions,
            ctx=ctx,
            active_route=active_route,
            active_steps=active_steps,
            history_window=self.history_window,
        )
        logger.debug(f"Routing prompt:\n{prompt}")

        result = await self.llm.generate_message(
            GenerationRequest(
                prompt=prompt,
                history=ctx.history,
                response_model=build_routing_model(routes),
                context=ctx.context,
                temperature=self.temperature,
                cancel_token=cancel_token,
            )
        )
        if result.structured is None:
            logger.warning("Routing call returned no structured output; treating all scores as 0")
            return {route.id: 0 for route in routes}, []

        scores = route_scores(result.structured)
        logger.debug(f"Route scores: {scores}")
        return scores, list(getattr(result.structured, "response_directives", []) or [])

    def decide_route_from_scores(
        self, routes: List[Route], scores: Dict[str, int]
    ) -> Optional[Tuple[Route, int]]:
        """Highest score wins; ties keep the earliest-declared route."""
        best: Optional[Tuple[Route, int]] = None
        for route in routes:
            score = scores.get(route.id, 0)
            if best is None or score > best[1]:
                best = (route, score)
        if best is None or best[1] < self.min_route_score:
            return None
        return best

    # ==========================================================================
    # Step Resolution
    # ==========================================================================

    async def resolve_step(
        self,
        route: Route,
        session: SessionState,
        history: List[Message],
        context: Dict,
    ) -> Tuple[Optional[Step], bool, StepTransition]:
        """
        Returns (step, is_route_complete, transition).

        The route is complete when all required fields are collected, or
        when the walk reaches END_ROUTE with nothing left to run and no
        required field missing.
        """
        ctx = build_template_context(session, history, context)
        current_id = session.current_step.id if session.current_step else None
        resolution = await self.step_resolver.resolve(route, current_id, ctx)

        finished_walk = resolution.step is None and resolution.reached_end
        if route.is_complete(session.data) or (finished_walk and not route.missing_fields(session.data)):
            logger.info(f"Route '{route.id}' is complete")
            return None, True, StepTransition.COMPLETE

        if resolution.step is not None:
            return resolution.step, False, resolution.transition

        logger.warning(f"No eligible step in route '{route.id}', falling back to the initial step")
        return route.initial, False, StepTransition.HOLD


def find_route(routes: List[Route], key: str) -> Optional[Route]:
    """Look a route up by id, then by title (case-insensitive)."""
    for route in routes:
        if route.id == key:
            return route
    lowered = key.lower()
    for route in routes:
        if route.title.lower() == lowered:
            return route
    return None
