"""
Step Resolver - Step Graph Traversal

Decides which step of a route runs this turn. Resolution is a pure
function of (current step, collected data): it never looks at history
order, so replaying the same data always lands on the same step.

Walk rules:
1. Start at the current step, or the initial step when entering the route.
2. A step that is skipped (skip_if true under OR) or already satisfied
   (all its collect fields present) is walked through to its successors,
   in edge declaration order.
3. A step whose `requires` fields are missing, or whose `when` predicates
   are false, blocks its branch.
4. The first eligible, unsatisfied step found is the candidate.
5. Reaching END_ROUTE marks the route as finished.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import List, Optional, Set

from ..domain.conditions import ConditionLogic
from ..domain.graph import END_ROUTE
from ..domain.models import Route, Step
from .conditions import ConditionEvaluator
from .templating import TemplateContext

logger = logging.getLogger(__name__)


class StepTransition(Enum):
    """
    What happened to the step pointer. Mirrors the usual FSM vocabulary so
    callers do not reason about raw candidate lists.
    """

    ENTER = auto()  # Route entered, pointer placed on its first runnable step
    HOLD = auto()  # Pointer remains on the current step
    ADVANCE = auto()  # Pointer moved to a successor (possibly past skipped steps)
    COMPLETE = auto()  # Walk reached END_ROUTE


@dataclass
class StepResolution:
    candidates: List[Step] = field(default_factory=list)
    reached_end: bool = False
    transition: StepTransition = StepTransition.HOLD

    @property
    def step(self) -> Optional[Step]:
        return self.candidates[0] if self.candidates else None


class StepResolver:
    def __init__(self, evaluator: Optional[ConditionEvaluator] = None):
        self.evaluator = evaluator or ConditionEvaluator()

    async def is_skipped(self, step: Step, ctx: TemplateContext) -> bool:
        if step.skip_if is None:
            return False
        evaluation = await self.evaluator.evaluate(step.skip_if, ctx, ConditionLogic.OR)
        return evaluation.programmatic_result

    async def is_active(self, step: Step, ctx: TemplateContext) -> bool:
        """Programmatic `when` parts under AND. Text parts are left to the model."""
        if step.when is None:
            return True
        evaluation = await self.evaluator.evaluate(step.when, ctx, ConditionLogic.AND)
        return not evaluation.has_programmatic_conditions or evaluation.programmatic_result

    async def resolve(
        self,
        route: Route,
        current_step_id: Optional[str],
        ctx: TemplateContext,
    ) -> StepResolution:
        resolution = StepResolution()
        visited: Set[str] = set()

        current = route.get_step(current_step_id)
        if current is None:
            start = route.initial
            if start is None:
                # A route without steps finishes as soon as it is entered.
                resolution.reached_end = True
                resolution.transition = StepTransition.COMPLETE
                return resolution
            await self._visit(route, start.id, ctx, resolution, visited, is_current=False)
            if resolution.candidates:
                resolution.transition = StepTransition.ENTER
        else:
            await self._visit(route, current.id, ctx, resolution, visited, is_current=True)
            if resolution.candidates:
                moved = resolution.candidates[0].id != current.id
                resolution.transition = StepTransition.ADVANCE if moved else StepTransition.HOLD

        if not resolution.candidates and resolution.reached_end:
            resolution.transition = StepTransition.COMPLETE

        logger.debug(
            f"Resolved route '{route.id}' from '{current_step_id}': "
            f"candidates={[s.id for s in resolution.candidates]} end={resolution.reached_end}"
        )
        return resolution

    async def _visit(
        self,
        route: Route,
        node_id: str,
        ctx: TemplateContext,
        resolution: StepResolution,
        visited: Set[str],
        is_current: bool,
    ) -> None:
        if node_id == END_ROUTE:
            resolution.reached_end = True
            return
        if node_id in visited:
            return
        visited.add(node_id)

        step = route.get_step(node_id)
        if step is None:
            logger.warning(f"Route '{route.id}' links to unknown step '{node_id}'")
            return

        if await self.is_skipped(step, ctx):
            logger.debug(f"Skipping step '{step.id}' (skip_if condition met)")
            await self._visit_successors(route, step, ctx, resolution, visited)
            return

        if not step.has_requires(ctx.data):
            logger.debug(f"Step '{step.id}' blocked, missing required fields")
            return

        if not await self.is_active(step, ctx):
            logger.debug(f"Step '{step.id}' blocked by its activation predicates")
            return

        # The current step has already been presented once; a step that
        # collects nothing is therefore done after its first turn.
        satisfied = step.is_satisfied(ctx.data) or (is_current and not step.collect)
        if satisfied:
            await self._visit_successors(route, step, ctx, resolution, visited)
            return

        resolution.candidates.append(step)

    async def _visit_successors(
        self,
        route: Route,
        step: Step,
        ctx: TemplateContext,
        resolution: StepResolution,
        visited: Set[str],
    ) -> None:
        for target in route.graph.successors(step.id):
            if resolution.candidates:
                return
            await self._visit(route, target, ctx, resolution, visited, is_current=False)
