"""
Condition Evaluator

Evaluates a Condition (text | predicate | list) into two separate results:
- a programmatic boolean computed only from predicates, and
- the text leaves, forwarded verbatim to the model as routing context.

Text is never interpreted in code, and predicates are never shown to the
model. A predicate that raises is logged and counts as False so a broken
condition cannot abort a turn.
"""

import inspect
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..domain.conditions import (
    Condition,
    ConditionList,
    ConditionLogic,
    PredicateCondition,
    TextCondition,
)
from .templating import TemplateContext

logger = logging.getLogger(__name__)


@dataclass
class PredicateOutcome:
    label: str
    result: bool
    error: Optional[str] = None


@dataclass
class ConditionEvaluation:
    programmatic_result: bool
    ai_context_strings: List[str] = field(default_factory=list)
    has_programmatic_conditions: bool = False
    details: List[PredicateOutcome] = field(default_factory=list)


class ConditionEvaluator:
    async def evaluate(
        self,
        condition: Optional[Condition],
        ctx: TemplateContext,
        logic: ConditionLogic = ConditionLogic.AND,
    ) -> ConditionEvaluation:
        strings: List[str] = []
        outcomes: List[PredicateOutcome] = []
        await self._walk(condition, ctx, strings, outcomes)

        results = [outcome.result for outcome in outcomes]
        if not results:
            programmatic = logic.neutral
        elif logic is ConditionLogic.AND:
            programmatic = all(results)
        else:
            programmatic = any(results)

        return ConditionEvaluation(
            programmatic_result=programmatic,
            ai_context_strings=strings,
            has_programmatic_conditions=bool(outcomes),
            details=outcomes,
        )

    async def _walk(
        self,
        condition: Optional[Condition],
        ctx: TemplateContext,
        strings: List[str],
        outcomes: List[PredicateOutcome],
    ) -> None:
        if condition is None:
            return
        if isinstance(condition, TextCondition):
            strings.append(condition.text)
        elif isinstance(condition, PredicateCondition):
            outcomes.append(await self._run_predicate(condition, ctx))
        elif isinstance(condition, ConditionList):
            for item in condition.items:
                await self._walk(item, ctx, strings, outcomes)
        else:
            raise TypeError(f"Unknown condition type: {type(condition).__name__}")

    async def _run_predicate(self, condition: PredicateCondition, ctx: TemplateContext) -> PredicateOutcome:
        try:
            result = condition.fn(ctx)
            if inspect.isawaitable(result):
                result = await result
            return PredicateOutcome(label=condition.label, result=bool(result))
        except Exception as e:
            logger.warning(f"Condition '{condition.label}' raised, treating as False: {e}")
            return PredicateOutcome(label=condition.label, result=False, error=str(e))
