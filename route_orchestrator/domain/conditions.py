"""
Domain Layer - Condition Expressions

A condition is a tagged union over three shapes:
- TextCondition: natural-language text, judged by the model (never in code)
- PredicateCondition: a deterministic function over the template context
- ConditionList: an ordered list of either, evaluated recursively

Raw configuration values (str, callable, list) are normalized once with
as_condition() when a Route or Step is built, so evaluation never has to
inspect arbitrary runtime types.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Union

# A predicate receives the TemplateContext and returns a bool (or an awaitable of one).
Predicate = Callable[[Any], Union[bool, Awaitable[bool]]]


class ConditionLogic(str, Enum):
    """
    How predicate results are aggregated.

    AND: activation ("when"). Neutral default is True.
    OR: skip gating ("skip_if"). Neutral default is False.
    """

    AND = "AND"
    OR = "OR"

    @property
    def neutral(self) -> bool:
        return self is ConditionLogic.AND


@dataclass(frozen=True)
class TextCondition:
    text: str


@dataclass(frozen=True)
class PredicateCondition:
    fn: Predicate
    name: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or getattr(self.fn, "__name__", "predicate")


@dataclass(frozen=True)
class ConditionList:
    items: Tuple["Condition", ...] = field(default_factory=tuple)


Condition = Union[TextCondition, PredicateCondition, ConditionList]

# What configuration code is allowed to pass in.
ConditionInput = Union[None, str, Predicate, Condition, List[Any], Tuple[Any, ...]]


def as_condition(value: ConditionInput) -> Optional[Condition]:
    """
    Normalize a configuration value into the Condition union.

    Returns None for None or an empty list. Raises TypeError for anything
    that is not a string, callable, list/tuple or an existing Condition.
    """
    if value is None:
        return None
    if isinstance(value, (TextCondition, PredicateCondition, ConditionList)):
        return value
    if isinstance(value, str):
        return TextCondition(value)
    if isinstance(value, (list, tuple)):
        items = tuple(c for c in (as_condition(v) for v in value) if c is not None)
        return ConditionList(items) if items else None
    if callable(value):
        return PredicateCondition(value)
    raise TypeError(f"Unsupported condition value: {value!r}")


def extract_ai_context_strings(condition: Optional[Condition]) -> List[str]:
    """Collect text leaves depth-first without evaluating anything."""
    if condition is None:
        return []
    if isinstance(condition, TextCondition):
        return [condition.text]
    if isinstance(condition, ConditionList):
        strings: List[str] = []
        for item in condition.items:
            strings.extend(extract_ai_context_strings(item))
        return strings
    return []


def has_programmatic_conditions(condition: Optional[Condition]) -> bool:
    if isinstance(condition, PredicateCondition):
        return True
    if isinstance(condition, ConditionList):
        return any(has_programmatic_conditions(item) for item in condition.items)
    return False
