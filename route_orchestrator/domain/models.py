"""
Domain Layer - Static Configuration Models

This module defines the static structure an agent is configured with:
Routes (conversational flows), the Steps inside them, Tools the model may
call, and the Guidelines/Terms injected into prompts.

These objects are built once at configuration time and never mutated by a
turn. Everything that changes per conversation lives in SessionState.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, Union

from pydantic import BaseModel

from .conditions import ConditionInput, as_condition
from .graph import StepGraph


# =============================================================================
# Tools
# =============================================================================

@dataclass
class ToolResult:
    """
    What a tool handler returns.

    Attributes:
        data: Payload shown to the model as the tool's result.
        success: False marks a business-level failure (e.g. a timeout).
        error: Human-readable failure reason when success is False.
        context_update: Keys to merge into the agent context.
        data_update: Keys to merge into the session's collected data.
        meta: Free-form metadata, never shown to the model.
    """
    data: Any = None
    success: bool = True
    error: Optional[str] = None
    context_update: Optional[Dict[str, Any]] = None
    data_update: Optional[Dict[str, Any]] = None
    meta: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class ToolContext:
    """Read-only view handed to a tool handler."""
    context: Dict[str, Any]
    data: Dict[str, Any]
    history: List[Any]
    step: Optional["Step"] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


ToolHandler = Callable[..., Union[ToolResult, Any, Awaitable[Any]]]


@dataclass
class Tool:
    """
    A named operation the model may invoke.

    The handler is called as handler(tool_context, **arguments) and may be
    sync or async. Returning a plain value is treated as ToolResult(data=value).

    Attributes:
        id: Unique identifier, also the function name exposed to the model.
        handler: The callable doing the work.
        description: Shown to the model to decide when to call the tool.
        parameters: JSON schema of the arguments.
        domain: Optional domain name used for route-level scoping.
    """
    id: str
    handler: ToolHandler
    description: str = ""
    parameters: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    name: Optional[str] = None
    domain: Optional[str] = None

    def __post_init__(self):
        if not self.name:
            self.name = self.id

    def to_function_schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.id,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


# =============================================================================
# Prompt Knowledge
# =============================================================================

@dataclass
class Guideline:
    """Behavioral rule rendered as "When <condition>, then <action>"."""
    action: str
    condition: Optional[str] = None
    enabled: bool = True
    id: Optional[str] = None


@dataclass
class Term:
    """Glossary entry. Route-level terms override agent-level ones by name."""
    name: str
    description: str
    synonyms: List[str] = field(default_factory=list)


@dataclass
class AgentProfile:
    """Identity shown at the top of every prompt."""
    name: str
    description: Optional[str] = None
    goal: Optional[str] = None
    personality: Optional[str] = None


# =============================================================================
# Steps & Routes
# =============================================================================

# A prepare/finalize hook: a callable (context, data) or a tool id.
StepHook = Union[str, Callable[[Dict[str, Any], Dict[str, Any]], Any], None]


@dataclass
class Step:
    """
    One stage of a route's flow.

    Successor links are not stored here; they live in the owning StepGraph.

    Attributes:
        id: Unique identifier within the route.
        description: Human-readable summary, stamped on the session when entered.
        prompt: Guideline for the model while this step is active.
        collect: Fields this step tries to collect.
        requires: Fields that must already be collected before this step runs.
        when: Activation condition (AND logic), text parts are shown to the model.
        skip_if: Skip condition (OR logic).
        tools: Allow-list of tool ids. None means every tool of the route.
        prepare: Hook run before the response is generated.
        finalize: Hook run after the turn has been persisted.
    """
    id: str
    description: Optional[str] = None
    prompt: Optional[str] = None
    collect: List[str] = field(default_factory=list)
    requires: List[str] = field(default_factory=list)
    when: ConditionInput = None
    skip_if: ConditionInput = None
    tools: Optional[List[str]] = None
    prepare: StepHook = None
    finalize: StepHook = None

    def __post_init__(self):
        self.when = as_condition(self.when)
        self.skip_if = as_condition(self.skip_if)

    def has_requires(self, data: Dict[str, Any]) -> bool:
        return all(data.get(key) is not None for key in self.requires)

    def is_satisfied(self, data: Dict[str, Any]) -> bool:
        """True when the step collects fields and all of them are present."""
        return bool(self.collect) and all(data.get(key) is not None for key in self.collect)


@dataclass
class EndStep:
    """Configuration for the wrap-up turn once a route is complete."""
    prompt: str = (
        "Summarize what was accomplished and confirm completion based on "
        "the conversation history and collected data"
    )
    description: str = "Route completed"
    collect: List[str] = field(default_factory=list)


@dataclass
class OnComplete:
    """Deferred transition to another route once this one completes."""
    next_route: str
    condition: Optional[str] = None


OnCompleteTarget = Union[str, OnComplete, Callable[[Any], Union[str, OnComplete, None]], None]


def slugify(title: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", title.lower()).strip("_")


@dataclass
class Route:
    """
    A conversational flow with its own activation condition and step graph.

    Steps can be supplied either as an ordered list (chained linearly and
    ending in END_ROUTE) or as a prebuilt StepGraph for branching flows.
    """
    title: str
    description: str = ""
    id: Optional[str] = None
    when: ConditionInput = None
    skip_if: ConditionInput = None
    steps: Union[List[Step], StepGraph, None] = None
    initial_step: Optional[str] = None
    end_step: Optional[EndStep] = None
    on_complete: OnCompleteTarget = None
    required_fields: List[str] = field(default_factory=list)
    optional_fields: List[str] = field(default_factory=list)
    data_model: Optional[Type[BaseModel]] = None
    initial_data: Dict[str, Any] = field(default_factory=dict)
    rules: List[str] = field(default_factory=list)
    prohibitions: List[str] = field(default_factory=list)
    guidelines: List[Guideline] = field(default_factory=list)
    terms: List[Term] = field(default_factory=list)
    tools: List[Tool] = field(default_factory=list)
    domains: Optional[List[str]] = None
    response_output_model: Optional[Type[BaseModel]] = None
    pre_extract: bool = True
    graph: StepGraph = field(init=False, repr=False)

    def __post_init__(self):
        if not self.id:
            self.id = slugify(self.title)
        self.when = as_condition(self.when)
        self.skip_if = as_condition(self.skip_if)

        if isinstance(self.steps, StepGraph):
            self.graph = self.steps
        else:
            self.graph = StepGraph.linear(self.steps or [])
        if self.initial_step:
            self.graph.initial_step_id = self.initial_step
        self.steps = None

        if self.end_step is None:
            self.end_step = EndStep()

    # --- Step access ---

    def get_step(self, step_id: Optional[str]) -> Optional[Step]:
        return self.graph.get(step_id)

    @property
    def initial(self) -> Optional[Step]:
        return self.graph.initial_step

    # --- Data helpers ---

    @property
    def collectible_fields(self) -> List[str]:
        """Every field this route may collect, in first-seen order."""
        names: List[str] = []
        candidates = list(self.required_fields) + list(self.optional_fields)
        for step in self.graph:
            candidates.extend(step.collect)
        if self.data_model is not None:
            candidates.extend(self.data_model.model_fields.keys())
        for name in candidates:
            if name not in names:
                names.append(name)
        return names

    def missing_fields(self, data: Dict[str, Any]) -> List[str]:
        return [name for name in self.required_fields if data.get(name) is None]

    def is_complete(self, data: Dict[str, Any]) -> bool:
        """A route with no required fields is never complete by data alone."""
        if not self.required_fields:
            return False
        return not self.missing_fields(data)

    def completion_progress(self, data: Dict[str, Any]) -> float:
        if not self.required_fields:
            return 0.0
        collected = len(self.required_fields) - len(self.missing_fields(data))
        return collected / len(self.required_fields)

    def referenced_tool_ids(self) -> List[str]:
        ids: List[str] = []
        for step in self.graph:
            for tool_id in step.tools or []:
                if tool_id not in ids:
                    ids.append(tool_id)
            for hook in (step.prepare, step.finalize):
                if isinstance(hook, str) and hook not in ids:
                    ids.append(hook)
        return ids
