"""
Agent - Configuration Root and Respond Facade

An Agent owns the static configuration (routes, tools, terms, guidelines,
tool domains) and validates it as it is assembled, so mistakes such as an
unknown tool id surface at startup instead of mid-conversation.

At runtime it hands each turn to the ResponsePipeline and enforces the
concurrency policy: one turn at a time per session. A second respond() on
a session that is still processing raises SessionBusyError.
"""

import asyncio
import inspect
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

from ..cancellation import CancellationToken
from ..config import settings
from ..domain.graph import StepGraphError
from ..domain.models import AgentProfile, Guideline, Route, Term, Tool
from ..domain.registry import DomainRegistry
from ..execution.pipeline import RespondParams, ResponsePipeline, StreamChunk, TurnResult
from ..llm.interface import LLMProvider
from ..state.models import Message, SessionState
from .exceptions import ConfigurationError, SessionBusyError
from .persistence import PersistenceManager

logger = logging.getLogger(__name__)

ContextProvider = Callable[[], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]


class Agent:
    def __init__(
        self,
        name: str,
        llm: LLMProvider,
        description: Optional[str] = None,
        goal: Optional[str] = None,
        personality: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        context_provider: Optional[ContextProvider] = None,
        tools: Optional[List[Tool]] = None,
        routes: Optional[List[Route]] = None,
        terms: Optional[List[Term]] = None,
        guidelines: Optional[List[Guideline]] = None,
        domains: Optional[DomainRegistry] = None,
        persistence: Optional[PersistenceManager] = None,
        max_tool_loops: int = settings.MAX_TOOL_LOOPS,
        auto_save: bool = settings.AUTO_SAVE,
        min_route_score: int = settings.MIN_ROUTE_SCORE,
        temperature: float = settings.LLM_TEMPERATURE,
        history_window: Optional[int] = settings.HISTORY_WINDOW,
    ):
        self.profile = AgentProfile(name=name, description=description, goal=goal, personality=personality)
        self.llm = llm
        self.context: Dict[str, Any] = dict(context or {})
        self.context_provider = context_provider
        self.domains = domains or DomainRegistry()
        self.persistence = persistence
        self.max_tool_loops = max_tool_loops
        self.auto_save = auto_save
        self.min_route_score = min_route_score
        self.temperature = temperature
        self.history_window = history_window

        self.tools: List[Tool] = []
        self.routes: List[Route] = []
        self.terms: List[Term] = list(terms or [])
        self.guidelines: List[Guideline] = list(guidelines or [])

        self._collected_data: Dict[str, Any] = {}
        self._current_session: Optional[SessionState] = None
        self._session_locks: Dict[str, asyncio.Lock] = {}

        # Tools (and domain tools) first: routes are validated against them.
        for tool in self.domains.tools():
            self._register_tool(tool)
        for tool in tools or []:
            self.add_tool(tool)
        for route in routes or []:
            self.add_route(route)

        self.pipeline = ResponsePipeline(self)

    @property
    def name(self) -> str:
        return self.profile.name

    # ==========================================================================
    # Configuration
    # ==========================================================================

    def create_route(self, title: str, **kwargs) -> Route:
        """Builds a Route from keyword arguments and adds it."""
        route = Route(title=title, **kwargs)
        self.add_route(route)
        return route

    def add_route(self, route: Route) -> Route:
        if any(existing.id == route.id for existing in self.routes):
            raise ConfigurationError(f"Route '{route.id}' is already defined")

        try:
            route.graph.validate()
        except StepGraphError as e:
            raise ConfigurationError(f"Route '{route.id}' has an invalid step graph: {e}") from e

        known_tools = {tool.id for tool in self.tools} | {tool.id for tool in route.tools}
        unknown = [tool_id for tool_id in route.referenced_tool_ids() if tool_id not in known_tools]
        if unknown:
            raise ConfigurationError(f"Route '{route.id}' references unknown tools: {unknown}")

        for domain in route.domains or []:
            if not self.domains.has(domain):
                raise ConfigurationError(f"Route '{route.id}' uses unregistered domain '{domain}'")

        self.routes.append(route)
        logger.debug(f"Added route '{route.id}' with {len(route.graph)} steps")
        return route

    def add_tool(self, tool: Tool) -> Tool:
        if any(existing.id == tool.id for existing in self.tools):
            raise ConfigurationError(f"Tool '{tool.id}' is already registered")
        return self._register_tool(tool)

    def _register_tool(self, tool: Tool) -> Tool:
        self.tools.append(tool)
        return tool

    def create_term(self, name: str, description: str, synonyms: Optional[List[str]] = None) -> Term:
        term = Term(name=name, description=description, synonyms=list(synonyms or []))
        self.terms.append(term)
        return term

    def create_guideline(self, action: str, condition: Optional[str] = None, enabled: bool = True) -> Guideline:
        guideline = Guideline(action=action, condition=condition, enabled=enabled)
        self.guidelines.append(guideline)
        return guideline

    def register_domain(self, name: str, tools: Optional[List[Tool]] = None) -> None:
        """Registers a tool domain; its tools become agent tools."""
        try:
            self.domains.register(name, tools)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        for tool in tools or []:
            self.add_tool(tool)

    # ==========================================================================
    # Context & Collected Data
    # ==========================================================================

    async def resolve_context(self, override: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Static context, then the provider's values, then the per-turn override."""
        resolved = dict(self.context)
        if self.context_provider is not None:
            provided = self.context_provider()
            if inspect.isawaitable(provided):
                provided = await provided
            resolved.update(provided or {})
        if override:
            resolved.update(override)
        return resolved

    async def update_context(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        self.context = {**self.context, **updates}
        return dict(self.context)

    @property
    def collected_data(self) -> Dict[str, Any]:
        """Caller-seeded data merged into every session; wins on conflict."""
        return dict(self._collected_data)

    def update_collected_data(self, updates: Dict[str, Any]) -> None:
        self._collected_data = {**self._collected_data, **updates}

    @property
    def current_session(self) -> Optional[SessionState]:
        return self._current_session

    def set_current_session(self, session: Optional[SessionState]) -> None:
        self._current_session = session

    # ==========================================================================
    # Responding
    # ==========================================================================

    def is_busy(self, session_id: Optional[str]) -> bool:
        lock = self._session_locks.get(session_id) if session_id else None
        return bool(lock and lock.locked())

    async def respond(
        self,
        history: List[Message],
        session: Optional[SessionState] = None,
        context_override: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> TurnResult:
        params = RespondParams(
            history=history,
            session=session,
            context_override=context_override,
            cancel_token=cancel_token,
        )
        session_id = self._session_id(session)
        lock = await self._acquire(session_id)
        try:
            return await self.pipeline.respond(params)
        finally:
            self._release(session_id, lock)

    async def respond_stream(
        self,
        history: List[Message],
        session: Optional[SessionState] = None,
        context_override: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[StreamChunk]:
        params = RespondParams(
            history=history,
            session=session,
            context_override=context_override,
            cancel_token=cancel_token,
        )
        session_id = self._session_id(session)
        lock = await self._acquire(session_id)
        try:
            async for chunk in self.pipeline.respond_stream(params):
                yield chunk
        finally:
            self._release(session_id, lock)

    def _session_id(self, session: Optional[SessionState]) -> Optional[str]:
        session = session or self._current_session
        return session.id if session else None

    async def _acquire(self, session_id: Optional[str]) -> Optional[asyncio.Lock]:
        """Claims the session for this turn, or rejects it when a turn is running."""
        if session_id is None:
            return None
        lock = self._session_locks.setdefault(session_id, asyncio.Lock())
        if lock.locked():
            logger.warning(f"Rejected concurrent turn on session {session_id}")
            raise SessionBusyError(session_id)
        # Uncontended: returns without suspending.
        await lock.acquire()
        return lock

    def _release(self, session_id: Optional[str], lock: Optional[asyncio.Lock]) -> None:
        if lock is None:
            return
        lock.release()
        self._session_locks.pop(session_id, None)
