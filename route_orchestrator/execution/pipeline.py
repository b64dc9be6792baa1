"""
Response Pipeline - Per-Turn Orchestration

One turn runs through fixed phases:
1. Prepare: resolve the context, merge agent-level collected data.
2. Route + step selection: RoutingEngine, optional pre-extraction of route
   fields, step entry, the step's `prepare` hook.
3. Response generation: step response with the bounded tool loop and data
   extraction, or the completion message (and pending transition) when the
   route is done, or an unscoped fallback when no route applies.
4. Finalize: persist, run the step's `finalize` hook, cache the session.

respond() and respond_stream() share the same phase code: the turn is an
async generator of StreamChunk events. respond() consumes it with
streaming off and returns the final result; respond_stream() forwards the
text deltas. Cancellation is checked before every model call and at every
yield.
"""

import inspect
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional, Tuple, Type, Union

from pydantic import BaseModel

from ..cancellation import CancellationToken, check_cancelled
from ..domain.graph import END_ROUTE
from ..domain.models import OnComplete, Route, Step, StepHook, Tool
from ..llm.interface import GenerationRequest, GenerationResult
from ..schemas.responses import (
    CompletionResponse,
    FallbackResponse,
    build_extraction_model,
    build_step_response_model,
)
from ..services.exceptions import (
    ResponseGenerationError,
    SessionBusyError,
    ToolExecutionError,
    TurnCancelledError,
)
from ..state.models import Message, SessionState
from ..state.session import (
    create_session,
    enter_step,
    mark_route_completed,
    merge_collected,
    set_pending_transition,
)
from .prompts.builders import (
    build_completion_prompt,
    build_extraction_prompt,
    build_fallback_prompt,
    build_step_response_prompt,
)
from .routing import RoutingEngine, RoutingOutcome, find_route
from .steps import StepTransition
from .templating import build_template_context, render_template
from .tools import ToolExecution, ToolExecutor

if TYPE_CHECKING:
    from ..services.agent import Agent

logger = logging.getLogger(__name__)


@dataclass
class RespondParams:
    history: List[Message]
    session: Optional[SessionState] = None
    context_override: Optional[Dict[str, Any]] = None
    cancel_token: Optional[CancellationToken] = None


@dataclass
class TurnResult:
    message: str
    session: SessionState
    route_id: Optional[str] = None
    step_id: Optional[str] = None
    transition: Optional[StepTransition] = None
    is_route_complete: bool = False
    tool_calls: List[ToolExecution] = field(default_factory=list)
    structured: Optional[Dict[str, Any]] = None
    directives: List[str] = field(default_factory=list)


@dataclass
class StreamChunk:
    """
    A streamed turn event. Intermediate chunks carry text deltas; the last
    one has done=True and either `result` or `error` set. A chunk with
    reset=True replaces everything streamed so far with `accumulated`
    (sent after a tool round, when the reply is regenerated).
    """
    delta: str
    accumulated: str
    done: bool = False
    reset: bool = False
    result: Optional[TurnResult] = None
    error: Optional[ResponseGenerationError] = None

    @property
    def session(self) -> Optional[SessionState]:
        return self.result.session if self.result else None

    @property
    def is_route_complete(self) -> bool:
        return bool(self.result and self.result.is_route_complete)


@dataclass
class TurnPlan:
    """Everything decided before the reply is generated."""
    session: SessionState
    context: Dict[str, Any]
    history: List[Message]
    routing: RoutingOutcome
    route: Optional[Route] = None
    step: Optional[Step] = None
    is_route_complete: bool = False
    transition: Optional[StepTransition] = None


@contextmanager
def pipeline_phase(phase: str, **details):
    """Tag any failure inside the block with the pipeline phase."""
    try:
        yield
    except (ResponseGenerationError, TurnCancelledError, SessionBusyError):
        raise
    except Exception as e:
        raise ResponseGenerationError.from_error(e, phase, **details) from e


class ResponsePipeline:
    def __init__(
        self,
        agent: "Agent",
        routing_engine: Optional[RoutingEngine] = None,
        tool_executor: Optional[ToolExecutor] = None,
    ):
        self.agent = agent
        self.routing_engine = routing_engine or RoutingEngine(
            llm_provider=agent.llm,
            agent=agent.profile,
            min_route_score=agent.min_route_score,
            temperature=agent.temperature,
            history_window=agent.history_window,
        )
        self.tool_executor = tool_executor or ToolExecutor()

    # ==========================================================================
    # Public API
    # ==========================================================================

    async def respond(self, params: RespondParams) -> TurnResult:
        result: Optional[TurnResult] = None
        async for chunk in self._run_turn(params, streaming=False):
            if chunk.done:
                result = chunk.result
        if result is None:
            raise ResponseGenerationError("Turn finished without a result", phase="response_generation")
        return result

    async def respond_stream(self, params: RespondParams) -> AsyncIterator[StreamChunk]:
        accumulated = ""
        try:
            async for chunk in self._run_turn(params, streaming=True):
                accumulated = chunk.accumulated
                yield chunk
        except Exception as e:
            phase = "cancelled" if isinstance(e, TurnCancelledError) else "response_generation"
            error = ResponseGenerationError.from_error(e, phase)
            logger.error(f"Streaming turn failed: {error}")
            yield StreamChunk(delta="", accumulated=accumulated, done=True, error=error)

    # ==========================================================================
    # Turn Phases
    # ==========================================================================

    async def _run_turn(self, params: RespondParams, streaming: bool) -> AsyncIterator[StreamChunk]:
        token = params.cancel_token
        self._validate(params)

        plan = await self._plan_turn(params)
        check_cancelled(token)

        if plan.route is not None and plan.is_route_complete:
            generate = self._complete_route(plan, token, streaming)
        elif plan.route is not None:
            generate = self._respond_in_step(plan, token, streaming)
        else:
            generate = self._respond_fallback(plan, token, streaming)

        result: Optional[TurnResult] = None
        try:
            async for item in generate:
                if isinstance(item, TurnResult):
                    result = item
                else:
                    check_cancelled(token)
                    yield item
        except TurnCancelledError as e:
            # Keep what was applied before the cancellation.
            e.session = plan.session
            self.agent.set_current_session(plan.session)
            raise

        with pipeline_phase("finalization", session_id=result.session.id):
            result = await self._finalize(result, plan)

        check_cancelled(token)
        yield StreamChunk(delta="", accumulated=result.message, done=True, result=result)

    def _validate(self, params: RespondParams) -> None:
        if not isinstance(params.history, list) or not params.history:
            raise ResponseGenerationError("History must be a non-empty list of messages", phase="validation")
        for message in params.history:
            if not isinstance(message, Message):
                raise ResponseGenerationError(
                    f"History entries must be Message objects, got {type(message).__name__}",
                    phase="validation",
                )

    async def _plan_turn(self, params: RespondParams) -> TurnPlan:
        token = params.cancel_token
        history = list(params.history)

        with pipeline_phase("pipeline_context_preparation"):
            context = await self.agent.resolve_context(params.context_override)
            session = params.session or self.agent.current_session
            if session is None:
                session = create_session(agent_name=self.agent.name)

        with pipeline_phase("data_merging", session_id=session.id):
            if self.agent.collected_data:
                # Agent-level data wins on conflict.
                session = merge_collected(session, self.agent.collected_data)

        with pipeline_phase("routing_and_step_selection", session_id=session.id):
            check_cancelled(token)
            routing = await self.routing_engine.decide(
                self.agent.routes, session, history, context, cancel_token=token
            )
            session = routing.session

        plan = TurnPlan(
            session=session,
            context=context,
            history=history,
            routing=routing,
            route=routing.route,
            step=routing.step,
            is_route_complete=routing.is_route_complete,
            transition=routing.transition,
        )
        if plan.route is None:
            return plan

        route = plan.route
        if not plan.is_route_complete and route.pre_extract and route.collectible_fields:
            with pipeline_phase("data_extraction", route_id=route.id):
                before = plan.session
                plan.session = await self._pre_extract(route, plan, token)
                if plan.session is not before:
                    step, complete, transition = await self.routing_engine.resolve_step(
                        route, plan.session, history, context
                    )
                    plan.step, plan.is_route_complete, plan.transition = step, complete, transition

        if plan.is_route_complete:
            plan.step = None
            return plan

        with pipeline_phase("routing_and_step_selection", route_id=route.id):
            plan.session = self._determine_next_step(route, plan.step, plan.session, plan.transition)
            plan.step = route.get_step(plan.session.current_step.id)

        with pipeline_phase("step_preparation", route_id=route.id, step_id=plan.step.id):
            if plan.step.prepare is not None:
                plan.session, plan.context = await self._run_hook(
                    plan.step.prepare, route, plan.step, plan.session, plan.context, history
                )
        return plan

    def _determine_next_step(
        self, route: Route, step: Optional[Step], session: SessionState, transition: Optional[StepTransition]
    ) -> SessionState:
        if step is None:
            step = route.initial
            logger.warning(f"No candidate step in route '{route.id}', using initial step")
        if step is None:
            raise ValueError(f"Route '{route.id}' has no steps to enter")
        if session.current_step is None or session.current_step.id != step.id:
            label = transition.name if transition else "ENTER"
            logger.info(f"Entering step '{step.id}' of route '{route.id}' ({label})")
        return enter_step(session, step.id, step.description)

    async def _pre_extract(self, route: Route, plan: TurnPlan, token: Optional[CancellationToken]) -> SessionState:
        ctx = build_template_context(plan.session, plan.history, plan.context)
        check_cancelled(token)
        result = await self.agent.llm.generate_message(
            GenerationRequest(
                prompt=build_extraction_prompt(route, ctx, self.agent.history_window),
                history=plan.history,
                response_model=build_extraction_model(route),
                context=plan.context,
                temperature=self.agent.temperature,
                cancel_token=token,
            )
        )
        extracted = self._extract_fields(route.collectible_fields, result.structured)
        if extracted:
            logger.debug(f"Pre-extracted fields for '{route.id}': {sorted(extracted)}")
        return merge_collected(plan.session, extracted)

    # ==========================================================================
    # Response Generation
    # ==========================================================================

    async def _respond_in_step(
        self, plan: TurnPlan, token: Optional[CancellationToken], streaming: bool
    ) -> AsyncIterator[Union[StreamChunk, TurnResult]]:
        route, step = plan.route, plan.step
        tools = self.available_tools(route, step)
        ctx = build_template_context(plan.session, plan.history, plan.context)
        response_model = build_step_response_model(route, step)

        with pipeline_phase("response_generation", route_id=route.id, step_id=step.id):
            prompt = build_step_response_prompt(
                agent=self.agent.profile,
                route=route,
                step=step,
                ctx=ctx,
                directives=plan.routing.directives,
                tools=tools,
                agent_terms=self.agent.terms,
                agent_guidelines=self.agent.guidelines,
                history_window=self.agent.history_window,
            )
            logger.debug(f"Step prompt:\n{prompt}")
            request = self._request(prompt, plan.history, response_model, plan.context, tools, token)
            result: Optional[GenerationResult] = None
            async for item in self._generate(request, streaming):
                if isinstance(item, GenerationResult):
                    result = item
                else:
                    yield item

        fields = list(step.collect) + [name for name in route.collectible_fields if name not in step.collect]
        executions: List[ToolExecution] = []
        if result.tool_calls:
            with pipeline_phase("tool_execution", route_id=route.id, step_id=step.id):
                result, executions = await self._run_tool_loop(
                    plan, result, tools, fields, prompt, response_model, token
                )
            if streaming:
                # The streamed text belongs to the first response; replace it with the final one.
                yield StreamChunk(delta=result.message, accumulated=result.message, reset=True)

        with pipeline_phase("data_extraction", route_id=route.id, step_id=step.id):
            session = merge_collected(plan.session, self._extract_fields(fields, result.structured))

        structured = result.structured.model_dump() if result.structured is not None else None
        yield TurnResult(
            message=result.message,
            session=session,
            route_id=route.id,
            step_id=step.id,
            transition=plan.transition,
            tool_calls=executions,
            structured=structured,
            directives=plan.routing.directives,
        )

    async def _run_tool_loop(
        self,
        plan: TurnPlan,
        result: GenerationResult,
        tools: List[Tool],
        fields: List[str],
        prompt: str,
        response_model: Type[BaseModel],
        token: Optional[CancellationToken],
    ) -> Tuple[GenerationResult, List[ToolExecution]]:
        """
        Execute tool calls and re-ask the model until it stops calling tools
        or max_tool_loops rounds have run. Failed tools are logged and left
        out of the follow-up history.

        Fields returned next to tool calls are merged before that round's
        tools run, so tool data updates and later responses override them.
        Session and context updates are written back to `plan` as each tool
        finishes.
        """
        step = plan.step
        by_id = {tool.id: tool for tool in tools}
        followup_history = list(plan.history)
        executions: List[ToolExecution] = []
        last_message = result.message
        rounds = 0

        while result.tool_calls:
            if rounds >= self.agent.max_tool_loops:
                logger.warning(
                    f"Tool loop limit ({self.agent.max_tool_loops}) reached, "
                    f"ignoring {len(result.tool_calls)} further tool call(s)"
                )
                break
            rounds += 1
            plan.session = merge_collected(plan.session, self._extract_fields(fields, result.structured))

            for call in result.tool_calls:
                check_cancelled(token)
                tool = by_id.get(call.name)
                if tool is None:
                    logger.warning(f"Model requested unavailable tool '{call.name}', skipping")
                    executions.append(
                        ToolExecution(tool_id=call.name, success=False, error="Tool not available", arguments=call.arguments)
                    )
                    continue

                execution = await self.tool_executor.execute_tool(
                    tool, plan.context, plan.session.data, followup_history, call.arguments, step
                )
                executions.append(execution)
                if not execution.success:
                    logger.warning(f"Tool '{tool.id}' failed, continuing: {execution.error}")
                    continue

                if execution.context_update:
                    await self.agent.update_context(execution.context_update)
                    plan.context = {**plan.context, **execution.context_update}
                if execution.data_update:
                    plan.session = merge_collected(plan.session, execution.data_update)
                followup_history.append(
                    Message(
                        role="tool",
                        content=json.dumps(execution.data, default=str),
                        tool_name=tool.id,
                        tool_data=execution.data,
                    )
                )

            check_cancelled(token)
            result = await self.agent.llm.generate_message(
                self._request(prompt, followup_history, response_model, plan.context, tools, token)
            )
            if result.message:
                last_message = result.message
            logger.debug(f"Tool loop round {rounds} done, {len(result.tool_calls)} new call(s)")

        if not result.message:
            result = GenerationResult(message=last_message, structured=result.structured, tool_calls=result.tool_calls)
        return result, executions

    async def _complete_route(
        self, plan: TurnPlan, token: Optional[CancellationToken], streaming: bool
    ) -> AsyncIterator[Union[StreamChunk, TurnResult]]:
        route = plan.route
        session = plan.session
        ctx = build_template_context(session, plan.history, plan.context)

        message: Optional[str] = None
        try:
            prompt = build_completion_prompt(
                agent=self.agent.profile,
                route=route,
                ctx=ctx,
                agent_terms=self.agent.terms,
                agent_guidelines=self.agent.guidelines,
                history_window=self.agent.history_window,
            )
            request = self._request(prompt, plan.history, CompletionResponse, plan.context, [], token)
            async for item in self._generate(request, streaming):
                if isinstance(item, GenerationResult):
                    message = item.message
                else:
                    yield item
        except TurnCancelledError:
            raise
        except Exception as e:
            logger.error(f"Completion message failed for route '{route.id}': {e}")
        if not message:
            message = f"Thank you! I've recorded all the information for your {route.title.lower()}."

        with pipeline_phase("route_completion", route_id=route.id):
            target = await self._evaluate_on_complete(route, ctx)
            if target is not None:
                target_route = find_route(self.agent.routes, target.next_route)
                if target_route is None:
                    logger.warning(f"on_complete target '{target.next_route}' of route '{route.id}' not found")
                else:
                    condition = render_template(target.condition, ctx)
                    session = set_pending_transition(session, target_route.id, condition, reason="route_complete")
                    logger.info(f"Route '{route.id}' complete, pending transition to '{target_route.id}'")

            session = mark_route_completed(session)
            session = enter_step(session, END_ROUTE, route.end_step.description)

        yield TurnResult(
            message=message,
            session=session,
            route_id=route.id,
            step_id=END_ROUTE,
            is_route_complete=True,
            transition=StepTransition.COMPLETE,
            directives=plan.routing.directives,
        )

    async def _evaluate_on_complete(self, route: Route, ctx) -> Optional[OnComplete]:
        target = route.on_complete
        if callable(target):
            target = target(ctx)
            if inspect.isawaitable(target):
                target = await target
        if target is None:
            return None
        if isinstance(target, str):
            return OnComplete(next_route=target)
        return target

    async def _respond_fallback(
        self, plan: TurnPlan, token: Optional[CancellationToken], streaming: bool
    ) -> AsyncIterator[Union[StreamChunk, TurnResult]]:
        ctx = build_template_context(plan.session, plan.history, plan.context)
        with pipeline_phase("response_generation", session_id=plan.session.id):
            prompt = build_fallback_prompt(
                agent=self.agent.profile,
                ctx=ctx,
                agent_terms=self.agent.terms,
                agent_guidelines=self.agent.guidelines,
                history_window=self.agent.history_window,
            )
            request = self._request(prompt, plan.history, FallbackResponse, plan.context, [], token)
            result: Optional[GenerationResult] = None
            async for item in self._generate(request, streaming):
                if isinstance(item, GenerationResult):
                    result = item
                else:
                    yield item

        yield TurnResult(message=result.message, session=plan.session, directives=plan.routing.directives)

    # ==========================================================================
    # Finalize
    # ==========================================================================

    async def _finalize(self, result: TurnResult, plan: TurnPlan) -> TurnResult:
        session = result.session
        persistence = self.agent.persistence
        if self.agent.auto_save and persistence is not None and session.id:
            persistence.save_session_state(session)

        if plan.step is not None and plan.step.finalize is not None:
            session, plan.context = await self._run_hook(
                plan.step.finalize, plan.route, plan.step, session, plan.context, plan.history
            )
            result.session = session

        self.agent.set_current_session(session)
        return result

    # ==========================================================================
    # Helpers
    # ==========================================================================

    def available_tools(self, route: Route, step: Optional[Step]) -> List[Tool]:
        """
        Agent tools overridden by route tools (same id), narrowed to the
        step's allow-list and to the route's domains.
        """
        by_id: Dict[str, Tool] = {tool.id: tool for tool in self.agent.tools}
        for tool in route.tools:
            by_id[tool.id] = tool
        tools = list(by_id.values())

        if step is not None and step.tools is not None:
            allowed = set(step.tools)
            tools = [tool for tool in tools if tool.id in allowed]
        if route.domains is not None:
            domains = set(route.domains)
            tools = [tool for tool in tools if tool.domain is None or tool.domain in domains]
        return tools

    def _find_tool(self, tool_id: str, route: Optional[Route]) -> Optional[Tool]:
        for tool in list(route.tools if route else []) + list(self.agent.tools):
            if tool.id == tool_id:
                return tool
        return None

    async def _run_hook(
        self,
        hook: StepHook,
        route: Route,
        step: Step,
        session: SessionState,
        context: Dict[str, Any],
        history: List[Message],
    ) -> Tuple[SessionState, Dict[str, Any]]:
        """
        Run a prepare/finalize hook.

        A tool id runs the tool (failure raises ToolExecutionError) and
        applies its updates. A callable gets (context, data); a returned
        dict is merged into the collected data.
        """
        if isinstance(hook, str):
            tool = self._find_tool(hook, route)
            if tool is None:
                raise ToolExecutionError(hook, "unknown tool")
            execution = await self.tool_executor.execute_tool(tool, context, session.data, history, {}, step)
            if not execution.success:
                raise ToolExecutionError(tool.id, execution.error)
            if execution.context_update:
                await self.agent.update_context(execution.context_update)
                context = {**context, **execution.context_update}
            if execution.data_update:
                session = merge_collected(session, execution.data_update)
            return session, context

        outcome = hook(dict(context), dict(session.data))
        if inspect.isawaitable(outcome):
            outcome = await outcome
        if isinstance(outcome, dict):
            session = merge_collected(session, outcome)
        return session, context

    @staticmethod
    def _extract_fields(fields: List[str], structured: Optional[BaseModel]) -> Dict[str, Any]:
        """Non-null values of the given fields from a structured output."""
        if structured is None:
            return {}
        values = structured.model_dump()
        return {name: values[name] for name in fields if values.get(name) is not None}

    def _request(
        self,
        prompt: str,
        history: List[Message],
        response_model: Type[BaseModel],
        context: Dict[str, Any],
        tools: List[Tool],
        token: Optional[CancellationToken],
    ) -> GenerationRequest:
        return GenerationRequest(
            prompt=prompt,
            history=history,
            response_model=response_model,
            context=context,
            tools=tools,
            temperature=self.agent.temperature,
            cancel_token=token,
        )

    async def _generate(
        self, request: GenerationRequest, streaming: bool
    ) -> AsyncIterator[Union[StreamChunk, GenerationResult]]:
        """Yield text deltas when streaming, then the GenerationResult."""
        check_cancelled(request.cancel_token)
        if not streaming:
            yield await self.agent.llm.generate_message(request)
            return

        async for chunk in self.agent.llm.stream_message(request):
            check_cancelled(request.cancel_token)
            if chunk.done:
                message = getattr(chunk.structured, "message", None) or chunk.accumulated
                yield GenerationResult(message=message, structured=chunk.structured, tool_calls=chunk.tool_calls)
                return
            yield StreamChunk(delta=chunk.delta, accumulated=chunk.accumulated)

        raise ResponseGenerationError("Stream ended without a final chunk", phase="response_generation")
