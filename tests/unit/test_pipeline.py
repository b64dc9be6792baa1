import pytest

from conftest import user
from route_orchestrator.cancellation import CancellationToken
from route_orchestrator.domain.graph import END_ROUTE
from route_orchestrator.domain.models import OnComplete, Route, Step, Tool, ToolResult
from route_orchestrator.execution.steps import StepTransition
from route_orchestrator.llm.interface import ToolCall
from route_orchestrator.services.exceptions import (
    ResponseGenerationError,
    ToolExecutionError,
    TurnCancelledError,
)
from route_orchestrator.state.models import Message
from route_orchestrator.state.session import create_session


def weather_route(**kwargs) -> Route:
    kwargs.setdefault("pre_extract", False)
    return Route(
        title="Weather",
        description="Answer weather questions.",
        steps=[Step(id="ask_city", prompt="Ask which city.", collect=["city"], tools=["weather"])],
        **kwargs,
    )


def weather_call(call_id: str = "call_1") -> ToolCall:
    return ToolCall(id=call_id, name="weather", arguments={"city": "Paris"})


# --- Route completion & pending transitions ---

@pytest.mark.asyncio
async def test_all_required_fields_in_first_message_completes_route(llm, make_agent, booking_route, feedback_route):
    """One message carrying every field completes the route and defers the next one."""
    agent = make_agent(routes=[booking_route, feedback_route])
    llm.queue({"context": "booking", "routes": {"book_hotel": 95, "feedback": 5}})
    llm.queue({"hotelName": "Hilton", "date": "2025-03-01", "guests": "2"})
    llm.queue({"message": "Your Hilton stay on 2025-03-01 for 2 guests is booked."})

    result = await agent.respond([user("Book the Hilton on 2025-03-01 for 2 guests")])

    assert result.is_route_complete is True
    assert result.route_id == "book_hotel"
    assert result.step_id == END_ROUTE
    assert result.message == "Your Hilton stay on 2025-03-01 for 2 guests is booked."
    assert result.session.pending_transition.target_route_id == "feedback"
    assert result.session.data == {"hotelName": "Hilton", "date": "2025-03-01", "guests": "2"}
    assert result.session.route_history[-1].completed is True
    assert len(llm.requests) == 3


@pytest.mark.asyncio
async def test_pending_transition_is_applied_on_next_turn_without_scoring(llm, make_agent, booking_route, feedback_route):
    """The deferred route wins over scoring and the transition is consumed."""
    agent = make_agent(routes=[booking_route, feedback_route])
    session = create_session(data={"hotelName": "Hilton", "date": "2025-03-01", "guests": 2})
    llm.queue({"context": "booking", "routes": {"book_hotel": 90, "feedback": 0}})
    llm.queue({"message": "Booked!"})
    first = await agent.respond([user("Book it")], session=session)
    assert first.session.pending_transition is not None

    llm.queue({})  # pre-extraction for the feedback route finds nothing
    llm.queue({"message": "How would you rate your booking experience?"})
    second = await agent.respond(
        [user("Book it"), Message(role="assistant", content="Booked!"), user("thanks")],
        session=first.session,
    )

    assert second.route_id == "feedback"
    assert second.step_id == "ask_rating"
    assert second.session.pending_transition is None
    assert second.session.current_route.id == "feedback"
    # Turn one: routing + completion. Turn two: extraction + step response, no routing.
    assert len(llm.requests) == 4


@pytest.mark.asyncio
async def test_completion_falls_back_to_canned_message(llm, make_agent, booking_route):
    """A failing completion call still completes the route."""
    agent = make_agent(routes=[booking_route])
    llm.queue({"hotelName": "Hilton", "date": "2025-03-01", "guests": "2"})
    llm.fail(RuntimeError("provider down"))

    result = await agent.respond([user("Hilton, 2025-03-01, 2 guests")])

    assert result.is_route_complete
    assert result.message == "Thank you! I've recorded all the information for your book hotel."


@pytest.mark.asyncio
async def test_on_complete_callable_decides_target(llm, make_agent, feedback_route):
    """on_complete may be a callable returning an OnComplete."""
    route = Route(
        title="Survey",
        steps=[Step(id="ask_score", collect=["score"])],
        required_fields=["score"],
        on_complete=lambda ctx: OnComplete(next_route="Feedback", condition="score was {{ data.score }}"),
    )
    agent = make_agent(routes=[route, feedback_route])
    llm.queue({"context": "", "routes": {"survey": 80, "feedback": 10}})
    llm.queue({"score": "9"})
    llm.queue({"message": "Thanks!"})

    result = await agent.respond([user("I'd give it a 9")])

    assert result.session.pending_transition.target_route_id == "feedback"
    assert result.session.pending_transition.condition == "score was 9"


# --- Step responses ---

@pytest.mark.asyncio
async def test_step_response_collects_fields_and_advances(llm, make_agent, booking_route):
    """Fields returned with the reply are merged; the next turn moves on."""
    agent = make_agent(routes=[booking_route])
    llm.queue({})
    llm.queue({"message": "Great, when would you like to stay?", "hotelName": "Ritz"})

    first = await agent.respond([user("I want to book a hotel")])

    assert first.step_id == "ask_hotel"
    assert first.transition is StepTransition.ENTER
    assert first.session.data == {"hotelName": "Ritz"}
    assert first.session.data_by_route["book_hotel"] == {"hotelName": "Ritz"}

    llm.queue({})
    llm.queue({"message": "How many guests?"})
    second = await agent.respond([user("The Ritz")], session=first.session)

    assert second.step_id == "ask_date"
    assert second.transition is StepTransition.ADVANCE
    assert "Ask for the date at Ritz." in llm.requests[-1].prompt


@pytest.mark.asyncio
async def test_agent_collected_data_wins_on_conflict(llm, make_agent, booking_route):
    agent = make_agent(routes=[booking_route])
    agent.update_collected_data({"hotelName": "Savoy"})
    llm.queue({"hotelName": "Ritz"})
    llm.queue({"message": "When?"})

    result = await agent.respond([user("hi")], session=create_session(data={"hotelName": "Ritz"}))

    # Agent data is merged before extraction, the user's new answer is merged after.
    assert result.session.data["hotelName"] == "Ritz"
    assert "Savoy" in llm.requests[0].prompt


# --- Tool loop ---

@pytest.mark.asyncio
async def test_failed_tool_is_left_out_of_followup_history(llm, make_agent):
    """A tool failure is logged, the turn still produces a message."""
    tool = Tool(id="weather", handler=lambda ctx, city=None: ToolResult(success=False, error="timeout"))
    agent = make_agent(tools=[tool], routes=[weather_route()])
    llm.queue({"message": "Let me check."}, tool_calls=[weather_call()])
    llm.queue({"message": "The weather service is not responding right now."})

    history = [user("Weather in Paris?")]
    result = await agent.respond(history)

    assert result.message == "The weather service is not responding right now."
    assert result.tool_calls[0].success is False
    assert result.tool_calls[0].error == "timeout"
    assert [m.role for m in llm.requests[1].history] == ["user"]


@pytest.mark.asyncio
async def test_successful_tool_result_is_appended_and_applied(llm, make_agent):
    def weather(ctx, city=None):
        return ToolResult(data={"city": city, "temp": 21}, data_update={"city": city}, context_update={"units": "C"})

    tool = Tool(id="weather", handler=weather)
    agent = make_agent(tools=[tool], routes=[weather_route()])
    llm.queue({"message": ""}, tool_calls=[weather_call()])
    llm.queue({"message": "It is 21 degrees in Paris."})

    result = await agent.respond([user("Weather in Paris?")])

    followup = llm.requests[1]
    assert followup.history[-1].role == "tool"
    assert followup.history[-1].tool_name == "weather"
    assert followup.history[-1].tool_data == {"city": "Paris", "temp": 21}
    assert followup.context["units"] == "C"
    assert agent.context["units"] == "C"
    assert result.session.data["city"] == "Paris"
    assert result.message == "It is 21 degrees in Paris."


@pytest.mark.asyncio
async def test_fields_returned_alongside_tool_calls_are_collected(llm, make_agent):
    """The tool already sees the city named in the first reply; the follow-up still has the last word."""
    seen = {}

    def weather(ctx, city=None):
        seen.update(ctx.data)
        return {"temp": 18}

    agent = make_agent(tools=[Tool(id="weather", handler=weather)], routes=[weather_route()])
    llm.queue({"message": "Checking Rome", "city": "Rome"}, tool_calls=[weather_call()])
    llm.queue({"message": "Rome is 18 degrees. Milan too?", "city": "Milan"})

    result = await agent.respond([user("Weather in Rome?")])

    assert seen == {"city": "Rome"}
    assert result.session.data == {"city": "Milan"}


@pytest.mark.asyncio
async def test_first_reply_fields_survive_a_silent_followup(llm, make_agent):
    tool = Tool(id="weather", handler=lambda ctx, city=None: {"temp": 18})
    agent = make_agent(tools=[tool], routes=[weather_route()])
    llm.queue({"message": "Checking", "city": "Rome"}, tool_calls=[weather_call()])
    llm.queue({"message": "Rome is 18 degrees."})

    result = await agent.respond([user("Weather in Rome?")])

    assert result.session.data == {"city": "Rome"}
    assert result.session.data_by_route["weather"] == {"city": "Rome"}


@pytest.mark.asyncio
async def test_tool_loop_stops_at_max_rounds(llm, make_agent):
    """Six rounds of tool calls with a limit of five: the fifth follow-up is returned."""
    tool = Tool(id="weather", handler=lambda ctx, city=None: {"temp": 20})
    agent = make_agent(tools=[tool], routes=[weather_route()], max_tool_loops=5)
    for index in range(6):
        llm.queue({"message": f"m{index}"}, tool_calls=[weather_call(f"call_{index}")])

    result = await agent.respond([user("Keep checking")])

    assert len(llm.requests) == 6
    assert len(result.tool_calls) == 5
    assert result.message == "m5"


@pytest.mark.asyncio
async def test_tool_outside_step_allow_list_is_not_executed(llm, make_agent):
    called = []
    allowed = Tool(id="weather", handler=lambda ctx, city=None: {"temp": 20})
    other = Tool(id="refund", handler=lambda ctx: called.append(True))
    agent = make_agent(tools=[allowed, other], routes=[weather_route()])
    llm.queue({"message": ""}, tool_calls=[ToolCall(id="c1", name="refund")])
    llm.queue({"message": "Done."})

    result = await agent.respond([user("refund me")])

    assert called == []
    assert result.tool_calls[0].success is False
    assert [tool.id for tool in llm.requests[0].tools] == ["weather"]


# --- Fallback ---

@pytest.mark.asyncio
async def test_low_scores_fall_back_to_unscoped_reply(llm, make_agent, booking_route, feedback_route):
    agent = make_agent(routes=[booking_route, feedback_route], min_route_score=50)
    llm.queue({"context": "", "routes": {"book_hotel": 10, "feedback": 20}})
    llm.queue({"message": "I can help with bookings and feedback."})

    result = await agent.respond([user("What's the capital of France?")])

    assert result.route_id is None
    assert result.message == "I can help with bookings and feedback."
    assert result.session.current_route is None


@pytest.mark.asyncio
async def test_agent_without_routes_replies_unscoped(llm, make_agent):
    agent = make_agent()
    llm.queue({"message": "Hello!"})

    result = await agent.respond([user("hi")])

    assert result.message == "Hello!"
    assert len(llm.requests) == 1


# --- Hooks ---

@pytest.mark.asyncio
async def test_prepare_hook_result_is_merged_before_the_reply(llm, make_agent):
    route = Route(
        title="Profile",
        steps=[Step(id="greet", collect=["nickname"], prepare=lambda context, data: {"vip": True})],
        pre_extract=False,
    )
    agent = make_agent(routes=[route])
    llm.queue({"message": "Welcome back!"})

    result = await agent.respond([user("hi")])

    assert result.session.data["vip"] is True


@pytest.mark.asyncio
async def test_failing_prepare_tool_raises_typed_error(llm, make_agent):
    tool = Tool(id="load_profile", handler=lambda ctx: ToolResult(success=False, error="not found"))
    route = Route(title="Profile", steps=[Step(id="greet", prepare="load_profile")], pre_extract=False)
    agent = make_agent(tools=[tool], routes=[route])

    with pytest.raises(ResponseGenerationError) as exc:
        await agent.respond([user("hi")])

    assert exc.value.phase == "step_preparation"
    assert isinstance(exc.value.original_error, ToolExecutionError)


@pytest.mark.asyncio
async def test_finalize_tool_runs_after_the_reply(llm, make_agent):
    tool = Tool(id="audit", handler=lambda ctx: ToolResult(data_update={"audited": True}))
    route = Route(title="Profile", steps=[Step(id="greet", collect=["nickname"], finalize="audit")], pre_extract=False)
    agent = make_agent(tools=[tool], routes=[route])
    llm.queue({"message": "Hi!"})

    result = await agent.respond([user("hi")])

    assert result.session.data["audited"] is True
    assert agent.current_session is result.session


# --- Errors & validation ---

@pytest.mark.asyncio
async def test_empty_history_is_rejected(make_agent):
    agent = make_agent()

    with pytest.raises(ResponseGenerationError) as exc:
        await agent.respond([])

    assert exc.value.phase == "validation"


@pytest.mark.asyncio
async def test_provider_failure_is_tagged_with_phase(llm, make_agent, booking_route):
    agent = make_agent(routes=[booking_route])
    llm.fail(RuntimeError("rate limited"))

    with pytest.raises(ResponseGenerationError) as exc:
        await agent.respond([user("book a hotel")])

    assert exc.value.phase == "data_extraction"
    assert isinstance(exc.value.original_error, RuntimeError)


# --- Persistence ---

@pytest.mark.asyncio
async def test_auto_save_persists_session_state(llm, make_agent, booking_route, persistence):
    agent = make_agent(routes=[booking_route], persistence=persistence, auto_save=True)
    llm.queue({})
    llm.queue({"message": "Which hotel?", "hotelName": "Ritz"})

    result = await agent.respond([user("book a hotel")])

    stored = persistence.load_session_state(result.session.id)
    assert stored.current_route.id == "book_hotel"
    assert stored.current_step.id == "ask_hotel"
    assert stored.data == {"hotelName": "Ritz"}


# --- Streaming ---

@pytest.mark.asyncio
async def test_stream_yields_deltas_then_final_result(llm, make_agent, booking_route):
    agent = make_agent(routes=[booking_route])
    llm.queue({})
    llm.queue({"message": "Which hotel would you like?"})

    chunks = [chunk async for chunk in agent.respond_stream([user("book a hotel")])]

    final = chunks[-1]
    assert final.done is True
    assert final.error is None
    assert final.result.message == "Which hotel would you like?"
    assert "".join(chunk.delta for chunk in chunks[:-1]) == "Which hotel would you like?"
    assert final.session.current_step.id == "ask_hotel"
    assert all(not chunk.done for chunk in chunks[:-1])


@pytest.mark.asyncio
async def test_stream_replaces_pre_tool_text_with_the_final_reply(llm, make_agent):
    tool = Tool(id="weather", handler=lambda ctx, city=None: {"temp": 21})
    agent = make_agent(tools=[tool], routes=[weather_route()])
    llm.queue({"message": "Let me check"}, tool_calls=[weather_call()])
    llm.queue({"message": "It is 21 degrees."})

    chunks = [chunk async for chunk in agent.respond_stream([user("Weather in Paris?")])]

    *deltas, reset, final = chunks
    assert [chunk.delta for chunk in deltas] == ["Let", " me", " check"]
    assert not any(chunk.reset for chunk in deltas)
    assert reset.reset is True
    assert reset.accumulated == "It is 21 degrees."
    assert final.result.message == reset.accumulated


@pytest.mark.asyncio
async def test_stream_reports_errors_as_final_chunk(llm, make_agent, booking_route):
    agent = make_agent(routes=[booking_route])
    llm.queue({})
    llm.fail(RuntimeError("provider down"))

    chunks = [chunk async for chunk in agent.respond_stream([user("book a hotel")])]

    assert chunks[-1].done is True
    assert chunks[-1].error.phase == "response_generation"
    assert chunks[-1].result is None


# --- Cancellation ---

@pytest.mark.asyncio
async def test_cancelled_token_stops_the_turn(llm, make_agent, booking_route):
    agent = make_agent(routes=[booking_route])
    token = CancellationToken()
    token.cancel("user left")

    with pytest.raises(TurnCancelledError):
        await agent.respond([user("book a hotel")], cancel_token=token)

    assert llm.requests == []


@pytest.mark.asyncio
async def test_cancellation_keeps_data_collected_before_it(llm, make_agent):
    token = CancellationToken()

    def weather(ctx, city=None):
        token.cancel()
        return ToolResult(data={"temp": 21}, data_update={"city": city})

    agent = make_agent(tools=[Tool(id="weather", handler=weather)], routes=[weather_route()])
    llm.queue({"message": ""}, tool_calls=[weather_call()])

    with pytest.raises(TurnCancelledError) as exc:
        await agent.respond([user("Weather in Paris?")], cancel_token=token)

    assert exc.value.session.data["city"] == "Paris"
    assert agent.current_session.data["city"] == "Paris"
    assert len(llm.requests) == 1


@pytest.mark.asyncio
async def test_cancelled_stream_ends_with_cancelled_error_chunk(llm, make_agent, booking_route):
    agent = make_agent(routes=[booking_route])
    token = CancellationToken()
    token.cancel()

    chunks = [chunk async for chunk in agent.respond_stream([user("hi")], cancel_token=token)]

    assert len(chunks) == 1
    assert chunks[0].error.phase == "cancelled"
