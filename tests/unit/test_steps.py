import pytest

from route_orchestrator.domain.graph import END_ROUTE, StepGraph
from route_orchestrator.domain.models import Route, Step
from route_orchestrator.execution.steps import StepResolver, StepTransition
from route_orchestrator.execution.templating import TemplateContext


def ctx(**data) -> TemplateContext:
    return TemplateContext(data=data)


@pytest.fixture
def resolver():
    return StepResolver()


# --- Linear walks ---

@pytest.mark.asyncio
async def test_entering_a_route_lands_on_first_unsatisfied_step(resolver, booking_route):
    resolution = await resolver.resolve(booking_route, None, ctx(hotelName="Ritz"))

    assert resolution.step.id == "ask_date"
    assert resolution.transition is StepTransition.ENTER


@pytest.mark.asyncio
async def test_current_step_is_held_until_its_fields_arrive(resolver, booking_route):
    resolution = await resolver.resolve(booking_route, "ask_date", ctx(hotelName="Ritz"))

    assert resolution.step.id == "ask_date"
    assert resolution.transition is StepTransition.HOLD


@pytest.mark.asyncio
async def test_satisfied_steps_are_walked_through(resolver, booking_route):
    resolution = await resolver.resolve(booking_route, "ask_hotel", ctx(hotelName="Ritz", date="2025-03-01"))

    assert resolution.step.id == "ask_guests"
    assert resolution.transition is StepTransition.ADVANCE


@pytest.mark.asyncio
async def test_walk_reaching_end_marks_completion(resolver, booking_route):
    resolution = await resolver.resolve(
        booking_route, "ask_hotel", ctx(hotelName="Ritz", date="2025-03-01", guests=2)
    )

    assert resolution.step is None
    assert resolution.reached_end is True
    assert resolution.transition is StepTransition.COMPLETE


@pytest.mark.asyncio
async def test_resolution_depends_only_on_data(resolver, booking_route):
    """Same data, same answer, regardless of how many times it is asked."""
    data = ctx(hotelName="Ritz")
    first = await resolver.resolve(booking_route, "ask_hotel", data)
    second = await resolver.resolve(booking_route, "ask_hotel", data)

    assert first.step.id == second.step.id == "ask_date"


@pytest.mark.asyncio
async def test_presented_step_without_fields_is_done_after_one_turn(resolver):
    route = Route(title="Intro", steps=[Step(id="greet"), Step(id="ask_name", collect=["name"])])

    entering = await resolver.resolve(route, None, ctx())
    after_greeting = await resolver.resolve(route, "greet", ctx())

    assert entering.step.id == "greet"
    assert after_greeting.step.id == "ask_name"


@pytest.mark.asyncio
async def test_route_without_steps_completes_immediately(resolver):
    resolution = await resolver.resolve(Route(title="Empty"), None, ctx())

    assert resolution.reached_end is True
    assert resolution.transition is StepTransition.COMPLETE


# --- Gating ---

@pytest.mark.asyncio
async def test_skip_if_walks_past_the_step(resolver):
    route = Route(
        title="Checkout",
        steps=[
            Step(id="ask_coupon", collect=["coupon"], skip_if=lambda c: c.context.get("no_coupons")),
            Step(id="ask_card", collect=["card"]),
        ],
    )

    resolution = await resolver.resolve(route, None, TemplateContext(context={"no_coupons": True}))

    assert resolution.step.id == "ask_card"


@pytest.mark.asyncio
async def test_missing_requires_blocks_the_branch(resolver):
    graph = StepGraph()
    graph.add_step(Step(id="start", collect=["plan"]))
    graph.add_step(Step(id="premium", collect=["seat"], requires=["upgrade"]))
    graph.add_step(Step(id="standard", collect=["seat"]))
    graph.link("start", "premium")
    graph.link("start", "standard")
    graph.link("premium", END_ROUTE)
    graph.link("standard", END_ROUTE)
    route = Route(title="Seats", steps=graph)

    resolution = await resolver.resolve(route, "start", ctx(plan="basic"))

    assert resolution.step.id == "standard"


@pytest.mark.asyncio
async def test_false_when_predicate_blocks_the_branch(resolver):
    graph = StepGraph()
    graph.add_step(Step(id="check", collect=["available"]))
    graph.add_step(Step(id="book", collect=["confirmed"], when=lambda c: c.data.get("available") is True))
    graph.add_step(Step(id="alternatives", collect=["choice"], when=["Offer other dates", lambda c: c.data.get("available") is False]))
    graph.link("check", "book")
    graph.link("check", "alternatives")
    graph.link("book", END_ROUTE)
    graph.link("alternatives", END_ROUTE)
    route = Route(title="Availability", steps=graph)

    unavailable = await resolver.resolve(route, "check", ctx(available=False))
    available = await resolver.resolve(route, "check", ctx(available=True))

    assert unavailable.step.id == "alternatives"
    assert available.step.id == "book"


@pytest.mark.asyncio
async def test_text_only_when_does_not_block(resolver):
    route = Route(title="Chat", steps=[Step(id="ask", collect=["topic"], when="The user seems unsure")])

    resolution = await resolver.resolve(route, None, ctx())

    assert resolution.step.id == "ask"


@pytest.mark.asyncio
async def test_blocked_route_reports_no_candidate(resolver):
    route = Route(title="Locked", steps=[Step(id="ask", collect=["x"], requires=["token"])])

    resolution = await resolver.resolve(route, None, ctx())

    assert resolution.step is None
    assert resolution.reached_end is False
