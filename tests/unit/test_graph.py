import pytest

from route_orchestrator.domain.graph import END_ROUTE, StepGraph, StepGraphError
from route_orchestrator.domain.models import Route, Step


def test_linear_graph_chains_steps_and_ends():
    graph = StepGraph.linear([Step(id="a"), Step(id="b")])

    assert graph.initial_step.id == "a"
    assert graph.successors("a") == ["b"]
    assert graph.successors("b") == [END_ROUTE]
    graph.validate()


def test_duplicate_and_reserved_ids_are_rejected():
    graph = StepGraph()
    graph.add_step(Step(id="a"))

    with pytest.raises(StepGraphError):
        graph.add_step(Step(id="a"))
    with pytest.raises(StepGraphError):
        graph.add_step(Step(id=END_ROUTE))


def test_link_from_unknown_step_is_rejected():
    with pytest.raises(StepGraphError):
        StepGraph().link("ghost", END_ROUTE)


def test_validate_rejects_dangling_edges():
    graph = StepGraph()
    graph.add_step(Step(id="a"))
    graph.link("a", "missing")

    with pytest.raises(StepGraphError, match="unknown step"):
        graph.validate()


def test_validate_requires_reachable_end():
    graph = StepGraph()
    graph.add_step(Step(id="a"))
    graph.add_step(Step(id="b"))
    graph.link("a", "b")
    graph.link("b", "a")

    with pytest.raises(StepGraphError, match="not reachable"):
        graph.validate()


def test_cycles_with_an_exit_are_valid():
    """A correction loop is fine as long as the route can still finish."""
    graph = StepGraph()
    graph.add_step(Step(id="collect"))
    graph.add_step(Step(id="confirm"))
    graph.link("collect", "confirm")
    graph.link("confirm", "collect")
    graph.link("confirm", END_ROUTE)

    graph.validate()
    assert graph.find_cycle() == ["collect", "confirm", "collect"]


def test_branching_route_uses_prebuilt_graph():
    graph = StepGraph()
    graph.add_step(Step(id="check", collect=["slot"]))
    graph.add_step(Step(id="book"))
    graph.add_step(Step(id="waitlist"))
    graph.link("check", "book")
    graph.link("check", "waitlist")
    graph.link("book", END_ROUTE)
    graph.link("waitlist", END_ROUTE)

    route = Route(title="Appointments", steps=graph, initial_step="check")

    assert route.id == "appointments"
    assert route.initial.id == "check"
    assert route.graph.reachable_from("check") == {"book", "waitlist", END_ROUTE}
    assert route.graph.to_dict()["edges"]["check"] == ["book", "waitlist"]


def test_route_progress_counts_required_fields(booking_route):
    data = {"hotelName": "Ritz", "date": None}

    assert booking_route.missing_fields(data) == ["date", "guests"]
    assert booking_route.completion_progress(data) == pytest.approx(1 / 3)
    assert not booking_route.is_complete(data)
    assert booking_route.is_complete({"hotelName": "Ritz", "date": "2025-03-01", "guests": 2})
    assert Route(title="Chat").completion_progress({}) == 0.0
