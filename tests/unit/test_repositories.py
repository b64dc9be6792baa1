from datetime import timedelta

import pytest

from route_orchestrator.repositories.message import InMemoryMessageRepository, SqlMessageRepository
from route_orchestrator.repositories.session import InMemorySessionRepository, SqlSessionRepository
from route_orchestrator.state.models import CollectedData, MessageRecord, PendingTransition, SessionSnapshot, utc_now


@pytest.fixture(params=["memory", "sql"])
def session_repo(request):
    if request.param == "memory":
        return InMemorySessionRepository()
    return SqlSessionRepository(request.getfixturevalue("sql_engine"))


@pytest.fixture(params=["memory", "sql"])
def message_repo(request):
    if request.param == "memory":
        return InMemoryMessageRepository()
    return SqlMessageRepository(request.getfixturevalue("sql_engine"))


def snapshot(session_id: str, user_id: str = "u1", **kwargs) -> SessionSnapshot:
    return SessionSnapshot(id=session_id, user_id=user_id, agent_name="Concierge", **kwargs)


def message(message_id: str, session_id: str = "s1", offset: int = 0, user_id: str = "u1") -> MessageRecord:
    return MessageRecord(
        id=message_id,
        session_id=session_id,
        user_id=user_id,
        role="user",
        content=f"message {message_id}",
        created_at=utc_now() + timedelta(seconds=offset),
    )


# --- Sessions ---

def test_create_and_find_session(session_repo):
    blob = CollectedData(
        data={"hotelName": "Ritz"},
        data_by_route={"book_hotel": {"hotelName": "Ritz"}},
        current_route_title="Book Hotel",
        pending_transition=PendingTransition(target_route_id="feedback"),
    )
    session_repo.create(snapshot("s1", current_route="book_hotel", current_step="ask_date", collected_data=blob))

    found = session_repo.find_by_id("s1")

    assert found.current_route == "book_hotel"
    assert found.current_step == "ask_date"
    assert found.collected_data.data == {"hotelName": "Ritz"}
    assert found.collected_data.pending_transition.target_route_id == "feedback"
    assert session_repo.find_by_id("missing") is None


def test_update_applies_fields_and_returns_none_for_unknown(session_repo):
    session_repo.create(snapshot("s1"))

    updated = session_repo.update("s1", {"current_route": "feedback", "message_count": 3})

    assert updated.current_route == "feedback"
    assert updated.message_count == 3
    assert session_repo.update("missing", {"status": "completed"}) is None


def test_convenience_updates(session_repo):
    session_repo.create(snapshot("s1"))

    session_repo.update_route_step("s1", "book_hotel", "ask_hotel")
    session_repo.update_collected_data("s1", CollectedData(data={"guests": 2}))
    session_repo.increment_message_count("s1")
    session_repo.increment_message_count("s1")
    session_repo.update_status("s1", "completed", completed_at=utc_now())

    found = session_repo.find_by_id("s1")
    assert (found.current_route, found.current_step) == ("book_hotel", "ask_hotel")
    assert found.collected_data.data == {"guests": 2}
    assert found.message_count == 2
    assert found.last_message_at is not None
    assert found.status == "completed"
    assert found.completed_at is not None
    assert session_repo.increment_message_count("missing") is None


def test_active_session_lookup_ignores_closed_sessions(session_repo):
    session_repo.create(snapshot("old", status="completed"))
    session_repo.create(snapshot("current"))
    session_repo.create(snapshot("other-user", user_id="u2"))

    assert session_repo.find_active_by_user_id("u1").id == "current"
    assert len(session_repo.find_by_user_id("u1")) == 2
    assert len(session_repo.find_by_user_id("u1", limit=1)) == 1
    assert session_repo.find_active_by_user_id("nobody") is None


def test_delete_session(session_repo):
    session_repo.create(snapshot("s1"))

    assert session_repo.delete("s1") is True
    assert session_repo.delete("s1") is False
    assert session_repo.find_by_id("s1") is None


def test_in_memory_create_rejects_duplicates():
    repo = InMemorySessionRepository()
    repo.create(snapshot("s1"))

    with pytest.raises(ValueError):
        repo.create(snapshot("s1"))


# --- Messages ---

def test_messages_are_returned_oldest_first(message_repo):
    message_repo.create(message("m2", offset=2))
    message_repo.create(message("m1", offset=1))
    message_repo.create(message("m3", offset=3))
    message_repo.create(message("x1", session_id="s2", offset=0))

    assert [m.id for m in message_repo.find_by_session_id("s1")] == ["m1", "m2", "m3"]
    assert [m.id for m in message_repo.find_by_session_id("s1", limit=2)] == ["m2", "m3"]


def test_message_lookup_by_id_and_user(message_repo):
    record = message("m1")
    record = record.model_copy(update={"tool_calls": [{"tool_id": "weather", "success": True}]})
    message_repo.create(record)
    message_repo.create(message("m2", user_id="u2", offset=1))

    found = message_repo.find_by_id("m1")

    assert found.tool_calls == [{"tool_id": "weather", "success": True}]
    assert [m.id for m in message_repo.find_by_user_id("u2")] == ["m2"]
    assert message_repo.find_by_id("missing") is None


def test_message_deletes_report_counts(message_repo):
    for index in range(3):
        message_repo.create(message(f"m{index}", offset=index))
    message_repo.create(message("other", session_id="s2", user_id="u2"))

    assert message_repo.delete("m0") is True
    assert message_repo.delete("m0") is False
    assert message_repo.delete_by_session_id("s1") == 2
    assert message_repo.delete_by_user_id("u2") == 1
    assert message_repo.find_by_session_id("s2") == []
