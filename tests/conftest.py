import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from route_orchestrator.domain.models import Route, Step
from route_orchestrator.infrastructure.database.connection import init_db
from route_orchestrator.llm.interface import (
    GenerationChunk,
    GenerationRequest,
    GenerationResult,
    LLMProvider,
    ToolCall,
)
from route_orchestrator.repositories.message import InMemoryMessageRepository
from route_orchestrator.repositories.session import InMemorySessionRepository
from route_orchestrator.services.agent import Agent
from route_orchestrator.services.persistence import PersistenceManager
from route_orchestrator.state.models import Message


class ScriptedLLM(LLMProvider):
    """
    A provider that replays queued replies in order.

    Each reply is a payload dict validated into the request's response model,
    so tests exercise the same structured-output path as a real provider.
    Every request is recorded for later inspection.
    """

    def __init__(self):
        self.replies: List[Union[tuple, Exception]] = []
        self.requests: List[GenerationRequest] = []
        self.gate: Optional[asyncio.Event] = None

    def queue(self, payload: Optional[Dict[str, Any]] = None, tool_calls: Optional[List[ToolCall]] = None):
        self.replies.append((dict(payload or {}), list(tool_calls or [])))
        return self

    def fail(self, error: Exception):
        self.replies.append(error)
        return self

    async def _next(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if not self.replies:
            raise AssertionError(f"Unexpected model call:\n{request.prompt}")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        payload, tool_calls = reply
        structured = request.response_model.model_validate(payload)
        return GenerationResult(
            message=payload.get("message", ""),
            structured=structured,
            tool_calls=tool_calls,
        )

    async def generate_message(self, request: GenerationRequest) -> GenerationResult:
        return await self._next(request)

    async def stream_message(self, request: GenerationRequest) -> AsyncIterator[GenerationChunk]:
        result = await self._next(request)
        accumulated = ""
        for index, word in enumerate(result.message.split(" ")):
            delta = word if index == 0 else f" {word}"
            accumulated += delta
            yield GenerationChunk(delta=delta, accumulated=accumulated)
        yield GenerationChunk(
            delta="",
            accumulated=accumulated,
            done=True,
            structured=result.structured,
            tool_calls=result.tool_calls,
        )


def user(text: str) -> Message:
    return Message(role="user", content=text)


# --- Providers & Storage ---

@pytest.fixture
def llm():
    return ScriptedLLM()


@pytest.fixture
def persistence():
    return PersistenceManager(InMemorySessionRepository(), InMemoryMessageRepository())


@pytest.fixture
def sql_engine():
    """A throwaway in-memory SQLite database shared by every connection."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


# --- Sample Configuration ---

@pytest.fixture
def booking_route():
    return Route(
        title="Book Hotel",
        description="Help the user book a hotel room.",
        when=["The user wants to book a hotel"],
        steps=[
            Step(id="ask_hotel", description="Ask which hotel", prompt="Ask which hotel.", collect=["hotelName"]),
            Step(id="ask_date", description="Ask the date", prompt="Ask for the date at {{ data.hotelName }}.", collect=["date"]),
            Step(id="ask_guests", description="Ask guest count", prompt="Ask how many guests.", collect=["guests"]),
        ],
        required_fields=["hotelName", "date", "guests"],
        on_complete="feedback",
    )


@pytest.fixture
def feedback_route():
    return Route(
        title="Feedback",
        description="Collect feedback about the stay.",
        when=["The user wants to leave feedback"],
        steps=[Step(id="ask_rating", description="Ask for a rating", collect=["rating"])],
        required_fields=["rating"],
    )


@pytest.fixture
def make_agent(llm):
    def factory(**kwargs) -> Agent:
        kwargs.setdefault("name", "Concierge")
        kwargs.setdefault("llm", llm)
        kwargs.setdefault("history_window", 10)
        kwargs.setdefault("min_route_score", 0)
        kwargs.setdefault("max_tool_loops", 5)
        return Agent(**kwargs)

    return factory
