"""
Dependency Injection Wiring (Composition Root).

This module acts as the central "container" for the application's services.
It is responsible for:
1. Instantiating the singleton services (Repositories, LLM Adapter, Agent).
2. Wiring them together (e.g., injecting the PersistenceManager into the Agent).
3. Managing their lifecycle with @lru_cache so each is created once per process.

Tests override these getters through app.dependency_overrides.
"""

from functools import lru_cache
from fastapi import Depends

from ..config import settings
from ..llm.interface import LLMProvider
from ..llm.adapters.openai_adapter import OpenAIAdapter
from ..repositories.session import SessionRepository, InMemorySessionRepository, SqlSessionRepository
from ..repositories.message import MessageRepository, InMemoryMessageRepository, SqlMessageRepository
from ..services.agent import Agent
from ..services.persistence import PersistenceManager
from ..services.session_manager import SessionManager
from ..data.example_agent import build_hotel_agent

from ..infrastructure.database.connection import init_db


# LLM Provider (Singleton)
@lru_cache()
def get_llm_provider() -> LLMProvider:
    return OpenAIAdapter(
        api_key=settings.OPENAI_API_KEY,
        model_name=settings.OPENAI_MODEL
    )


# Session Repository (Singleton)
# Note: In-memory storage must be a singleton so data persists across requests!
@lru_cache()
def get_session_repository() -> SessionRepository:
    if settings.SESSION_STORE == "sql":
        init_db()
        return SqlSessionRepository()
    return InMemorySessionRepository()


# Message Repository (Singleton)
@lru_cache()
def get_message_repository() -> MessageRepository:
    if settings.SESSION_STORE == "sql":
        init_db()
        return SqlMessageRepository()
    return InMemoryMessageRepository()


@lru_cache()
def get_persistence_manager(
    session_repo: SessionRepository = Depends(get_session_repository),
    message_repo: MessageRepository = Depends(get_message_repository),
) -> PersistenceManager:
    return PersistenceManager(session_repo, message_repo, auto_save=settings.AUTO_SAVE)


# The Agent (Singleton Service)
@lru_cache()
def get_agent(
    llm: LLMProvider = Depends(get_llm_provider),
    persistence: PersistenceManager = Depends(get_persistence_manager),
) -> Agent:
    return build_hotel_agent(llm=llm, persistence=persistence)


@lru_cache()
def get_session_manager(
    persistence: PersistenceManager = Depends(get_persistence_manager),
    agent: Agent = Depends(get_agent),
) -> SessionManager:
    return SessionManager(persistence, agent_name=agent.name)
