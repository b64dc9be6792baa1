"""
Session Manager - Conversation Entry Point

Loads (or creates) the session a message belongs to, keeps its message
log, and rebuilds the history the pipeline expects.
"""

import logging
from typing import Any, Dict, List, Optional

from ..state.models import Message, MessageRecord, MessageRole, SessionState
from .exceptions import SessionNotFoundError
from .persistence import PersistenceManager

logger = logging.getLogger(__name__)


class SessionManager:
    def __init__(self, persistence: PersistenceManager, agent_name: Optional[str] = None):
        self.persistence = persistence
        self.agent_name = agent_name

    def get_or_create(
        self,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SessionState:
        """
        Resolution order:
        1. An explicit session id (must exist).
        2. The user's most recent active session.
        3. A brand new session.
        """
        if session_id:
            session = self.persistence.load_session_state(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            return session

        if user_id:
            active = self.persistence.find_active_session(user_id)
            if active is not None:
                logger.info(f"Resuming active session {active.id} for user {user_id}")
                return self.persistence.load_session_state(active.id)

        return self.persistence.create_session(
            user_id=user_id, agent_name=self.agent_name, metadata=metadata
        )

    def add_message(
        self,
        session: SessionState,
        role: MessageRole,
        content: str,
        tool_calls: Optional[List[Dict[str, Any]]] = None,
    ) -> MessageRecord:
        return self.persistence.save_message(
            session_id=session.id,
            role=role,
            content=content,
            user_id=session.user_id,
            route=session.current_route.id if session.current_route else None,
            step=session.current_step.id if session.current_step else None,
            tool_calls=tool_calls,
        )

    def get_history(self, session_id: str, limit: Optional[int] = None) -> List[Message]:
        records = self.persistence.get_session_messages(session_id, limit=limit)
        return [
            Message(role=record.role, content=record.content, created_at=record.created_at)
            for record in records
        ]

    def save(self, session: SessionState) -> None:
        self.persistence.save_session_state(session)

    def delete(self, session_id: str) -> bool:
        return self.persistence.delete_session(session_id)
