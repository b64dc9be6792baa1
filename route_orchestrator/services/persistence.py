"""
Persistence Manager - Session & Message Storage Facade

Sits between the orchestration code and the repositories. Converts between
the runtime SessionState and the stored SessionSnapshot, and keeps the
session's message bookkeeping in step with the message store.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from ..repositories.message import MessageRepository
from ..repositories.session import SessionRepository
from ..state.models import MessageRecord, MessageRole, SessionSnapshot, SessionState, utc_now
from ..state.session import create_session, from_snapshot, to_snapshot

logger = logging.getLogger(__name__)


class PersistenceManager:
    def __init__(
        self,
        session_repository: SessionRepository,
        message_repository: MessageRepository,
        auto_save: bool = True,
    ):
        self.session_repo = session_repository
        self.message_repo = message_repository
        self.auto_save = auto_save

    # --- Sessions ---

    def create_session(
        self,
        user_id: Optional[str] = None,
        agent_name: Optional[str] = None,
        session_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SessionState:
        """Creates and stores a new active session."""
        session = create_session(
            session_id=session_id,
            user_id=user_id,
            agent_name=agent_name,
            data=data,
            metadata=metadata,
        )
        self.session_repo.create(to_snapshot(session))
        logger.info(f"Created session {session.id}")
        return session

    def get_session(self, session_id: str) -> Optional[SessionSnapshot]:
        return self.session_repo.find_by_id(session_id)

    def find_active_session(self, user_id: str) -> Optional[SessionSnapshot]:
        return self.session_repo.find_active_by_user_id(user_id)

    def delete_session(self, session_id: str) -> bool:
        """Deletes a session and all of its messages (messages first)."""
        deleted_messages = self.message_repo.delete_by_session_id(session_id)
        deleted = self.session_repo.delete(session_id)
        if deleted:
            logger.info(f"Deleted session {session_id} ({deleted_messages} messages)")
        return deleted

    def complete_session(self, session_id: str) -> Optional[SessionSnapshot]:
        return self.session_repo.update_status(session_id, "completed", completed_at=utc_now())

    def abandon_session(self, session_id: str) -> Optional[SessionSnapshot]:
        return self.session_repo.update_status(session_id, "abandoned")

    # --- Messages ---

    def save_message(
        self,
        session_id: str,
        role: MessageRole,
        content: str,
        user_id: Optional[str] = None,
        route: Optional[str] = None,
        step: Optional[str] = None,
        tool_calls: Optional[List[Dict[str, Any]]] = None,
    ) -> MessageRecord:
        record = MessageRecord(
            id=str(uuid.uuid4()),
            session_id=session_id,
            user_id=user_id,
            role=role,
            content=content,
            route=route,
            step=step,
            tool_calls=tool_calls,
        )
        self.message_repo.create(record)
        if self.auto_save:
            self.session_repo.increment_message_count(session_id)
        return record

    def get_session_messages(self, session_id: str, limit: Optional[int] = None) -> List[MessageRecord]:
        return self.message_repo.find_by_session_id(session_id, limit=limit)

    # --- Runtime State ---

    def save_session_state(self, session: SessionState) -> SessionSnapshot:
        """Stores the full runtime state, creating the row when it is new."""
        snapshot = to_snapshot(session)
        existing = self.session_repo.find_by_id(snapshot.id)
        if existing is None:
            logger.debug(f"Session {snapshot.id} not stored yet, creating it")
            return self.session_repo.create(snapshot)

        updates = snapshot.model_dump(exclude={"id", "created_at", "updated_at", "collected_data"})
        updates["collected_data"] = snapshot.collected_data
        # The message store owns the message bookkeeping.
        updates["message_count"] = max(existing.message_count, snapshot.message_count)
        updates["last_message_at"] = snapshot.last_message_at or existing.last_message_at
        return self.session_repo.update(snapshot.id, updates)

    def load_session_state(self, session_id: str) -> Optional[SessionState]:
        snapshot = self.session_repo.find_by_id(session_id)
        if snapshot is None:
            return None
        return from_snapshot(snapshot)
