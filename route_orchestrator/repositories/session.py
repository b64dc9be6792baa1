import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

# State & Infra Imports
from ..state.models import CollectedData, SessionSnapshot, SessionStatus, utc_now
from ..infrastructure.database.tables import SessionDBModel

logger = logging.getLogger(__name__)


class SessionRepository(ABC):
    """
    Defines how the application accesses persisted sessions.
    This allows us change how data is stored (Memory -> SQL -> API) later
    without changing the orchestration code.
    """

    @abstractmethod
    def create(self, snapshot: SessionSnapshot) -> SessionSnapshot:
        """Stores a new session snapshot."""
        pass

    @abstractmethod
    def find_by_id(self, session_id: str) -> Optional[SessionSnapshot]:
        pass

    @abstractmethod
    def find_active_by_user_id(self, user_id: str) -> Optional[SessionSnapshot]:
        """The most recently updated active session of a user."""
        pass

    @abstractmethod
    def find_by_user_id(self, user_id: str, limit: Optional[int] = None) -> List[SessionSnapshot]:
        """All sessions of a user, newest first."""
        pass

    @abstractmethod
    def update(self, session_id: str, updates: Dict[str, Any]) -> Optional[SessionSnapshot]:
        """Applies field updates. Returns None if the session does not exist."""
        pass

    @abstractmethod
    def delete(self, session_id: str) -> bool:
        """Deletes a session. Returns True if found and deleted."""
        pass

    # --- Convenience updates built on update() ---

    def update_status(
        self, session_id: str, status: SessionStatus, completed_at: Optional[datetime] = None
    ) -> Optional[SessionSnapshot]:
        updates: Dict[str, Any] = {"status": status}
        if completed_at is not None:
            updates["completed_at"] = completed_at
        return self.update(session_id, updates)

    def update_collected_data(self, session_id: str, collected_data: CollectedData) -> Optional[SessionSnapshot]:
        return self.update(session_id, {"collected_data": collected_data})

    def update_route_step(
        self, session_id: str, route: Optional[str], step: Optional[str]
    ) -> Optional[SessionSnapshot]:
        return self.update(session_id, {"current_route": route, "current_step": step})

    def increment_message_count(self, session_id: str) -> Optional[SessionSnapshot]:
        existing = self.find_by_id(session_id)
        if existing is None:
            return None
        return self.update(
            session_id,
            {"message_count": existing.message_count + 1, "last_message_at": utc_now()},
        )


class InMemorySessionRepository(SessionRepository):
    """
    Uses in-memory dictionary for session storage for testing/dev purposes.
    """

    def __init__(self):
        self._store: Dict[str, SessionSnapshot] = {}

    def create(self, snapshot: SessionSnapshot) -> SessionSnapshot:
        if snapshot.id in self._store:
            raise ValueError(f"Session {snapshot.id} already exists")
        self._store[snapshot.id] = snapshot
        return snapshot

    def find_by_id(self, session_id: str) -> Optional[SessionSnapshot]:
        return self._store.get(session_id)

    def find_active_by_user_id(self, user_id: str) -> Optional[SessionSnapshot]:
        active = [s for s in self.find_by_user_id(user_id) if s.status == "active"]
        return active[0] if active else None

    def find_by_user_id(self, user_id: str, limit: Optional[int] = None) -> List[SessionSnapshot]:
        sessions = sorted(
            (s for s in self._store.values() if s.user_id == user_id),
            key=lambda s: s.updated_at,
            reverse=True,
        )
        return sessions[:limit] if limit else sessions

    def update(self, session_id: str, updates: Dict[str, Any]) -> Optional[SessionSnapshot]:
        existing = self._store.get(session_id)
        if existing is None:
            return None
        updated = existing.model_copy(update={**updates, "updated_at": utc_now()})
        self._store[session_id] = updated
        return updated

    def delete(self, session_id: str) -> bool:
        if session_id in self._store:
            del self._store[session_id]
            return True
        return False


class SqlSessionRepository(SessionRepository):
    """
    SQL (PostgreSQL JSONB / SQLite JSON) storage for session snapshots.
    """

    def __init__(self, db_engine: Optional[Engine] = None):
        if db_engine is None:
            from ..infrastructure.database.connection import engine as db_engine
        self.engine = db_engine

    def create(self, snapshot: SessionSnapshot) -> SessionSnapshot:
        with Session(self.engine) as db:
            db.add(_to_row(snapshot))
            db.commit()
        return snapshot

    def find_by_id(self, session_id: str) -> Optional[SessionSnapshot]:
        with Session(self.engine) as db:
            row = db.get(SessionDBModel, session_id)
            return _from_row(row) if row else None

    def find_active_by_user_id(self, user_id: str) -> Optional[SessionSnapshot]:
        with Session(self.engine) as db:
            statement = (
                select(SessionDBModel)
                .where(SessionDBModel.user_id == user_id)
                .where(SessionDBModel.status == "active")
                .order_by(SessionDBModel.updated_at.desc())
            )
            row = db.exec(statement).first()
            return _from_row(row) if row else None

    def find_by_user_id(self, user_id: str, limit: Optional[int] = None) -> List[SessionSnapshot]:
        with Session(self.engine) as db:
            statement = (
                select(SessionDBModel)
                .where(SessionDBModel.user_id == user_id)
                .order_by(SessionDBModel.updated_at.desc())
            )
            if limit:
                statement = statement.limit(limit)
            return [_from_row(row) for row in db.exec(statement).all()]

    def update(self, session_id: str, updates: Dict[str, Any]) -> Optional[SessionSnapshot]:
        with Session(self.engine) as db:
            row = db.get(SessionDBModel, session_id)
            if not row:
                return None

            for key, value in updates.items():
                if key == "collected_data" and isinstance(value, CollectedData):
                    value = value.model_dump(mode="json")
                setattr(row, key, value)
            row.updated_at = utc_now()

            db.add(row)
            db.commit()
            db.refresh(row)
            return _from_row(row)

    def delete(self, session_id: str) -> bool:
        with Session(self.engine) as db:
            row = db.get(SessionDBModel, session_id)
            if row:
                db.delete(row)
                db.commit()
                return True
            return False


def _to_row(snapshot: SessionSnapshot) -> SessionDBModel:
    values = snapshot.model_dump(exclude={"collected_data"})
    return SessionDBModel(**values, collected_data=snapshot.collected_data.model_dump(mode="json"))


def _from_row(row: SessionDBModel) -> SessionSnapshot:
    # Deserialize the JSON blob back into the Pydantic snapshot
    values = row.model_dump(exclude={"collected_data"})
    return SessionSnapshot(**values, collected_data=CollectedData(**(row.collected_data or {})))
