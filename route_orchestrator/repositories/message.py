from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from ..state.models import MessageRecord
from ..infrastructure.database.tables import MessageDBModel


class MessageRepository(ABC):
    """
    Defines how the application stores conversation messages.
    """

    @abstractmethod
    def create(self, record: MessageRecord) -> MessageRecord:
        pass

    @abstractmethod
    def find_by_id(self, message_id: str) -> Optional[MessageRecord]:
        pass

    @abstractmethod
    def find_by_session_id(self, session_id: str, limit: Optional[int] = None) -> List[MessageRecord]:
        """Messages of a session, oldest first. `limit` keeps the most recent ones."""
        pass

    @abstractmethod
    def find_by_user_id(self, user_id: str, limit: Optional[int] = None) -> List[MessageRecord]:
        pass

    @abstractmethod
    def delete(self, message_id: str) -> bool:
        pass

    @abstractmethod
    def delete_by_session_id(self, session_id: str) -> int:
        """Returns the number of deleted messages."""
        pass

    @abstractmethod
    def delete_by_user_id(self, user_id: str) -> int:
        pass


class InMemoryMessageRepository(MessageRepository):
    """
    Uses in-memory dictionary for message storage for testing/dev purposes.
    """

    def __init__(self):
        self._store: Dict[str, MessageRecord] = {}

    def create(self, record: MessageRecord) -> MessageRecord:
        self._store[record.id] = record
        return record

    def find_by_id(self, message_id: str) -> Optional[MessageRecord]:
        return self._store.get(message_id)

    def find_by_session_id(self, session_id: str, limit: Optional[int] = None) -> List[MessageRecord]:
        messages = [m for m in self._store.values() if m.session_id == session_id]
        messages.sort(key=lambda m: m.created_at)
        return messages[-limit:] if limit else messages

    def find_by_user_id(self, user_id: str, limit: Optional[int] = None) -> List[MessageRecord]:
        messages = [m for m in self._store.values() if m.user_id == user_id]
        messages.sort(key=lambda m: m.created_at)
        return messages[-limit:] if limit else messages

    def delete(self, message_id: str) -> bool:
        return self._store.pop(message_id, None) is not None

    def delete_by_session_id(self, session_id: str) -> int:
        doomed = [key for key, m in self._store.items() if m.session_id == session_id]
        for key in doomed:
            del self._store[key]
        return len(doomed)

    def delete_by_user_id(self, user_id: str) -> int:
        doomed = [key for key, m in self._store.items() if m.user_id == user_id]
        for key in doomed:
            del self._store[key]
        return len(doomed)


class SqlMessageRepository(MessageRepository):
    """
    SQL storage for messages.
    """

    def __init__(self, db_engine: Optional[Engine] = None):
        if db_engine is None:
            from ..infrastructure.database.connection import engine as db_engine
        self.engine = db_engine

    def create(self, record: MessageRecord) -> MessageRecord:
        with Session(self.engine) as db:
            db.add(MessageDBModel(**record.model_dump()))
            db.commit()
        return record

    def find_by_id(self, message_id: str) -> Optional[MessageRecord]:
        with Session(self.engine) as db:
            row = db.get(MessageDBModel, message_id)
            return MessageRecord(**row.model_dump()) if row else None

    def find_by_session_id(self, session_id: str, limit: Optional[int] = None) -> List[MessageRecord]:
        statement = select(MessageDBModel).where(MessageDBModel.session_id == session_id)
        return self._fetch_recent(statement, limit)

    def find_by_user_id(self, user_id: str, limit: Optional[int] = None) -> List[MessageRecord]:
        statement = select(MessageDBModel).where(MessageDBModel.user_id == user_id)
        return self._fetch_recent(statement, limit)

    def delete(self, message_id: str) -> bool:
        with Session(self.engine) as db:
            row = db.get(MessageDBModel, message_id)
            if row:
                db.delete(row)
                db.commit()
                return True
            return False

    def delete_by_session_id(self, session_id: str) -> int:
        return self._delete_where(MessageDBModel.session_id == session_id)

    def delete_by_user_id(self, user_id: str) -> int:
        return self._delete_where(MessageDBModel.user_id == user_id)

    def _delete_where(self, clause) -> int:
        with Session(self.engine) as db:
            rows = db.exec(select(MessageDBModel).where(clause)).all()
            for row in rows:
                db.delete(row)
            db.commit()
            return len(rows)

    def _fetch_recent(self, statement, limit: Optional[int]) -> List[MessageRecord]:
        with Session(self.engine) as db:
            if limit:
                statement = statement.order_by(MessageDBModel.created_at.desc()).limit(limit)
                rows = list(reversed(db.exec(statement).all()))
            else:
                rows = db.exec(statement.order_by(MessageDBModel.created_at)).all()
            return [MessageRecord(**row.model_dump()) for row in rows]
