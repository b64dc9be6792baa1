"""
Database Table Definitions.

This module defines the SQL schema using SQLModel.
We use the 'DBModel' suffix to distinguish these persistence models
from the Pydantic state models (SessionSnapshot, MessageRecord).
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

from ...state.models import utc_now

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests and local dev).
JSONColumnType = JSON().with_variant(JSONB(), "postgresql")


class SessionDBModel(SQLModel, table=True):
    """
    Persistence model for conversation sessions.
    Maps 1-to-1 with the 'sessions' table.
    """

    __tablename__ = "sessions"

    id: str = Field(primary_key=True, index=True)
    user_id: Optional[str] = Field(default=None, index=True)
    agent_name: Optional[str] = None
    status: str = Field(default="active", index=True)
    current_route: Optional[str] = None
    current_step: Optional[str] = None

    # Collected data, per-route buckets, route history and pending transition
    # as one JSON document for flexible schema evolution.
    collected_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSONColumnType, nullable=False))

    message_count: int = Field(default=0)
    last_message_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class MessageDBModel(SQLModel, table=True):
    """
    Persistence model for conversation messages.
    Maps 1-to-1 with the 'messages' table.
    """

    __tablename__ = "messages"

    id: str = Field(primary_key=True)
    session_id: str = Field(index=True)
    user_id: Optional[str] = Field(default=None, index=True)
    role: str
    content: str
    route: Optional[str] = None
    step: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = Field(default=None, sa_column=Column(JSONColumnType, nullable=True))
    created_at: datetime = Field(default_factory=utc_now)
