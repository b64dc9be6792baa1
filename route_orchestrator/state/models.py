"""
State Layer - Runtime Data Models

This module defines the runtime state carried between turns of a
conversation: which route and step are active, what data has been
collected so far, and any transition deferred to the next turn.

Every model here is frozen. Components never mutate a session in place;
they build a new one (see state/session.py), so a caller's reference
always remains a valid "before" snapshot.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

SessionStatus = Literal["active", "completed", "abandoned"]
MessageRole = Literal["user", "assistant", "tool", "system"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Message(BaseModel):
    """One conversation event. Tool results are carried with role='tool'."""
    model_config = ConfigDict(frozen=True)

    role: MessageRole
    content: str
    tool_name: Optional[str] = None
    tool_data: Optional[Any] = None
    created_at: datetime = Field(default_factory=utc_now)


class RouteRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    entered_at: datetime = Field(default_factory=utc_now)


class StepRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    description: Optional[str] = None
    entered_at: datetime = Field(default_factory=utc_now)


class RouteHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    route_id: str
    title: str
    entered_at: datetime = Field(default_factory=utc_now)
    exited_at: Optional[datetime] = None
    completed: bool = False


class PendingTransition(BaseModel):
    """
    A route switch recorded when a route completes, applied next turn.
    """
    model_config = ConfigDict(frozen=True)

    target_route_id: str
    condition: Optional[str] = None
    reason: str = "route_complete"


class SessionState(BaseModel):
    """
    The serializable record of one conversation.

    Invariant: current_step is only meaningful when current_route is set.
    """
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    user_id: Optional[str] = None
    agent_name: Optional[str] = None
    status: SessionStatus = "active"

    current_route: Optional[RouteRef] = None
    current_step: Optional[StepRef] = None

    data: Dict[str, Any] = Field(default_factory=dict)
    data_by_route: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    route_history: List[RouteHistoryEntry] = Field(default_factory=list)
    pending_transition: Optional[PendingTransition] = None

    message_count: int = 0
    last_message_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    metadata: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Persistence Snapshot
# =============================================================================

class CollectedData(BaseModel):
    """The JSON blob a session store keeps next to the scalar columns."""
    data: Dict[str, Any] = Field(default_factory=dict)
    data_by_route: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    route_history: List[RouteHistoryEntry] = Field(default_factory=list)
    current_route_title: Optional[str] = None
    current_route_entered_at: Optional[datetime] = None
    current_step_description: Optional[str] = None
    current_step_entered_at: Optional[datetime] = None
    pending_transition: Optional[PendingTransition] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SessionSnapshot(BaseModel):
    """
    The only state that must survive a process restart. Route and step
    definitions are configuration and are loaded fresh each run.
    """
    id: str
    user_id: Optional[str] = None
    agent_name: Optional[str] = None
    status: SessionStatus = "active"
    current_route: Optional[str] = None
    current_step: Optional[str] = None
    collected_data: CollectedData = Field(default_factory=CollectedData)
    message_count: int = 0
    last_message_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class MessageRecord(BaseModel):
    """A persisted message."""
    id: str
    session_id: str
    user_id: Optional[str] = None
    role: MessageRole
    content: str
    route: Optional[str] = None
    step: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None
    created_at: datetime = Field(default_factory=utc_now)
