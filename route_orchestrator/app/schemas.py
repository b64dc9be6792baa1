"""
API Layer - Request/Response Schemas

Pydantic models for API request and response validation.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel


class CreateSessionRequest(BaseModel):
    user_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class CreateSessionResponse(BaseModel):
    session_id: str


class UserMessage(BaseModel):
    text: str
    context: Optional[dict[str, Any]] = None


class ChatMessage(BaseModel):
    role: str
    content: str


class ToolCallInfo(BaseModel):
    tool_id: str
    success: bool
    error: Optional[str] = None


class ChatResponse(BaseModel):
    reply: str
    route: Optional[str] = None
    step: Optional[str] = None
    is_route_complete: bool = False
    collected_data: dict[str, Any] = {}
    tool_calls: list[ToolCallInfo] = []


class SessionRead(BaseModel):
    session_id: str
    status: str
    current_route: Optional[str] = None
    current_step: Optional[str] = None
    collected_data: dict[str, Any] = {}
    pending_transition: Optional[str] = None
    history: list[ChatMessage]
    message_count: int
    updated_at: datetime
