import json
import logging
from typing import AsyncIterator, Optional

from fastapi import FastAPI, HTTPException, Depends, Request, status
from fastapi.responses import Response, StreamingResponse

from ..cancellation import CancellationToken
from ..config import settings
from ..execution.pipeline import TurnResult
from ..services.agent import Agent
from ..services.exceptions import ResponseGenerationError, SessionBusyError, SessionNotFoundError
from ..services.session_manager import SessionManager
from ..state.models import SessionState
from .dependencies import get_agent, get_session_manager
from .schemas import (
    ChatMessage,
    ChatResponse,
    CreateSessionRequest,
    CreateSessionResponse,
    SessionRead,
    ToolCallInfo,
    UserMessage,
)

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="Route Orchestrator")


# --- Helpers ---

def _load_session(manager: SessionManager, session_id: str) -> SessionState:
    try:
        return manager.get_or_create(session_id=session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")


def _to_chat_response(result: TurnResult) -> ChatResponse:
    return ChatResponse(
        reply=result.message,
        route=result.route_id,
        step=result.step_id,
        is_route_complete=result.is_route_complete,
        collected_data=dict(result.session.data),
        tool_calls=[
            ToolCallInfo(tool_id=call.tool_id, success=call.success, error=call.error)
            for call in result.tool_calls
        ],
    )


def _record_reply(manager: SessionManager, agent: Agent, result: TurnResult) -> None:
    manager.add_message(
        result.session,
        "assistant",
        result.message,
        tool_calls=[call.to_dict() for call in result.tool_calls] or None,
    )
    if not agent.auto_save:
        manager.save(result.session)


# --- Endpoints ---

@app.post(
    "/sessions",
    response_model=CreateSessionResponse,
    status_code=status.HTTP_201_CREATED
)
def create_session(
    request: Optional[CreateSessionRequest] = None,
    manager: SessionManager = Depends(get_session_manager)
):
    """Starts a new session, or resumes the user's active one."""
    request = request or CreateSessionRequest()
    session = manager.get_or_create(user_id=request.user_id, metadata=request.metadata)
    return CreateSessionResponse(session_id=session.id)


@app.get("/sessions/{session_id}", response_model=SessionRead)
def get_session(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager)
):
    session = _load_session(manager, session_id)

    history_dto = [
        ChatMessage(role=msg.role, content=msg.content)
        for msg in manager.get_history(session_id)
    ]
    pending = session.pending_transition

    return SessionRead(
        session_id=session.id,
        status=session.status,
        current_route=session.current_route.id if session.current_route else None,
        current_step=session.current_step.id if session.current_step else None,
        collected_data=dict(session.data),
        pending_transition=pending.target_route_id if pending else None,
        history=history_dto,
        message_count=session.message_count,
        updated_at=session.updated_at,
    )


@app.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_session(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager)
):
    """
    Deletes a session and its messages. Returns 204 No Content on success.
    """
    success = manager.delete(session_id)
    if not success:
        raise HTTPException(status_code=404, detail="Session not found")

    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/sessions/{session_id}/messages", response_model=ChatResponse)
async def handle_message(
    session_id: str,
    message: UserMessage,
    manager: SessionManager = Depends(get_session_manager),
    agent: Agent = Depends(get_agent)
):
    session = _load_session(manager, session_id)
    if agent.is_busy(session_id):
        raise HTTPException(status_code=409, detail=f"Session {session_id} is already processing a message")

    manager.add_message(session, "user", message.text)
    history = manager.get_history(session_id)

    try:
        result = await agent.respond(history, session=session, context_override=message.context)
    except SessionBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ResponseGenerationError as e:
        logger.error(f"Turn failed for session {session_id}: {e}")
        raise HTTPException(status_code=502, detail=e.to_dict())

    _record_reply(manager, agent, result)
    return _to_chat_response(result)


@app.post("/sessions/{session_id}/messages/stream")
async def stream_message(
    session_id: str,
    message: UserMessage,
    request: Request,
    manager: SessionManager = Depends(get_session_manager),
    agent: Agent = Depends(get_agent)
):
    """
    Streams the reply as newline-delimited JSON: text deltas (a line with
    "reset" replaces the text so far) first, then
    one final line with either the full result or the error. A client
    that disconnects cancels the turn at the next checkpoint.
    """
    session = _load_session(manager, session_id)
    if agent.is_busy(session_id):
        raise HTTPException(status_code=409, detail=f"Session {session_id} is already processing a message")

    manager.add_message(session, "user", message.text)
    history = manager.get_history(session_id)

    token = CancellationToken()

    async def events() -> AsyncIterator[str]:
        async for chunk in agent.respond_stream(
            history, session=session, context_override=message.context, cancel_token=token
        ):
            if not chunk.done:
                if await request.is_disconnected():
                    token.cancel("client disconnected")
                line = {"delta": chunk.delta, "accumulated": chunk.accumulated}
                if chunk.reset:
                    line["reset"] = True
                yield json.dumps(line) + "\n"
                continue
            if chunk.error is not None:
                yield json.dumps({"done": True, "error": chunk.error.to_dict()}, default=str) + "\n"
                continue
            _record_reply(manager, agent, chunk.result)
            payload = _to_chat_response(chunk.result).model_dump()
            yield json.dumps({"done": True, **payload}, default=str) + "\n"

    return StreamingResponse(events(), media_type="application/x-ndjson")
