"""
State Layer - Session Updates

Pure functions over SessionState. Each takes a session and returns a new
one; nothing here mutates its input. These are the only places where the
route/step pointers, collected data and pending transitions change.
"""

import logging
import uuid
from typing import Any, Dict, Mapping, Optional

from .models import (
    CollectedData,
    PendingTransition,
    RouteHistoryEntry,
    RouteRef,
    SessionSnapshot,
    SessionState,
    SessionStatus,
    StepRef,
    utc_now,
)

logger = logging.getLogger(__name__)


def create_session(
    session_id: Optional[str] = None,
    user_id: Optional[str] = None,
    agent_name: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> SessionState:
    return SessionState(
        id=session_id or str(uuid.uuid4()),
        user_id=user_id,
        agent_name=agent_name,
        data=dict(data or {}),
        metadata=dict(metadata or {}),
    )


# ==========================================================================
# Route & Step Pointers
# ==========================================================================

def enter_route(session: SessionState, route_id: str, title: str) -> SessionState:
    """
    Point the session at a new route.

    Closes the previous route-history entry, clears the current step and
    opens a new history entry. Collected data is kept; the per-route bucket
    of the new route is created if it does not exist yet.
    """
    now = utc_now()
    history = list(session.route_history)
    if history and history[-1].exited_at is None:
        history[-1] = history[-1].model_copy(update={"exited_at": now})
    history.append(RouteHistoryEntry(route_id=route_id, title=title, entered_at=now))

    data_by_route = {key: dict(value) for key, value in session.data_by_route.items()}
    data_by_route.setdefault(route_id, {})

    return session.model_copy(
        update={
            "current_route": RouteRef(id=route_id, title=title, entered_at=now),
            "current_step": None,
            "route_history": history,
            "data_by_route": data_by_route,
            "updated_at": now,
        }
    )


def enter_step(session: SessionState, step_id: str, description: Optional[str] = None) -> SessionState:
    if session.current_route is None:
        raise ValueError(f"Cannot enter step '{step_id}' without an active route")
    now = utc_now()
    return session.model_copy(
        update={
            "current_step": StepRef(id=step_id, description=description, entered_at=now),
            "updated_at": now,
        }
    )


def mark_route_completed(session: SessionState) -> SessionState:
    """Flag the open route-history entry as completed."""
    if not session.route_history:
        return session
    history = list(session.route_history)
    history[-1] = history[-1].model_copy(update={"completed": True})
    return session.model_copy(update={"route_history": history, "updated_at": utc_now()})


# ==========================================================================
# Collected Data
# ==========================================================================

def merge_collected(session: SessionState, updates: Mapping[str, Any]) -> SessionState:
    """
    Shallow-merge values into the collected data (last write wins).

    The current route's bucket in data_by_route receives the same values.
    Returns the input session unchanged when no value actually differs, so
    repeating an already-collected value is a no-op.
    """
    changed = {
        key: value
        for key, value in updates.items()
        if key not in session.data or session.data[key] != value
    }
    if not changed:
        return session

    data = {**session.data, **changed}
    data_by_route = {key: dict(value) for key, value in session.data_by_route.items()}
    if session.current_route is not None:
        bucket = data_by_route.setdefault(session.current_route.id, {})
        bucket.update(changed)

    logger.debug(f"Merged collected fields: {sorted(changed)}")
    return session.model_copy(
        update={"data": data, "data_by_route": data_by_route, "updated_at": utc_now()}
    )


# ==========================================================================
# Pending Transitions
# ==========================================================================

def set_pending_transition(
    session: SessionState,
    target_route_id: str,
    condition: Optional[str] = None,
    reason: str = "route_complete",
) -> SessionState:
    transition = PendingTransition(
        target_route_id=target_route_id, condition=condition, reason=reason
    )
    return session.model_copy(update={"pending_transition": transition, "updated_at": utc_now()})


def clear_pending_transition(session: SessionState) -> SessionState:
    if session.pending_transition is None:
        return session
    return session.model_copy(update={"pending_transition": None, "updated_at": utc_now()})


# ==========================================================================
# Bookkeeping
# ==========================================================================

def record_message(session: SessionState) -> SessionState:
    now = utc_now()
    return session.model_copy(
        update={
            "message_count": session.message_count + 1,
            "last_message_at": now,
            "updated_at": now,
        }
    )


def with_status(session: SessionState, status: SessionStatus) -> SessionState:
    now = utc_now()
    update: Dict[str, Any] = {"status": status, "updated_at": now}
    if status == "completed":
        update["completed_at"] = now
    return session.model_copy(update=update)


# ==========================================================================
# Snapshot Round-Trip
# ==========================================================================

def to_snapshot(session: SessionState) -> SessionSnapshot:
    if session.id is None:
        raise ValueError("Cannot snapshot a session without an id")
    route, step = session.current_route, session.current_step
    return SessionSnapshot(
        id=session.id,
        user_id=session.user_id,
        agent_name=session.agent_name,
        status=session.status,
        current_route=route.id if route else None,
        current_step=step.id if step else None,
        collected_data=CollectedData(
            data=dict(session.data),
            data_by_route={key: dict(value) for key, value in session.data_by_route.items()},
            route_history=list(session.route_history),
            current_route_title=route.title if route else None,
            current_route_entered_at=route.entered_at if route else None,
            current_step_description=step.description if step else None,
            current_step_entered_at=step.entered_at if step else None,
            pending_transition=session.pending_transition,
            metadata=dict(session.metadata),
        ),
        message_count=session.message_count,
        last_message_at=session.last_message_at,
        completed_at=session.completed_at,
        created_at=session.created_at,
        updated_at=session.updated_at,
    )


def from_snapshot(snapshot: SessionSnapshot) -> SessionState:
    blob = snapshot.collected_data

    route = None
    if snapshot.current_route:
        route = RouteRef(
            id=snapshot.current_route,
            title=blob.current_route_title or snapshot.current_route,
            entered_at=blob.current_route_entered_at or snapshot.updated_at,
        )

    step = None
    if snapshot.current_step and route is not None:
        step = StepRef(
            id=snapshot.current_step,
            description=blob.current_step_description,
            entered_at=blob.current_step_entered_at or snapshot.updated_at,
        )

    return SessionState(
        id=snapshot.id,
        user_id=snapshot.user_id,
        agent_name=snapshot.agent_name,
        status=snapshot.status,
        current_route=route,
        current_step=step,
        data=dict(blob.data),
        data_by_route={key: dict(value) for key, value in blob.data_by_route.items()},
        route_history=list(blob.route_history),
        pending_transition=blob.pending_transition,
        message_count=snapshot.message_count,
        last_message_at=snapshot.last_message_at,
        completed_at=snapshot.completed_at,
        created_at=snapshot.created_at,
        updated_at=snapshot.updated_at,
        metadata=dict(blob.metadata),
    )
