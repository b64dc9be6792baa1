"""
State Layer - Runtime Data Models

Defines the immutable session record carried between turns, the pending
transition it may hold, and the snapshot format used for persistence.
"""

from route_orchestrator.state.models import (
    CollectedData,
    Message,
    MessageRecord,
    PendingTransition,
    RouteHistoryEntry,
    RouteRef,
    SessionSnapshot,
    SessionState,
    StepRef,
)

__all__ = [
    "CollectedData",
    "Message",
    "MessageRecord",
    "PendingTransition",
    "RouteHistoryEntry",
    "RouteRef",
    "SessionSnapshot",
    "SessionState",
    "StepRef",
]
