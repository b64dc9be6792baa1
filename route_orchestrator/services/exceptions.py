"""
Service Layer Exceptions

Custom exceptions for configuration, turn processing and session handling.
"""

from typing import Any, Dict, Optional


class ConfigurationError(Exception):
    """Raised when routes, steps, tools or domains are configured inconsistently."""
    pass


class ResponseGenerationError(Exception):
    """
    Raised when a turn cannot produce a meaningful reply.

    Attributes:
        phase: Pipeline phase that failed (e.g. 'routing_and_step_selection').
        original_error: The underlying exception, if any.
        details: Extra diagnostic values (session id, route id, ...).
    """

    def __init__(
        self,
        message: str,
        phase: str,
        original_error: Optional[BaseException] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.phase = phase
        self.original_error = original_error
        self.details = details or {}

    @classmethod
    def from_error(cls, error: BaseException, phase: str, **details) -> "ResponseGenerationError":
        """Wrap an exception with a phase tag. An existing wrapper keeps its original phase."""
        if isinstance(error, ResponseGenerationError):
            return error
        return cls(
            f"Response generation failed during {phase}: {error}",
            phase=phase,
            original_error=error,
            details=details,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": str(self),
            "phase": self.phase,
            "original_error": repr(self.original_error) if self.original_error else None,
            "details": self.details,
        }


class ToolExecutionError(Exception):
    """Raised when a prepare/finalize tool fails. Tool calls made by the model never raise."""

    def __init__(self, tool_id: str, error: Optional[str]):
        super().__init__(f"Tool '{tool_id}' failed: {error}")
        self.tool_id = tool_id
        self.error = error


class TurnCancelledError(Exception):
    """
    Raised at a checkpoint after the turn's cancellation token was triggered.

    `session` carries whatever the turn had already applied, so data
    collected before the cancellation is not lost.
    """

    def __init__(self, reason: str = "cancelled", session: Optional[Any] = None):
        super().__init__(reason)
        self.session = session


class SessionBusyError(Exception):
    """Raised when a second turn is started on a session that is still processing one."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} is already processing a message")
        self.session_id = session_id


class SessionNotFoundError(Exception):
    """Raised when a session id does not exist in the store."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id
