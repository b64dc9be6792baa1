"""
Cooperative cancellation for a single turn.

A CancellationToken is threaded through every provider call and checked
at each streaming yield and between tool-loop rounds. Cancelling never
rolls back session changes already applied.
"""

import asyncio
from typing import Optional

from .services.exceptions import TurnCancelledError


class CancellationToken:
    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise TurnCancelledError(self.reason or "cancelled")


def check_cancelled(token: Optional[CancellationToken]) -> None:
    """Checkpoint helper for code paths where the token is optional."""
    if token is not None:
        token.raise_if_cancelled()
