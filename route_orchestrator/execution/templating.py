"""
Template Context - the read-only view passed to predicates and templates.

Condition predicates, on-complete callables and user-authored prompt
strings all see the same TemplateContext. User strings may reference it
with jinja2 placeholders, e.g. "Booking for {{ data.hotelName }}".
"""

import json
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Optional

from jinja2 import TemplateError
from jinja2.sandbox import SandboxedEnvironment

from ..state.models import Message, SessionState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TemplateContext:
    context: Dict[str, Any] = field(default_factory=dict)
    session: Optional[SessionState] = None
    history: List[Message] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)

    def last_message_by_role(self, role: str) -> Optional[str]:
        for message in reversed(self.history):
            if message.role == role:
                return message.content
        return None

    def last_user_message(self) -> Optional[str]:
        return self.last_message_by_role("user")

    def as_variables(self) -> Dict[str, Any]:
        return {
            "context": self.context,
            "session": self.session,
            "history": self.history,
            "data": self.data,
            "last_user_message": self.last_user_message(),
        }


def build_template_context(
    session: SessionState,
    history: List[Message],
    context: Optional[Dict[str, Any]] = None,
) -> TemplateContext:
    return TemplateContext(
        context=dict(context or {}),
        session=session,
        history=list(history),
        data=dict(session.data),
    )


def _finalize(value: Any) -> Any:
    """Lists render comma-separated, mappings as JSON."""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, default=str)
    return value


@lru_cache(maxsize=1)
def _get_environment() -> SandboxedEnvironment:
    return SandboxedEnvironment(autoescape=False, finalize=_finalize)


def render_template(template: Optional[str], ctx: TemplateContext) -> Optional[str]:
    """
    Render a user-authored string against the template context.

    Missing variables render empty. A template that fails to compile or
    render is returned verbatim and logged.
    """
    if not template or "{" not in template:
        return template
    try:
        return _get_environment().from_string(template).render(**ctx.as_variables())
    except TemplateError as e:
        logger.warning(f"Could not render template {template!r}: {e}")
        return template
