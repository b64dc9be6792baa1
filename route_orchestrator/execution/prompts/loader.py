"""
Jinja2 template loader for prompts.

Every Template constant maps to a .jinja2 file in the templates directory;
files starting with an underscore are partials pulled in with {% include %}
and are never rendered on their own. Missing variables fail loudly
(StrictUndefined): builders are expected to pass everything a template uses.
"""

import json
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, List

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from .templates import Template

TEMPLATES_DIR = Path(__file__).parent / "templates"
PARTIAL_PREFIX = "_"

_BLANK_RUNS = re.compile(r"\n{3,}")


def template_names() -> List[str]:
    return [getattr(Template, name) for name in dir(Template) if not name.startswith("_")]


def _validate_templates():
    """Fail fast at import if a constant has no file or names a partial."""
    for template_name in template_names():
        if template_name.startswith(PARTIAL_PREFIX):
            raise ValueError(f"Template constant points at a partial: {template_name}")
        path = TEMPLATES_DIR / f"{template_name}.jinja2"
        if not path.exists():
            raise FileNotFoundError(f"Template missing: {path}")


_validate_templates()


def to_json(value: Any) -> str:
    """Compact JSON for collected data; dates and other objects fall back to str()."""
    return json.dumps(value, default=str, ensure_ascii=False)


@lru_cache(maxsize=1)
def _get_environment() -> Environment:
    env = Environment(
        loader=FileSystemLoader(TEMPLATES_DIR),
        autoescape=select_autoescape(default=False),
        undefined=StrictUndefined,
        trim_blocks=True,
        lstrip_blocks=True,
    )
    env.filters["to_json"] = to_json
    return env


def render(template_name: str, **context) -> str:
    """
    Render a prompt template.

    Optional sections that render empty leave blank runs behind; those are
    collapsed to a single blank line.

    Args:
        template_name: A Template constant (file name without .jinja2)
        **context: Variables the template reads

    Returns:
        The prompt text, ending with exactly one newline
    """
    if template_name.startswith(PARTIAL_PREFIX):
        raise ValueError(f"Partials cannot be rendered directly: {template_name}")
    template = _get_environment().get_template(f"{template_name}.jinja2")
    text = template.render(**context)
    return _BLANK_RUNS.sub("\n\n", text).strip() + "\n"
