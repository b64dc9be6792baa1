"""
Prompt templates and the builders that fill them.
"""

from .loader import render
from .templates import Template

__all__ = ["Template", "render"]
