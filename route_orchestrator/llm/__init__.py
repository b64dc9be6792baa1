"""
LLM Layer - Provider Port and Adapters
"""

from route_orchestrator.llm.interface import (
    GenerationChunk,
    GenerationRequest,
    GenerationResult,
    LLMProvider,
    ToolCall,
)

__all__ = [
    "GenerationChunk",
    "GenerationRequest",
    "GenerationResult",
    "LLMProvider",
    "ToolCall",
]
