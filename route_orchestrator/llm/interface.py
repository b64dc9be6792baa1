"""
LLM Layer - Provider Port

The orchestration core only depends on this contract. Concrete providers
(OpenAI, Anthropic, local models) live in llm/adapters and translate a
GenerationRequest into their own API.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Type

from pydantic import BaseModel

from ..cancellation import CancellationToken
from ..domain.models import Tool
from ..state.models import Message


@dataclass
class ToolCall:
    """A function call requested by the model."""
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerationRequest:
    """
    Everything a provider needs for one model call.

    Attributes:
        prompt: System prompt assembled by the pipeline.
        history: Conversation events, oldest first.
        response_model: Pydantic model the structured output must match.
        context: Agent context, for providers that forward metadata.
        tools: Tools the model may call. Empty means no tool calling.
        temperature: Sampling temperature.
        cancel_token: Checked before the call and between streamed chunks.
    """
    prompt: str
    history: List[Message]
    response_model: Type[BaseModel]
    context: Dict[str, Any] = field(default_factory=dict)
    tools: List[Tool] = field(default_factory=list)
    temperature: float = 0.0
    cancel_token: Optional[CancellationToken] = None


@dataclass
class GenerationResult:
    message: str
    structured: Optional[BaseModel] = None
    tool_calls: List[ToolCall] = field(default_factory=list)


@dataclass
class GenerationChunk:
    """One streamed event. The last chunk has done=True and carries the parsed output."""
    delta: str
    accumulated: str
    done: bool = False
    structured: Optional[BaseModel] = None
    tool_calls: List[ToolCall] = field(default_factory=list)


class LLMProvider(ABC):
    """
    Abstract Base Class interface that defines the contract for any LLM provider
    (OpenAI, Anthropic, Local LLaMA, etc.)
    """

    @abstractmethod
    async def generate_message(self, request: GenerationRequest) -> GenerationResult:
        """
        Generates a response whose structured part matches request.response_model.
        """
        pass

    @abstractmethod
    def stream_message(self, request: GenerationRequest) -> AsyncIterator[GenerationChunk]:
        """
        Streams the response as text deltas, finishing with a done=True chunk.
        """
        pass
