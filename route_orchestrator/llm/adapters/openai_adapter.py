import json
import logging
import re
from typing import AsyncIterator, Dict, List, Optional, Type, TypeVar

from openai import AsyncOpenAI
from openai.lib._parsing._completions import type_to_response_format_param
from pydantic import BaseModel

from ..interface import (
    GenerationChunk,
    GenerationRequest,
    GenerationResult,
    LLMProvider,
    ToolCall,
)
from ...cancellation import check_cancelled
from ...config import settings
from ...state.models import Message

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_MESSAGE_START = re.compile(r'"message"\s*:\s*"')


class OpenAIAdapter(LLMProvider):
    def __init__(self, api_key: Optional[str], model_name: str = settings.OPENAI_MODEL):
        self.client = AsyncOpenAI(api_key=api_key)
        self.model_name = model_name

    async def generate_message(self, request: GenerationRequest) -> GenerationResult:
        check_cancelled(request.cancel_token)
        messages = self._build_messages(request.prompt, request.history)

        if not request.tools:
            # Structured outputs: the SDK validates straight into the Pydantic model.
            completion = await self.client.beta.chat.completions.parse(
                model=self.model_name,
                messages=messages,
                response_format=request.response_model,
                temperature=request.temperature,
            )
            check_cancelled(request.cancel_token)
            structured = completion.choices[0].message.parsed
            return GenerationResult(message=_message_of(structured), structured=structured)

        # Same strict schema as parse(), sent by hand so native tool calls come back too.
        completion = await self.client.chat.completions.create(
            model=self.model_name,
            messages=messages,
            tools=[tool.to_function_schema() for tool in request.tools],
            response_format=type_to_response_format_param(request.response_model),
            temperature=request.temperature,
        )
        check_cancelled(request.cancel_token)
        reply = completion.choices[0].message

        tool_calls = [
            ToolCall(
                id=call.id,
                name=call.function.name,
                arguments=_parse_arguments(call.function.arguments),
            )
            for call in reply.tool_calls or []
        ]
        structured = _parse_structured(request.response_model, reply.content)
        return GenerationResult(
            message=_message_of(structured), structured=structured, tool_calls=tool_calls
        )

    async def stream_message(self, request: GenerationRequest) -> AsyncIterator[GenerationChunk]:
        check_cancelled(request.cancel_token)
        kwargs = {
            "model": self.model_name,
            "messages": self._build_messages(request.prompt, request.history),
            "response_format": type_to_response_format_param(request.response_model),
            "temperature": request.temperature,
            "stream": True,
        }
        if request.tools:
            kwargs["tools"] = [tool.to_function_schema() for tool in request.tools]

        stream = await self.client.chat.completions.create(**kwargs)

        raw = ""
        accumulated = ""
        partial_calls: Dict[int, Dict[str, str]] = {}
        async for event in stream:
            check_cancelled(request.cancel_token)
            if not event.choices:
                continue
            delta = event.choices[0].delta

            # Tool call arguments arrive in fragments keyed by index.
            for fragment in delta.tool_calls or []:
                slot = partial_calls.setdefault(fragment.index, {"id": "", "name": "", "arguments": ""})
                if fragment.id:
                    slot["id"] = fragment.id
                if fragment.function and fragment.function.name:
                    slot["name"] = fragment.function.name
                if fragment.function and fragment.function.arguments:
                    slot["arguments"] += fragment.function.arguments

            if delta.content:
                raw += delta.content
                # Only the "message" value is user-facing text.
                visible = _partial_message(raw)
                if len(visible) > len(accumulated) and visible.startswith(accumulated):
                    text, accumulated = visible[len(accumulated):], visible
                    yield GenerationChunk(delta=text, accumulated=accumulated)

        tool_calls = [
            ToolCall(id=slot["id"], name=slot["name"], arguments=_parse_arguments(slot["arguments"]))
            for _, slot in sorted(partial_calls.items())
        ]
        structured = _parse_structured(request.response_model, raw)
        yield GenerationChunk(
            delta="",
            accumulated=_message_of(structured) or accumulated,
            done=True,
            structured=structured,
            tool_calls=tool_calls,
        )

    def _build_messages(self, prompt: str, history: List[Message]) -> List[dict]:
        """Convert our Message objects to OpenAI format."""
        messages = [{"role": "system", "content": prompt}]
        for msg in history:
            if msg.role == "tool":
                # Tool results are replayed as system notes; we do not track provider call ids.
                messages.append({"role": "system", "content": f"Tool '{msg.tool_name}' returned: {msg.content}"})
            else:
                messages.append({"role": msg.role, "content": msg.content})
        return messages


def _parse_arguments(raw: Optional[str]) -> dict:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Discarding malformed tool arguments: {raw!r}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _parse_structured(model: Type[T], content: Optional[str]) -> Optional[T]:
    if not content:
        return None
    return model.model_validate_json(content)


def _partial_message(raw: str) -> str:
    """
    Decode the "message" value of a JSON object that may still be arriving.

    Stops at the closing quote, or at the end of the input. A trailing
    escape sequence that is not complete yet is left out.
    """
    match = _MESSAGE_START.search(raw)
    if not match:
        return ""

    segment: List[str] = []
    escaped = False
    for char in raw[match.end():]:
        if char == '"' and not escaped:
            break
        escaped = char == "\\" and not escaped
        segment.append(char)

    text = "".join(segment)
    while True:
        try:
            return json.loads(f'"{text}"', strict=False)
        except json.JSONDecodeError:
            cut = text.rfind("\\")
            if cut < 0:
                return ""
            text = text[:cut]


def _message_of(structured: Optional[BaseModel]) -> str:
    if structured is None:
        return ""
    return getattr(structured, "message", "") or ""
