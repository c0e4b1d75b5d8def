from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Mapping, Protocol, Sequence, runtime_checkable

from .events import StreamEvent
from .messages import Message
from .schema import GenerationSchema
from .tools import ToolSpec


@dataclass(frozen=True, slots=True)
class GenerationOptions:
    """
    Sampling options passed through unchanged to whichever backend runs the turn.

    ``None`` means "backend default"; each adapter maps the fields to its native names.
    """

    maximum_response_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    repetition_penalty: float | None = None
    repetition_context_size: int | None = None
    seed: int | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.maximum_response_tokens is not None and self.maximum_response_tokens <= 0:
            raise ValueError("maximum_response_tokens must be positive")
        if self.temperature is not None and self.temperature < 0:
            raise ValueError("temperature must be >= 0")
        if self.top_p is not None and not 0 < self.top_p <= 1:
            raise ValueError("top_p must be in (0, 1]")

    def merged(self, **overrides: Any) -> "GenerationOptions":
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


@dataclass(frozen=True, slots=True)
class BackendConfig:
    """Runtime config for an OpenAI-compatible backend."""

    base_url: str
    api_key: str
    model: str
    provider: str = "openai"
    timeout_s: float = 60.0
    max_retries: int = 2


@dataclass(frozen=True, slots=True)
class BackendCapabilities:
    structured_output: bool = False
    images: bool = False
    tool_calling: bool = True


def response_format_payload(schema: GenerationSchema) -> dict[str, Any]:
    """OpenAI ``response_format`` for JSON-schema guided output."""
    return {
        "type": "json_schema",
        "json_schema": {
            "name": str(schema.title or "response"),
            "schema": schema.to_json_schema(),
        },
    }


@dataclass(frozen=True, slots=True)
class ChatRequest:
    messages: Sequence[Message]
    tools: Sequence[ToolSpec] | None = None
    options: GenerationOptions = GenerationOptions()
    response_format: GenerationSchema | None = None

    def to_openai_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "messages": [m.to_openai() for m in self.messages],
        }
        if self.tools:
            kwargs["tools"] = [t.to_openai() for t in self.tools]
        opts = self.options
        if opts.temperature is not None:
            kwargs["temperature"] = opts.temperature
        if opts.maximum_response_tokens is not None:
            kwargs["max_tokens"] = opts.maximum_response_tokens
        if opts.top_p is not None:
            kwargs["top_p"] = opts.top_p
        if opts.seed is not None:
            kwargs["seed"] = opts.seed
        if self.response_format is not None:
            kwargs["response_format"] = response_format_payload(self.response_format)
        if opts.extra:
            kwargs.update(opts.extra)
        return kwargs


@runtime_checkable
class ChatBackend(Protocol):
    """
    Adapter interface the tool loop depends on.

    ``stream`` returns a lazy, single-pass, finite sequence of events for one generation:
    text chunks, complete tool calls, diagnostics, and a final DoneEvent. Unavailable backends
    raise AdapterUnavailable; failed calls raise BackendFailure. Neither is retried here.
    """

    name: str
    capabilities: BackendCapabilities

    def stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        raise NotImplementedError

    async def aclose(self) -> None:
        raise NotImplementedError


__all__ = [
    "BackendCapabilities",
    "BackendConfig",
    "ChatBackend",
    "ChatRequest",
    "GenerationOptions",
    "response_format_payload",
]
