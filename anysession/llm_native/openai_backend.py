from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator
from urllib.parse import urlparse

import openai
from openai import AsyncOpenAI

from anysession.utils.exceptions import AdapterUnavailable, BackendFailure
from anysession.utils.logger import get_logger

from .backend import BackendCapabilities, BackendConfig, ChatBackend, ChatRequest
from .events import (
    DoneEvent,
    InfoEvent,
    StreamEvent,
    TextDeltaEvent,
    ToolCallAccumulator,
    ToolCallDeltaEvent,
)

logger = get_logger(__name__)


def _normalize_base_url(base_url: str) -> str:
    raw = str(base_url or "").strip()
    if not raw:
        return ""
    raw = raw.rstrip("/")
    try:
        parsed = urlparse(raw)
    except ValueError:
        return raw
    if not parsed.scheme or not parsed.netloc:
        return raw
    if parsed.path in ("", "/"):
        return f"{raw}/v1"
    return raw


def _chunk_deltas(chunk: Any) -> tuple[list[str], list[ToolCallDeltaEvent], str | None]:
    """Pull text, tool-call deltas and the finish reason out of one streamed chunk."""
    texts: list[str] = []
    tool_deltas: list[ToolCallDeltaEvent] = []
    finish_reason: str | None = None
    for choice in getattr(chunk, "choices", None) or []:
        delta = getattr(choice, "delta", None)
        if delta is not None:
            content = getattr(delta, "content", None)
            if content:
                texts.append(str(content))

            for tool_call in getattr(delta, "tool_calls", None) or []:
                function = getattr(tool_call, "function", None)
                tool_deltas.append(
                    ToolCallDeltaEvent(
                        index=int(getattr(tool_call, "index", 0) or 0),
                        tool_call_id=(
                            str(getattr(tool_call, "id")) if getattr(tool_call, "id", None) else None
                        ),
                        name=(
                            str(getattr(function, "name"))
                            if function is not None and getattr(function, "name", None)
                            else None
                        ),
                        arguments_delta=(
                            str(getattr(function, "arguments"))
                            if function is not None and getattr(function, "arguments", None)
                            else None
                        ),
                    )
                )

            # legacy single function_call deltas
            function_call = getattr(delta, "function_call", None)
            if function_call is not None:
                tool_deltas.append(
                    ToolCallDeltaEvent(
                        index=0,
                        tool_call_id=None,
                        name=(
                            str(getattr(function_call, "name"))
                            if getattr(function_call, "name", None)
                            else None
                        ),
                        arguments_delta=(
                            str(getattr(function_call, "arguments"))
                            if getattr(function_call, "arguments", None)
                            else None
                        ),
                    )
                )

        fr = getattr(choice, "finish_reason", None)
        if fr:
            finish_reason = str(fr)
    return texts, tool_deltas, finish_reason


def _usage_metadata(chunk: Any) -> dict[str, Any] | None:
    usage = getattr(chunk, "usage", None)
    if usage is None:
        return None
    return {
        "prompt_tokens": getattr(usage, "prompt_tokens", None),
        "completion_tokens": getattr(usage, "completion_tokens", None),
        "total_tokens": getattr(usage, "total_tokens", None),
    }


@dataclass(slots=True)
class OpenAICompatibleBackend(ChatBackend):
    """
    Cloud backend over the official OpenAI Python SDK (async client), configured via base_url.

    Notes:
    - Serves OpenAI itself and every provider with an OpenAI-compatible endpoint
      (Anthropic, Gemini, Ollama) through ``BackendConfig.base_url``.
    - Chat Completions streaming: content deltas are forwarded as they arrive, tool_call
      deltas are accumulated and emitted as complete ToolCallEvents when the stream ends.
    - Structured output uses ``response_format`` JSON-schema mode.
    """

    config: BackendConfig
    capabilities: BackendCapabilities
    name: str
    _client: Any

    def __init__(
        self,
        config: BackendConfig,
        *,
        client: Any | None = None,
        capabilities: BackendCapabilities | None = None,
    ) -> None:
        self.config = config
        self.name = f"{config.provider}:{config.model}"
        self.capabilities = capabilities or BackendCapabilities(
            structured_output=True, images=True, tool_calling=True
        )
        kwargs: dict[str, Any] = {
            "base_url": _normalize_base_url(config.base_url) or None,
            "timeout": float(config.timeout_s),
            "max_retries": int(config.max_retries),
        }
        api_key = str(config.api_key or "").strip()
        if api_key:
            kwargs["api_key"] = api_key
        if client is None:
            try:
                client = AsyncOpenAI(**kwargs)
            except openai.OpenAIError as exc:
                raise AdapterUnavailable(str(exc), backend=self.name) from exc
        self._client = client

    async def aclose(self) -> None:
        await self._client.close()

    def _request_kwargs(self, request: ChatRequest) -> dict[str, Any]:
        kwargs = request.to_openai_kwargs()
        kwargs["model"] = self.config.model
        kwargs["stream"] = True
        if not self.capabilities.structured_output:
            kwargs.pop("response_format", None)
        return kwargs

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        kwargs = self._request_kwargs(request)
        accumulator = ToolCallAccumulator()
        finish_reason: str | None = None
        usage: dict[str, Any] | None = None

        try:
            response = await self._client.chat.completions.create(**kwargs)
            async for chunk in response:
                texts, tool_deltas, fr = _chunk_deltas(chunk)
                for text in texts:
                    yield TextDeltaEvent(delta=text)
                for delta in tool_deltas:
                    accumulator.apply(delta)
                if fr:
                    finish_reason = fr
                usage = _usage_metadata(chunk) or usage
        except openai.APIConnectionError as exc:
            logger.error("backend unreachable (%s): %s", self.name, exc)
            raise AdapterUnavailable(str(exc), backend=self.name) from exc
        except openai.APIStatusError as exc:
            logger.error("backend returned HTTP %s (%s): %s", exc.status_code, self.name, exc)
            if exc.status_code in (401, 403, 404):
                raise AdapterUnavailable(
                    str(exc), backend=self.name, context={"status_code": exc.status_code}
                ) from exc
            raise BackendFailure(str(exc), backend=self.name, status_code=exc.status_code) from exc
        except openai.APIError as exc:
            logger.error("backend call failed (%s): %s", self.name, exc)
            raise BackendFailure(str(exc), backend=self.name) from exc

        for event in accumulator.events():
            yield event
        if usage:
            yield InfoEvent(metadata=usage)
        yield DoneEvent(finish_reason=finish_reason)


__all__ = ["OpenAICompatibleBackend"]
