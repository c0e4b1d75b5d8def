"""
Local on-device inference adapter.

The adapter owns everything between the uniform request and a local runtime: the chat
history in the runtime's message format, tool specs, sampling parameters, image decoding
(Pillow) and the translation of runtime output back into stream events. Model weights and
the actual inference engine sit behind ``LocalRuntime`` and are supplied by the caller.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import io
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Mapping, Protocol, Sequence, runtime_checkable
from urllib.parse import unquote, urlparse

from PIL import Image, UnidentifiedImageError

from anysession.utils.exceptions import (
    AdapterUnavailable,
    AnySessionError,
    BackendFailure,
    UnsupportedOutputType,
)
from anysession.utils.logger import get_logger

from .backend import BackendCapabilities, ChatBackend, ChatRequest, GenerationOptions
from .events import DoneEvent, InfoEvent, StreamEvent, TextDeltaEvent, ToolCallEvent
from .messages import Message
from .transcript import ImageSegment

logger = get_logger(__name__)

DEFAULT_TEMPERATURE = 0.6
DEFAULT_TOP_P = 1.0
DEFAULT_REPETITION_CONTEXT_SIZE = 20
DEFAULT_IMAGE_SIZE = (512, 512)


@dataclass(frozen=True, slots=True)
class GenerateParameters:
    """Sampling parameters in the runtime's vocabulary."""

    max_tokens: int | None = None
    temperature: float = DEFAULT_TEMPERATURE
    top_p: float = DEFAULT_TOP_P
    repetition_penalty: float | None = None
    repetition_context_size: int = DEFAULT_REPETITION_CONTEXT_SIZE
    seed: int | None = None

    @classmethod
    def from_options(cls, options: GenerationOptions) -> "GenerateParameters":
        return cls(
            max_tokens=options.maximum_response_tokens,
            temperature=(
                options.temperature if options.temperature is not None else DEFAULT_TEMPERATURE
            ),
            top_p=options.top_p if options.top_p is not None else DEFAULT_TOP_P,
            repetition_penalty=options.repetition_penalty,
            repetition_context_size=(
                options.repetition_context_size
                if options.repetition_context_size is not None
                else DEFAULT_REPETITION_CONTEXT_SIZE
            ),
            seed=options.seed,
        )


# ---------------------------------------------------------------------------
# Runtime output
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class GenerationChunk:
    text: str


@dataclass(frozen=True, slots=True)
class GenerationInfo:
    prompt_tokens: int = 0
    generation_tokens: int = 0
    tokens_per_second: float | None = None
    stop_reason: str | None = None


@dataclass(frozen=True, slots=True)
class RuntimeToolCall:
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)


RuntimeOutput = GenerationChunk | GenerationInfo | RuntimeToolCall


@runtime_checkable
class LocalRuntime(Protocol):
    """
    Inference engine the local adapter drives.

    ``load`` prepares a model and returns an opaque handle; it is called once per backend.
    ``generate`` takes chat messages (``{"role", "content", "images"?, "tool_calls"?}`` dicts)
    and yields GenerationChunk / GenerationInfo / RuntimeToolCall until the model stops.
    """

    supports_images: bool

    async def load(self, model_id: str, directory: Path | None = None) -> Any:
        raise NotImplementedError

    def generate(
        self,
        model: Any,
        messages: Sequence[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None,
        parameters: GenerateParameters,
    ) -> AsyncIterator[RuntimeOutput]:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------
def _image_bytes(segment: ImageSegment) -> bytes | Path | None:
    if segment.data is not None:
        return segment.data
    url = str(segment.url or "")
    if url.startswith("data:"):
        _, _, payload = url.partition(",")
        try:
            return base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError):
            return None
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    if not parsed.scheme:
        return Path(url)
    return None


def decode_image(
    segment: ImageSegment, size: tuple[int, int] | None = DEFAULT_IMAGE_SIZE
) -> Image.Image | None:
    """Decode an image segment to an RGB bitmap; None when the source cannot be read locally."""
    source = _image_bytes(segment)
    if source is None:
        logger.debug("image source not readable locally, dropped: %s", segment.url)
        return None
    try:
        if isinstance(source, Path):
            with Image.open(source) as opened:
                image = opened.convert("RGB")
        else:
            with Image.open(io.BytesIO(source)) as opened:
                image = opened.convert("RGB")
    except (UnidentifiedImageError, OSError) as exc:
        logger.warning("image segment could not be decoded, dropped: %s", exc)
        return None
    if size is not None:
        image = image.resize(size)
    return image


class LocalModelBackend(ChatBackend):
    """
    Exemplar local adapter.

    Only plain-text output is supported; a structured response format is rejected with
    UnsupportedOutputType before the runtime is touched. Image segments become Pillow images
    when the runtime accepts images and are dropped (with a debug log) otherwise.
    """

    def __init__(
        self,
        runtime: LocalRuntime,
        model_id: str,
        *,
        directory: Path | str | None = None,
        image_size: tuple[int, int] | None = DEFAULT_IMAGE_SIZE,
    ) -> None:
        self.runtime = runtime
        self.model_id = model_id
        self.directory = Path(directory) if directory else None
        self.image_size = image_size
        self.name = f"local:{model_id}"
        self.capabilities = BackendCapabilities(
            structured_output=False,
            images=bool(getattr(runtime, "supports_images", False)),
            tool_calling=True,
        )
        self._model: Any = None
        self._load_lock = asyncio.Lock()

    async def _ensure_loaded(self) -> Any:
        if self._model is not None:
            return self._model
        async with self._load_lock:
            if self._model is None:
                logger.info("loading local model %s", self.model_id)
                try:
                    self._model = await self.runtime.load(self.model_id, self.directory)
                except AnySessionError:
                    raise
                except Exception as exc:
                    logger.error("local model load failed (%s): %s", self.model_id, exc)
                    raise AdapterUnavailable(
                        f"failed to load local model {self.model_id}: {exc}",
                        backend=self.name,
                    ) from exc
        return self._model

    def _message_payload(self, message: Message) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": message.role, "content": message.content or ""}
        if message.role == "tool" and message.name:
            payload["name"] = message.name
        if message.tool_calls:
            payload["tool_calls"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tc.name,
                        "arguments": json.loads(tc.arguments_json or "{}"),
                    },
                }
                for tc in message.tool_calls
            ]
        if message.images:
            if self.capabilities.images:
                decoded = [decode_image(img, self.image_size) for img in message.images]
                images = [img for img in decoded if img is not None]
                if images:
                    payload["images"] = images
            else:
                logger.debug(
                    "runtime has no image support; dropped %d image segment(s)", len(message.images)
                )
        return payload

    def chat_messages(self, request: ChatRequest) -> list[dict[str, Any]]:
        return [self._message_payload(m) for m in request.messages]

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        if request.response_format is not None:
            raise UnsupportedOutputType(
                self.name, request.response_format.title or request.response_format.kind.value
            )

        model = await self._ensure_loaded()
        messages = self.chat_messages(request)
        tools = [t.to_openai() for t in request.tools] if request.tools else None
        parameters = GenerateParameters.from_options(request.options)

        finish_reason = "stop"
        try:
            async for output in self.runtime.generate(
                model, messages, tools=tools, parameters=parameters
            ):
                if isinstance(output, GenerationChunk):
                    yield TextDeltaEvent(delta=output.text)
                elif isinstance(output, RuntimeToolCall):
                    finish_reason = "tool_calls"
                    yield ToolCallEvent(
                        name=output.name,
                        arguments_json=json.dumps(dict(output.arguments), ensure_ascii=False),
                    )
                elif isinstance(output, GenerationInfo):
                    if output.stop_reason and finish_reason != "tool_calls":
                        finish_reason = output.stop_reason
                    yield InfoEvent(
                        metadata={
                            "prompt_tokens": output.prompt_tokens,
                            "generation_tokens": output.generation_tokens,
                            "tokens_per_second": output.tokens_per_second,
                        }
                    )
        except AnySessionError:
            raise
        except Exception as exc:
            logger.error("local generation failed (%s): %s", self.name, exc)
            raise BackendFailure(str(exc), backend=self.name) from exc

        yield DoneEvent(finish_reason=finish_reason)

    async def aclose(self) -> None:
        self._model = None


__all__ = [
    "GenerateParameters",
    "GenerationChunk",
    "GenerationInfo",
    "LocalModelBackend",
    "LocalRuntime",
    "RuntimeToolCall",
    "decode_image",
]
