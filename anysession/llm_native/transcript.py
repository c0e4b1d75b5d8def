from __future__ import annotations

import base64
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Literal, Sequence, overload

from .content import GeneratedContent
from .schema import GenerationSchema


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Segments
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TextSegment:
    content: str
    id: str = field(default_factory=_new_id, compare=False)
    type: Literal["text"] = "text"


@dataclass(frozen=True, slots=True)
class StructuredSegment:
    """Structured value plus the schema it was generated against (if known)."""

    content: GeneratedContent
    schema: GenerationSchema | None = None
    source: str = ""
    id: str = field(default_factory=_new_id, compare=False)
    type: Literal["structured"] = "structured"


@dataclass(frozen=True, slots=True)
class ImageSegment:
    """Image given either by URL or by raw bytes with a MIME type."""

    url: str | None = None
    data: bytes | None = None
    mime_type: str | None = None
    id: str = field(default_factory=_new_id, compare=False)
    type: Literal["image"] = "image"

    def __post_init__(self) -> None:
        if (self.url is None) == (self.data is None):
            raise ValueError("image segment requires exactly one of url or data")
        if self.data is not None and not self.mime_type:
            raise ValueError("image data requires mime_type")

    @classmethod
    def from_url(cls, url: str) -> "ImageSegment":
        return cls(url=url)

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str) -> "ImageSegment":
        return cls(data=data, mime_type=mime_type)

    def to_data_url(self) -> str:
        if self.url is not None:
            return self.url
        encoded = base64.b64encode(self.data or b"").decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


Segment = TextSegment | StructuredSegment | ImageSegment


def segments_text(segments: Iterable[Segment]) -> str:
    """Join text and structured segments with newlines; image segments carry no text."""
    parts: list[str] = []
    for segment in segments:
        if isinstance(segment, TextSegment):
            parts.append(segment.content)
        elif isinstance(segment, StructuredSegment):
            parts.append(segment.content.json_string)
    return "\n".join(parts)


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ToolDefinition:
    """Tool spec visible to the model for a turn."""

    name: str
    description: str
    parameters: GenerationSchema


@dataclass(frozen=True, slots=True)
class Instructions:
    segments: tuple[Segment, ...]
    tool_definitions: tuple[ToolDefinition, ...] = ()
    id: str = field(default_factory=_new_id, compare=False)
    type: Literal["instructions"] = "instructions"


@dataclass(frozen=True, slots=True)
class Prompt:
    segments: tuple[Segment, ...]
    response_format: GenerationSchema | None = None
    id: str = field(default_factory=_new_id, compare=False)
    type: Literal["prompt"] = "prompt"

    def __post_init__(self) -> None:
        if self.response_format is not None:
            self.response_format.resolve_references()


@dataclass(frozen=True, slots=True)
class Response:
    segments: tuple[Segment, ...]
    id: str = field(default_factory=_new_id, compare=False)
    type: Literal["response"] = "response"

    @property
    def text(self) -> str:
        return segments_text(self.segments)


@dataclass(frozen=True, slots=True)
class ToolCall:
    id: str
    tool_name: str
    arguments: GeneratedContent


@dataclass(frozen=True, slots=True)
class ToolCalls:
    calls: tuple[ToolCall, ...]
    id: str = field(default_factory=_new_id, compare=False)
    type: Literal["tool_calls"] = "tool_calls"


@dataclass(frozen=True, slots=True)
class ToolOutput:
    id: str
    tool_name: str
    segments: tuple[Segment, ...]
    type: Literal["tool_output"] = "tool_output"

    @property
    def text(self) -> str:
        return segments_text(self.segments)


Entry = Instructions | Prompt | Response | ToolCalls | ToolOutput


def text_segments(*texts: str) -> tuple[Segment, ...]:
    return tuple(TextSegment(content=t) for t in texts)


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------
class Transcript(Sequence[Entry]):
    """
    Append-only conversation log.

    A session owns its transcript; everything else gets ``entries`` (an immutable tuple
    snapshot) and hands back new entries for the owner to append.
    """

    __slots__ = ("_entries",)

    def __init__(self, entries: Iterable[Entry] = ()) -> None:
        self._entries: list[Entry] = list(entries)

    def append(self, entry: Entry) -> None:
        self._entries.append(entry)

    def extend(self, entries: Iterable[Entry]) -> None:
        self._entries.extend(entries)

    @property
    def entries(self) -> tuple[Entry, ...]:
        return tuple(self._entries)

    @overload
    def __getitem__(self, index: int) -> Entry: ...

    @overload
    def __getitem__(self, index: slice) -> tuple[Entry, ...]: ...

    def __getitem__(self, index: int | slice) -> Entry | tuple[Entry, ...]:
        if isinstance(index, slice):
            return tuple(self._entries[index])
        return self._entries[index]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Entry]:
        return iter(tuple(self._entries))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Transcript):
            return self._entries == other._entries
        return NotImplemented

    def __repr__(self) -> str:
        return f"Transcript({self._entries!r})"

    def segments(self, of_kind: type | tuple[type, ...]) -> list[Segment]:
        """All segments of the given segment class(es), oldest first."""
        found: list[Segment] = []
        for entry in self._entries:
            for segment in getattr(entry, "segments", ()):
                if isinstance(segment, of_kind):
                    found.append(segment)
        return found

    def latest_prompt_segments(self, fallback_text: str = "") -> tuple[Segment, ...]:
        return latest_prompt_segments(self._entries, fallback_text)

    def first_instruction_segments(
        self, fallback_instructions: str | None = None
    ) -> tuple[Segment, ...] | None:
        return first_instruction_segments(self._entries, fallback_instructions)

    # ---------------------------------------------------------------------------
    # Persistence
    # ---------------------------------------------------------------------------
    def to_dicts(self) -> list[dict[str, Any]]:
        return [_entry_to_dict(entry) for entry in self._entries]

    @classmethod
    def from_dicts(cls, payloads: Sequence[dict[str, Any]]) -> "Transcript":
        return cls(_entry_from_dict(p) for p in payloads)


def latest_prompt_segments(entries: Sequence[Entry], fallback_text: str = "") -> tuple[Segment, ...]:
    """Segments of the most recent Prompt, else the fallback text as one text segment."""
    for entry in reversed(entries):
        if isinstance(entry, Prompt):
            return entry.segments
    return (TextSegment(content=fallback_text),)


def first_instruction_segments(
    entries: Sequence[Entry], fallback_instructions: str | None = None
) -> tuple[Segment, ...] | None:
    """Segments of the first Instructions entry, else the fallback string, else None."""
    for entry in entries:
        if isinstance(entry, Instructions):
            return entry.segments
    if fallback_instructions:
        return (TextSegment(content=fallback_instructions),)
    return None


def _segment_to_dict(segment: Segment) -> dict[str, Any]:
    if isinstance(segment, TextSegment):
        return {"type": "text", "content": segment.content}
    if isinstance(segment, StructuredSegment):
        return {
            "type": "structured",
            "content": segment.content.value,
            "schema": segment.schema.to_json_schema() if segment.schema else None,
            "source": segment.source,
        }
    if segment.url is not None:
        return {"type": "image", "url": segment.url}
    return {
        "type": "image",
        "data": base64.b64encode(segment.data or b"").decode("ascii"),
        "mime_type": segment.mime_type,
    }


def _segment_from_dict(payload: dict[str, Any]) -> Segment:
    kind = payload.get("type")
    if kind == "text":
        return TextSegment(content=str(payload.get("content") or ""))
    if kind == "structured":
        schema = payload.get("schema")
        return StructuredSegment(
            content=GeneratedContent(payload.get("content")),
            schema=GenerationSchema.from_json_schema(schema) if schema else None,
            source=str(payload.get("source") or ""),
        )
    if kind == "image":
        if payload.get("url"):
            return ImageSegment.from_url(str(payload["url"]))
        return ImageSegment.from_bytes(
            base64.b64decode(payload.get("data") or ""), str(payload.get("mime_type") or "")
        )
    raise ValueError(f"unknown segment type: {kind!r}")


def _entry_to_dict(entry: Entry) -> dict[str, Any]:
    payload: dict[str, Any] = {"type": entry.type, "id": entry.id}
    if isinstance(entry, ToolCalls):
        payload["calls"] = [
            {"id": c.id, "tool_name": c.tool_name, "arguments": c.arguments.value}
            for c in entry.calls
        ]
        return payload
    payload["segments"] = [_segment_to_dict(s) for s in entry.segments]
    if isinstance(entry, Instructions):
        payload["tools"] = [
            {"name": t.name, "description": t.description, "parameters": t.parameters.to_json_schema()}
            for t in entry.tool_definitions
        ]
    elif isinstance(entry, Prompt) and entry.response_format is not None:
        payload["response_format"] = entry.response_format.to_json_schema()
    elif isinstance(entry, ToolOutput):
        payload["tool_name"] = entry.tool_name
    return payload


def _entry_from_dict(payload: dict[str, Any]) -> Entry:
    kind = payload.get("type")
    entry_id = str(payload.get("id") or _new_id())
    segments = tuple(_segment_from_dict(s) for s in payload.get("segments") or ())
    if kind == "instructions":
        tools = tuple(
            ToolDefinition(
                name=str(t["name"]),
                description=str(t.get("description") or ""),
                parameters=GenerationSchema.from_json_schema(t["parameters"]),
            )
            for t in payload.get("tools") or ()
        )
        return Instructions(segments=segments, tool_definitions=tools, id=entry_id)
    if kind == "prompt":
        fmt = payload.get("response_format")
        return Prompt(
            segments=segments,
            response_format=GenerationSchema.from_json_schema(fmt) if fmt else None,
            id=entry_id,
        )
    if kind == "response":
        return Response(segments=segments, id=entry_id)
    if kind == "tool_calls":
        calls = tuple(
            ToolCall(
                id=str(c["id"]),
                tool_name=str(c["tool_name"]),
                arguments=GeneratedContent(c.get("arguments")),
            )
            for c in payload.get("calls") or ()
        )
        return ToolCalls(calls=calls, id=entry_id)
    if kind == "tool_output":
        return ToolOutput(id=entry_id, tool_name=str(payload.get("tool_name") or ""), segments=segments)
    raise ValueError(f"unknown transcript entry type: {kind!r}")


__all__ = [
    "Entry",
    "ImageSegment",
    "Instructions",
    "Prompt",
    "Response",
    "Segment",
    "StructuredSegment",
    "TextSegment",
    "ToolCall",
    "ToolCalls",
    "ToolDefinition",
    "ToolOutput",
    "Transcript",
    "first_instruction_segments",
    "latest_prompt_segments",
    "segments_text",
    "text_segments",
]
