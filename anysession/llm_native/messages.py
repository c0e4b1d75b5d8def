from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Sequence

from .transcript import (
    Entry,
    ImageSegment,
    Instructions,
    Prompt,
    Response,
    Segment,
    ToolCalls,
    ToolOutput,
    first_instruction_segments,
    latest_prompt_segments,
    segments_text,
)

Role = Literal["system", "user", "assistant", "tool"]


@dataclass(frozen=True, slots=True)
class AssistantToolCall:
    """Assistant tool call (OpenAI chat.completions tool_calls item)."""

    id: str
    name: str
    arguments_json: str
    type: Literal["function"] = "function"

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.name, "arguments": self.arguments_json},
        }


@dataclass(frozen=True, slots=True)
class Message:
    """Backend-neutral chat message; images travel beside the text until a backend converts them."""

    role: Role
    content: str | None = None
    images: tuple[ImageSegment, ...] = ()
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: tuple[AssistantToolCall, ...] | None = None

    def __post_init__(self) -> None:
        if self.role == "tool":
            if not self.tool_call_id:
                raise ValueError("tool message requires tool_call_id")
            if self.tool_calls:
                raise ValueError("tool message must not include tool_calls")
        elif self.tool_call_id:
            raise ValueError("tool_call_id is only valid for tool messages")

        if self.role != "assistant" and self.tool_calls:
            raise ValueError("tool_calls is only valid for assistant messages")

        if self.content is None and self.role != "assistant":
            raise ValueError("content cannot be None for non-assistant messages")

    def to_openai(self) -> dict[str, Any]:
        msg: dict[str, Any] = {"role": self.role}

        if self.name and self.role != "tool":
            msg["name"] = self.name

        if self.role == "tool":
            msg["tool_call_id"] = self.tool_call_id

        if self.images:
            parts: list[dict[str, Any]] = []
            if self.content:
                parts.append({"type": "text", "text": self.content})
            for image in self.images:
                parts.append({"type": "image_url", "image_url": {"url": image.to_data_url()}})
            msg["content"] = parts
        else:
            msg["content"] = self.content

        if self.tool_calls:
            msg["tool_calls"] = [tc.to_openai() for tc in self.tool_calls]

        return msg


def message_from_segments(
    role: Role,
    segments: Sequence[Segment],
    *,
    name: str | None = None,
    tool_call_id: str | None = None,
) -> Message:
    """
    Convert transcript segments into one chat message for ``role``.

    Text and structured segments are joined with newlines (structured values as compact JSON).
    Image segments are kept on ``images``; whether they reach the model is up to the backend.
    Tool messages never carry images.
    """
    images = tuple(s for s in segments if isinstance(s, ImageSegment))
    return Message(
        role=role,
        content=segments_text(segments),
        images=() if role == "tool" else images,
        name=name,
        tool_call_id=tool_call_id,
    )


def _entry_messages(entry: Entry) -> list[Message]:
    # text from a tool-requesting round lives in the turn's Response, not on ToolCalls
    if isinstance(entry, Prompt):
        return [message_from_segments("user", entry.segments)]
    if isinstance(entry, Response):
        return [message_from_segments("assistant", entry.segments)]
    if isinstance(entry, ToolCalls):
        calls = tuple(
            AssistantToolCall(id=c.id, name=c.tool_name, arguments_json=c.arguments.json_string)
            for c in entry.calls
        )
        return [Message(role="assistant", content=None, tool_calls=calls)]
    if isinstance(entry, ToolOutput):
        return [
            message_from_segments(
                "tool", entry.segments, name=entry.tool_name, tool_call_id=entry.id
            )
        ]
    return []


def messages_from_transcript(
    entries: Sequence[Entry],
    *,
    fallback_prompt: str = "",
    fallback_instructions: str | None = None,
    include_history: bool = True,
) -> list[Message]:
    """
    Build the chat context for a backend call.

    Exactly one system message (first Instructions entry, else ``fallback_instructions``, else
    none). With ``include_history`` every Prompt/Response/ToolCalls/ToolOutput entry is folded
    in order; without it only the latest Prompt is sent (for backends that keep their own
    chat history). A transcript with no Prompt gets ``fallback_prompt`` as the user turn.
    """
    messages: list[Message] = []
    system = first_instruction_segments(entries, fallback_instructions)
    if system is not None:
        messages.append(message_from_segments("system", system))

    has_prompt = any(isinstance(e, Prompt) for e in entries)
    if include_history and has_prompt:
        for entry in entries:
            if isinstance(entry, Instructions):
                continue
            messages.extend(_entry_messages(entry))
        return messages

    messages.append(message_from_segments("user", latest_prompt_segments(entries, fallback_prompt)))
    return messages


__all__ = [
    "AssistantToolCall",
    "Message",
    "Role",
    "message_from_segments",
    "messages_from_transcript",
]
