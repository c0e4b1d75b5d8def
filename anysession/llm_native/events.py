from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Mapping

if TYPE_CHECKING:
    from .agent_runner import TurnResult


# ---------------------------------------------------------------------------
# Backend stream events
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TextDeltaEvent:
    delta: str
    type: Literal["text.delta"] = "text.delta"


@dataclass(frozen=True, slots=True)
class ToolCallDeltaEvent:
    """Chat Completions style partial tool call; backends accumulate these into ToolCallEvent."""

    index: int
    tool_call_id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None
    type: Literal["tool_call.delta"] = "tool_call.delta"


@dataclass(frozen=True, slots=True)
class ToolCallEvent:
    """A complete tool call requested by the model, arguments still raw JSON text."""

    name: str
    arguments_json: str
    tool_call_id: str | None = None
    type: Literal["tool_call"] = "tool_call"


@dataclass(frozen=True, slots=True)
class InfoEvent:
    """Diagnostics from the backend (token counts, timings). Not part of the conversation."""

    metadata: Mapping[str, Any] = field(default_factory=dict)
    type: Literal["info"] = "info"


@dataclass(frozen=True, slots=True)
class DoneEvent:
    finish_reason: str | None = None
    type: Literal["done"] = "done"


StreamEvent = TextDeltaEvent | ToolCallEvent | InfoEvent | DoneEvent


# ---------------------------------------------------------------------------
# Tool loop events
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ToolResultEvent:
    tool_call_id: str
    tool_name: str
    content: str
    type: Literal["tool.result"] = "tool.result"


@dataclass(frozen=True, slots=True)
class TurnCompletedEvent:
    result: "TurnResult"
    type: Literal["turn.completed"] = "turn.completed"


RunnerEvent = TextDeltaEvent | ToolResultEvent | TurnCompletedEvent


# ---------------------------------------------------------------------------
# Delta accumulation
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class ToolCallState:
    index: int
    tool_call_id: str | None = None
    name: str | None = None
    arguments_json: str = ""

    def is_complete(self) -> bool:
        return bool(self.name)

    def to_event(self) -> ToolCallEvent:
        return ToolCallEvent(
            name=str(self.name),
            arguments_json=self.arguments_json,
            tool_call_id=self.tool_call_id,
        )


class ToolCallAccumulator:
    """Accumulate streaming tool_call deltas (Chat Completions style)."""

    def __init__(self) -> None:
        self._calls: dict[int, ToolCallState] = {}

    def apply(self, event: ToolCallDeltaEvent) -> None:
        state = self._calls.get(event.index)
        if state is None:
            state = ToolCallState(index=event.index)
            self._calls[event.index] = state

        if event.tool_call_id:
            state.tool_call_id = event.tool_call_id
        if event.name:
            state.name = event.name
        if event.arguments_delta:
            state.arguments_json += event.arguments_delta

    def list(self) -> list[ToolCallState]:
        return [self._calls[i] for i in sorted(self._calls)]

    def events(self) -> list[ToolCallEvent]:
        """Complete calls in emission (index) order."""
        return [state.to_event() for state in self.list() if state.is_complete()]


__all__ = [
    "DoneEvent",
    "InfoEvent",
    "RunnerEvent",
    "StreamEvent",
    "TextDeltaEvent",
    "ToolCallAccumulator",
    "ToolCallDeltaEvent",
    "ToolCallEvent",
    "ToolCallState",
    "ToolResultEvent",
    "TurnCompletedEvent",
]
