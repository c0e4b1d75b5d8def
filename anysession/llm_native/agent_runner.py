from __future__ import annotations

import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncIterator, Sequence

from anysession.utils.exceptions import ToolLoopLimitError, UnsupportedOutputType
from anysession.utils.logger import get_logger

from .backend import ChatBackend, ChatRequest, GenerationOptions
from .content import GeneratedContent, extract_json_text
from .events import (
    DoneEvent,
    InfoEvent,
    RunnerEvent,
    TextDeltaEvent,
    ToolCallEvent,
    ToolResultEvent,
    TurnCompletedEvent,
)
from .messages import AssistantToolCall, Message, message_from_segments, messages_from_transcript
from .schema import GenerationSchema, SchemaKind
from .tool_runner import ToolRunner, parse_tool_arguments
from .tools import ToolRegistry
from .transcript import (
    Entry,
    Prompt,
    Response,
    Segment,
    StructuredSegment,
    TextSegment,
    ToolCall,
    ToolCalls,
)

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class AgentRunnerConfig:
    # None keeps calling tools until the model stops asking.
    max_tool_rounds: int | None = None
    tool_timeout_s: float | None = None
    include_history: bool = True


@dataclass(frozen=True, slots=True)
class TurnResult:
    """Outcome of one ``respond`` call: joined assistant text plus the entries to append."""

    text: str
    entries: tuple[Entry, ...]
    rounds: int
    content: GeneratedContent | None = None
    finish_reason: str | None = None


@dataclass(slots=True)
class ToolLoopRunner:
    """
    Generate / execute-tools / re-generate loop over one backend.

    Each round consumes the backend's event stream fully. Text chunks are joined into one
    assistant message; if the round requested tools they run sequentially in emission order,
    one ToolCalls entry plus one ToolOutput per call is recorded, and the loop goes again.
    A round without tool calls ends the turn.

    The runner never mutates the caller's transcript. It returns new entries, ending with the
    Response that carries the text of every round joined together. Text a model writes
    alongside a tool request stays on that round's assistant message while the loop runs, but
    in the recorded entries it only appears in the final Response, after the ToolOutputs.
    Call ids are unique within a turn; an empty or repeated backend id is replaced.
    """

    backend: ChatBackend
    registry: ToolRegistry = field(default_factory=ToolRegistry)
    config: AgentRunnerConfig = AgentRunnerConfig()
    tool_runner: ToolRunner = field(init=False)

    def __post_init__(self) -> None:
        self.tool_runner = ToolRunner(self.registry, timeout_s=self.config.tool_timeout_s)

    def _check_output_type(self, response_format: GenerationSchema | None) -> None:
        if response_format is None:
            return
        if not self.backend.capabilities.structured_output:
            raise UnsupportedOutputType(
                self.backend.name, response_format.title or response_format.kind.value
            )

    async def stream(
        self,
        transcript: Sequence[Entry],
        prompt: Prompt | None = None,
        *,
        options: GenerationOptions | None = None,
        instructions: str | None = None,
        response_format: GenerationSchema | None = None,
    ) -> AsyncIterator[RunnerEvent]:
        """
        Run one turn, yielding text deltas and tool results as they happen.

        The last event is a TurnCompletedEvent carrying the TurnResult. Errors propagate
        unchanged and no partial result is produced.
        """
        self._check_output_type(response_format)
        if prompt is not None and response_format is None:
            response_format = prompt.response_format
            self._check_output_type(response_format)

        context_entries = [*transcript, prompt] if prompt is not None else list(transcript)
        convo: list[Message] = messages_from_transcript(
            context_entries,
            fallback_instructions=instructions,
            include_history=self.config.include_history,
        )
        tool_specs = self.registry.specs() or None
        opts = options or GenerationOptions()
        max_rounds = self.config.max_tool_rounds

        new_entries: list[Entry] = []
        texts: list[str] = []
        seen_ids: set[str] = set()
        finish_reason: str | None = None
        round_idx = 0

        while True:
            round_idx += 1
            request = ChatRequest(
                messages=tuple(convo),
                tools=tool_specs,
                options=opts,
                response_format=response_format,
            )

            chunks: list[str] = []
            requested: list[ToolCallEvent] = []
            round_logger = logger.bind(context={"round": round_idx})
            round_logger.debug(
                "generating (backend=%s, messages=%d)", self.backend.name, len(convo)
            )
            async with aclosing(self.backend.stream(request)) as events:
                async for event in events:
                    if isinstance(event, TextDeltaEvent):
                        if event.delta:
                            chunks.append(event.delta)
                            yield event
                    elif isinstance(event, ToolCallEvent):
                        requested.append(event)
                    elif isinstance(event, DoneEvent):
                        finish_reason = event.finish_reason
                    elif isinstance(event, InfoEvent):
                        round_logger.debug("backend info: %s", dict(event.metadata))

            assistant_text = "".join(chunks)
            if assistant_text:
                texts.append(assistant_text)

            if not requested:
                if assistant_text:
                    convo.append(Message(role="assistant", content=assistant_text))
                break

            if max_rounds is not None and round_idx > max_rounds:
                logger.error("tool loop exceeded max_tool_rounds=%s", max_rounds)
                raise ToolLoopLimitError(max_rounds)

            call_list: list[ToolCall] = []
            for event in requested:
                call_id = event.tool_call_id
                if not call_id or call_id in seen_ids:
                    call_id = uuid.uuid4().hex
                seen_ids.add(call_id)
                call_list.append(
                    ToolCall(
                        id=call_id,
                        tool_name=event.name,
                        arguments=parse_tool_arguments(event.arguments_json),
                    )
                )
            calls = tuple(call_list)
            new_entries.append(ToolCalls(calls=calls))
            convo.append(
                Message(
                    role="assistant",
                    content=assistant_text or None,
                    tool_calls=tuple(
                        AssistantToolCall(
                            id=c.id, name=c.tool_name, arguments_json=c.arguments.json_string
                        )
                        for c in calls
                    ),
                )
            )

            for call in calls:
                output = await self.tool_runner.run_call(call)
                new_entries.append(output)
                convo.append(
                    message_from_segments(
                        "tool", output.segments, name=call.tool_name, tool_call_id=call.id
                    )
                )
                yield ToolResultEvent(
                    tool_call_id=call.id, tool_name=call.tool_name, content=str(convo[-1].content)
                )

        result_text = "".join(texts)
        content: GeneratedContent | None = None
        segments: tuple[Segment, ...]
        if response_format is not None:
            if response_format.resolve_references().kind == SchemaKind.OBJECT:
                raw = extract_json_text(result_text)
            else:
                raw = result_text.strip()
            content = GeneratedContent.from_json(raw)
            content.decode(response_format)
            segments = (
                StructuredSegment(content=content, schema=response_format, source=result_text),
            )
        else:
            segments = (TextSegment(content=result_text),)
        new_entries.append(Response(segments=segments))

        logger.debug("turn finished after %d round(s)", round_idx)
        yield TurnCompletedEvent(
            result=TurnResult(
                text=result_text,
                entries=tuple(new_entries),
                rounds=round_idx,
                content=content,
                finish_reason=finish_reason,
            )
        )

    async def respond(
        self,
        transcript: Sequence[Entry],
        prompt: Prompt | None = None,
        *,
        options: GenerationOptions | None = None,
        instructions: str | None = None,
        response_format: GenerationSchema | None = None,
    ) -> TurnResult:
        result: TurnResult | None = None
        async with aclosing(
            self.stream(
                transcript,
                prompt,
                options=options,
                instructions=instructions,
                response_format=response_format,
            )
        ) as events:
            async for event in events:
                if isinstance(event, TurnCompletedEvent):
                    result = event.result
        if result is None:
            raise RuntimeError("tool loop ended without a result")
        return result


__all__ = ["AgentRunnerConfig", "ToolLoopRunner", "TurnResult"]
