from __future__ import annotations

import uuid
from contextlib import aclosing, contextmanager
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Iterable, Iterator, Sequence

from pydantic import BaseModel

from anysession.utils.exceptions import ConcurrentRequestError, ParseError
from anysession.utils.logger import get_logger, log_context

from .agent_runner import AgentRunnerConfig, ToolLoopRunner, TurnResult
from .backend import ChatBackend, GenerationOptions
from .content import GeneratedContent
from .events import RunnerEvent, TextDeltaEvent, TurnCompletedEvent
from .schema import GenerationSchema
from .tools import Tool, ToolRegistry
from .transcript import (
    Entry,
    Instructions,
    Prompt,
    Segment,
    Transcript,
    text_segments,
)

logger = get_logger(__name__)

OutputType = GenerationSchema | type[BaseModel] | type[str] | None


@dataclass(frozen=True, slots=True)
class SessionConfig:
    max_tool_rounds: int | None = None
    tool_timeout_s: float | None = None
    include_history: bool = True

    def runner_config(self) -> AgentRunnerConfig:
        return AgentRunnerConfig(
            max_tool_rounds=self.max_tool_rounds,
            tool_timeout_s=self.tool_timeout_s,
            include_history=self.include_history,
        )


@dataclass(frozen=True, slots=True)
class SessionResponse:
    """
    Result of ``LanguageModelSession.respond``.

    ``content`` is the text for plain generation, the decoded value (plain data or a pydantic
    model instance) for structured generation. ``entries`` are the transcript entries added by
    this turn, the Prompt included.
    """

    content: Any
    text: str
    entries: tuple[Entry, ...]
    raw_content: GeneratedContent | None = None
    rounds: int = 1


@dataclass(frozen=True, slots=True)
class ResponseSnapshot:
    """Cumulative view of a streaming response."""

    text: str
    content: Any = None
    is_final: bool = False


@dataclass(slots=True)
class _ActiveStream:
    events: AsyncGenerator[RunnerEvent, None]
    # True while the consumer holds a snapshot and has not asked for the next one
    paused: bool = False


def _schema_for(generating: OutputType) -> GenerationSchema | None:
    if generating is None or generating is str:
        return None
    if isinstance(generating, GenerationSchema):
        generating.resolve_references()
        return generating
    if isinstance(generating, type) and issubclass(generating, BaseModel):
        return GenerationSchema.from_pydantic(generating)
    raise TypeError(f"unsupported output type: {generating!r}")


def _decoded(result: TurnResult, generating: OutputType) -> Any:
    if result.content is None:
        return result.text
    if isinstance(generating, type) and issubclass(generating, BaseModel):
        return result.content.decode(generating)
    if isinstance(generating, GenerationSchema):
        return result.content.decode(generating)
    return result.content.value


def _partial(text: str) -> GeneratedContent | None:
    try:
        return GeneratedContent.from_partial_json(text)
    except ParseError:
        # prose before the JSON object starts
        return None


class LanguageModelSession:
    """
    One conversation with one backend.

    The session owns its transcript and tool set. Tools are fixed at construction. A session
    handles one request at a time; a second concurrent ``respond`` raises
    ConcurrentRequestError. A stream whose consumer stopped iterating does not count as
    in flight: the next request closes it. Separate sessions share nothing and may run
    concurrently.
    """

    def __init__(
        self,
        backend: ChatBackend,
        *,
        tools: Iterable[Tool] = (),
        instructions: str | Sequence[Segment] | None = None,
        transcript: Transcript | Iterable[Entry] | None = None,
        options: GenerationOptions | None = None,
        config: SessionConfig | None = None,
    ) -> None:
        self.backend = backend
        self.session_id = uuid.uuid4().hex[:12]
        self.options = options or GenerationOptions()
        self.config = config or SessionConfig()
        self._registry = ToolRegistry(tools)
        self._transcript = Transcript(transcript or ())
        self._runner = ToolLoopRunner(
            backend=backend, registry=self._registry, config=self.config.runner_config()
        )
        self._owner: object | None = None
        self._stream: _ActiveStream | None = None

        has_instructions = any(isinstance(e, Instructions) for e in self._transcript)
        if instructions and not has_instructions:
            segments = (
                text_segments(instructions) if isinstance(instructions, str) else tuple(instructions)
            )
            self._transcript.append(
                Instructions(segments=segments, tool_definitions=self._registry.definitions())
            )

    @property
    def transcript(self) -> Transcript:
        """A copy of the transcript; appending to it does not affect the session."""
        return Transcript(self._transcript.entries)

    @property
    def tools(self) -> list[Tool]:
        return self._registry.tools()

    @property
    def is_responding(self) -> bool:
        return self._owner is not None

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        if self._owner is not None:
            raise ConcurrentRequestError()
        owner = object()
        self._owner = owner
        try:
            yield
        finally:
            # an abandoned stream may be finalized after a newer request took over
            if self._owner is owner:
                self._owner = None

    async def _close_abandoned_stream(self) -> None:
        active = self._stream
        if active is None or not active.paused:
            return
        logger.debug("closing abandoned stream_response (session=%s)", self.session_id)
        self._stream = None
        self._owner = None
        await active.events.aclose()

    @staticmethod
    def _make_prompt(
        prompt: str | Sequence[Segment] | Prompt, schema: GenerationSchema | None
    ) -> Prompt:
        if isinstance(prompt, Prompt):
            return prompt
        segments = text_segments(prompt) if isinstance(prompt, str) else tuple(prompt)
        return Prompt(segments=segments, response_format=schema)

    def _commit(self, prompt: Prompt, result: TurnResult) -> tuple[Entry, ...]:
        added: tuple[Entry, ...] = (prompt, *result.entries)
        self._transcript.extend(added)
        return added

    async def respond(
        self,
        prompt: str | Sequence[Segment] | Prompt,
        *,
        generating: OutputType = None,
        options: GenerationOptions | None = None,
    ) -> SessionResponse:
        """
        Run one turn and append it to the transcript.

        On any error the transcript is left as it was and nothing partial is returned.
        """
        await self._close_abandoned_stream()
        schema = _schema_for(generating)
        turn_prompt = self._make_prompt(prompt, schema)
        with self._exclusive(), log_context(session_id=self.session_id):
            result = await self._runner.respond(
                self._transcript.entries,
                turn_prompt,
                options=options or self.options,
                response_format=schema or turn_prompt.response_format,
            )
            content = _decoded(result, generating)
            added = self._commit(turn_prompt, result)
            logger.debug("respond finished: rounds=%d entries=%d", result.rounds, len(added))
        return SessionResponse(
            content=content,
            text=result.text,
            entries=added,
            raw_content=result.content,
            rounds=result.rounds,
        )

    async def stream_response(
        self,
        prompt: str | Sequence[Segment] | Prompt,
        *,
        generating: OutputType = None,
        options: GenerationOptions | None = None,
    ) -> AsyncIterator[ResponseSnapshot]:
        """
        Yield cumulative snapshots as text arrives, then one final snapshot.

        For structured generation intermediate snapshots carry a partial GeneratedContent;
        the final snapshot carries the decoded value. The transcript is updated only once the
        turn completes. A consumer that stops iterating early abandons the turn: the next
        request on this session closes the backend stream and discards the partial text.
        """
        await self._close_abandoned_stream()
        schema = _schema_for(generating)
        turn_prompt = self._make_prompt(prompt, schema)
        with self._exclusive():
            text = ""
            async with aclosing(
                self._runner.stream(
                    self._transcript.entries,
                    turn_prompt,
                    options=options or self.options,
                    response_format=schema or turn_prompt.response_format,
                )
            ) as events:
                active = _ActiveStream(events)
                self._stream = active
                try:
                    while True:
                        # the log context is never held across a yield
                        with log_context(session_id=self.session_id):
                            try:
                                event = await anext(events)
                            except StopAsyncIteration:
                                break
                            if isinstance(event, TextDeltaEvent):
                                text += event.delta
                                snapshot = ResponseSnapshot(
                                    text=text, content=_partial(text) if schema else None
                                )
                            elif isinstance(event, TurnCompletedEvent):
                                result = event.result
                                content = _decoded(result, generating)
                                added = self._commit(turn_prompt, result)
                                logger.debug(
                                    "stream_response finished: rounds=%d entries=%d",
                                    result.rounds,
                                    len(added),
                                )
                                snapshot = ResponseSnapshot(
                                    text=result.text, content=content, is_final=True
                                )
                            else:
                                continue
                        active.paused = True
                        yield snapshot
                        active.paused = False
                finally:
                    if self._stream is active:
                        self._stream = None


__all__ = [
    "LanguageModelSession",
    "ResponseSnapshot",
    "SessionConfig",
    "SessionResponse",
]
