from __future__ import annotations

from typing import Any, AsyncIterator

import pytest

from anysession.llm_native.agent_runner import AgentRunnerConfig, ToolLoopRunner
from anysession.llm_native.backend import BackendCapabilities, ChatRequest
from anysession.llm_native.content import GeneratedContent
from anysession.llm_native.events import (
    DoneEvent,
    InfoEvent,
    TextDeltaEvent,
    ToolCallEvent,
    ToolResultEvent,
    TurnCompletedEvent,
)
from anysession.llm_native.schema import GenerationSchema, SchemaProperty
from anysession.llm_native.tools import ToolRegistry, tool
from anysession.llm_native.transcript import (
    Instructions,
    Prompt,
    Response,
    StructuredSegment,
    TextSegment,
    ToolCall,
    ToolCalls,
    ToolOutput,
    text_segments,
)
from anysession.utils.exceptions import (
    ParseError,
    ToolExecutionError,
    ToolLoopLimitError,
    UnsupportedOutputType,
)


class ScriptedBackend:
    """Replays one list of events per round and records every request."""

    name = "scripted"

    def __init__(self, rounds: list[list[Any]], *, structured: bool = False) -> None:
        self.rounds = list(rounds)
        self.requests: list[ChatRequest] = []
        self.capabilities = BackendCapabilities(structured_output=structured)

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def stream(self, request: ChatRequest) -> AsyncIterator[Any]:
        self.requests.append(request)
        if not self.rounds:
            raise AssertionError("unexpected extra backend call")
        for event in self.rounds.pop(0):
            yield event

    async def aclose(self) -> None:
        return None


class RepeatingToolBackend(ScriptedBackend):
    def __init__(self) -> None:
        super().__init__([])

    async def stream(self, request: ChatRequest) -> AsyncIterator[Any]:
        self.requests.append(request)
        yield ToolCallEvent(name="calc", arguments_json='{"expr": "1+1"}')
        yield DoneEvent(finish_reason="tool_calls")


@tool
def calc(expr: str) -> str:
    """Evaluate a tiny arithmetic expression."""
    left, right = expr.split("+")
    return str(int(left) + int(right))


@tool
def explode() -> str:
    raise ValueError("boom")


ANSWER = GenerationSchema.object("Answer", [SchemaProperty("answer", GenerationSchema.integer())])


def _prompt(text: str, **kwargs: Any) -> Prompt:
    return Prompt(segments=text_segments(text), **kwargs)


@pytest.mark.anyio
async def test_terse_instructions_single_round():
    backend = ScriptedBackend([[TextDeltaEvent(delta="4"), DoneEvent(finish_reason="stop")]])
    runner = ToolLoopRunner(backend=backend)

    result = await runner.respond(
        [Instructions(segments=text_segments("You are terse."))], _prompt("2+2?")
    )

    assert result.text == "4"
    assert result.entries == (Response(segments=text_segments("4")),)
    assert result.rounds == 1
    assert result.finish_reason == "stop"
    request = backend.requests[0]
    assert [(m.role, m.content) for m in request.messages] == [
        ("system", "You are terse."),
        ("user", "2+2?"),
    ]
    assert request.tools is None


@pytest.mark.anyio
async def test_tool_round_then_final_answer():
    backend = ScriptedBackend(
        [
            [
                ToolCallEvent(name="calc", arguments_json='{"expr": "1+1"}', tool_call_id="call_1"),
                DoneEvent(finish_reason="tool_calls"),
            ],
            [TextDeltaEvent(delta="It is "), TextDeltaEvent(delta="2."), DoneEvent("stop")],
        ]
    )
    runner = ToolLoopRunner(backend=backend, registry=ToolRegistry([calc]))

    result = await runner.respond([], _prompt("1+1?"))

    assert backend.calls == 2
    assert result.rounds == 2
    assert result.entries == (
        ToolCalls(calls=(ToolCall("call_1", "calc", GeneratedContent({"expr": "1+1"})),)),
        ToolOutput(id="call_1", tool_name="calc", segments=(TextSegment("2"),)),
        Response(segments=text_segments("It is 2.")),
    )

    second = backend.requests[1].messages
    assert second[-2].role == "assistant"
    assert second[-2].tool_calls[0].id == "call_1"
    assert second[-1].role == "tool"
    assert second[-1].tool_call_id == "call_1"
    assert second[-1].content == "2"
    assert backend.requests[0].tools[0].name == "calc"


@pytest.mark.anyio
async def test_text_from_every_round_is_joined():
    backend = ScriptedBackend(
        [
            [TextDeltaEvent("Let me check."), ToolCallEvent("calc", '{"expr": "2+2"}', "c1")],
            [TextDeltaEvent("Done.")],
        ]
    )
    runner = ToolLoopRunner(backend=backend, registry=ToolRegistry([calc]))

    result = await runner.respond([], _prompt("2+2?"))

    assert result.text == "Let me check.Done."
    assert backend.requests[1].messages[-2].content == "Let me check."


@pytest.mark.anyio
async def test_unknown_tool_output_and_turn_continues():
    backend = ScriptedBackend(
        [
            [ToolCallEvent(name="nope", arguments_json="{}", tool_call_id="c1"), DoneEvent()],
            [TextDeltaEvent("sorry"), DoneEvent()],
        ]
    )
    runner = ToolLoopRunner(backend=backend)

    result = await runner.respond([], _prompt("use nope"))

    assert result.entries[1] == ToolOutput(
        id="c1", tool_name="nope", segments=(TextSegment("Tool not found: nope"),)
    )
    assert result.text == "sorry"


@pytest.mark.anyio
async def test_generated_call_id_matches_output_id():
    backend = ScriptedBackend(
        [[ToolCallEvent(name="calc", arguments_json='{"expr": "3+4"}')], [TextDeltaEvent("7")]]
    )
    runner = ToolLoopRunner(backend=backend, registry=ToolRegistry([calc]))

    result = await runner.respond([], _prompt("3+4?"))

    call = result.entries[0].calls[0]
    assert call.id
    assert result.entries[1].id == call.id


@pytest.mark.anyio
async def test_reused_backend_call_ids_are_replaced_within_a_turn():
    backend = ScriptedBackend(
        [
            [ToolCallEvent(name="calc", arguments_json='{"expr": "1+1"}', tool_call_id="call_0")],
            [ToolCallEvent(name="calc", arguments_json='{"expr": "2+2"}', tool_call_id="call_0")],
            [TextDeltaEvent("done")],
        ]
    )
    runner = ToolLoopRunner(backend=backend, registry=ToolRegistry([calc]))

    result = await runner.respond([], _prompt("sums"))

    call_entries = [e for e in result.entries if isinstance(e, ToolCalls)]
    outputs = [e for e in result.entries if isinstance(e, ToolOutput)]
    ids = [c.id for entry in call_entries for c in entry.calls]
    assert ids[0] == "call_0"
    assert len(set(ids)) == 2
    assert [o.id for o in outputs] == ids
    assert [o.segments for o in outputs] == [(TextSegment("2"),), (TextSegment("4"),)]

    last_request = backend.requests[-1].messages
    wire_ids = [m.tool_call_id for m in last_request if m.role == "tool"]
    assert wire_ids == ids


@pytest.mark.anyio
async def test_tool_failure_aborts_turn():
    backend = ScriptedBackend([[ToolCallEvent(name="explode", arguments_json="", tool_call_id="c1")]])
    runner = ToolLoopRunner(backend=backend, registry=ToolRegistry([explode]))

    with pytest.raises(ToolExecutionError) as excinfo:
        await runner.respond([], _prompt("go"))

    assert excinfo.value.tool_name == "explode"
    assert backend.calls == 1


@pytest.mark.anyio
async def test_malformed_tool_arguments_raise_parse_error():
    backend = ScriptedBackend([[ToolCallEvent(name="calc", arguments_json="{oops")]])
    runner = ToolLoopRunner(backend=backend, registry=ToolRegistry([calc]))

    with pytest.raises(ParseError):
        await runner.respond([], _prompt("go"))


@pytest.mark.anyio
async def test_round_limit():
    backend = RepeatingToolBackend()
    runner = ToolLoopRunner(
        backend=backend,
        registry=ToolRegistry([calc]),
        config=AgentRunnerConfig(max_tool_rounds=1),
    )

    with pytest.raises(ToolLoopLimitError) as excinfo:
        await runner.respond([], _prompt("loop"))

    assert excinfo.value.max_rounds == 1
    assert backend.calls == 2


@pytest.mark.anyio
async def test_structured_output_rejected_before_backend_call():
    backend = ScriptedBackend([[TextDeltaEvent("{}")]], structured=False)
    runner = ToolLoopRunner(backend=backend)

    with pytest.raises(UnsupportedOutputType):
        await runner.respond([], _prompt("json please"), response_format=ANSWER)

    with pytest.raises(UnsupportedOutputType):
        await runner.respond([], _prompt("json please", response_format=ANSWER))

    assert backend.calls == 0


@pytest.mark.anyio
async def test_structured_output_decoded_into_response():
    backend = ScriptedBackend(
        [[TextDeltaEvent('{"ans'), TextDeltaEvent('wer": 4}'), DoneEvent("stop")]],
        structured=True,
    )
    runner = ToolLoopRunner(backend=backend)

    result = await runner.respond([], _prompt("2+2?"), response_format=ANSWER)

    assert backend.requests[0].response_format is ANSWER
    assert result.content == GeneratedContent({"answer": 4})
    segment = result.entries[-1].segments[0]
    assert isinstance(segment, StructuredSegment)
    assert segment.schema is ANSWER
    assert segment.source == '{"answer": 4}'


@pytest.mark.anyio
async def test_stream_yields_deltas_tool_results_and_completion():
    backend = ScriptedBackend(
        [
            [ToolCallEvent("calc", '{"expr": "1+2"}', "c1"), InfoEvent({"prompt_tokens": 3})],
            [TextDeltaEvent("3"), DoneEvent("stop")],
        ]
    )
    runner = ToolLoopRunner(backend=backend, registry=ToolRegistry([calc]))

    events = [e async for e in runner.stream([], _prompt("1+2?"))]

    assert isinstance(events[0], ToolResultEvent)
    assert events[0].content == "3"
    assert events[1] == TextDeltaEvent(delta="3")
    assert isinstance(events[-1], TurnCompletedEvent)
    assert events[-1].result.text == "3"


@pytest.mark.anyio
async def test_runner_does_not_touch_caller_entries():
    history = [Instructions(segments=text_segments("sys"))]
    backend = ScriptedBackend([[TextDeltaEvent("hi")]])
    runner = ToolLoopRunner(backend=backend)

    await runner.respond(history, _prompt("hello"))

    assert len(history) == 1
