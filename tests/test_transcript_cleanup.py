from __future__ import annotations

import json
from typing import Any, AsyncIterator

import pytest

from anysession.config.settings import CleanupConfig
from anysession.llm_native.backend import BackendCapabilities, ChatRequest
from anysession.llm_native.events import DoneEvent, TextDeltaEvent
from anysession.services.transcript_cleanup import (
    CLEANUP_INSTRUCTIONS,
    CleanupResult,
    TranscriptCleanupService,
    estimate_tokens,
    json_prompt,
    parse_cleanup_reply,
    structured_prompt,
)
from anysession.utils.exceptions import (
    BackendFailure,
    LLMRequestError,
    ResponseParsingError,
    TranscriptTooLongError,
    TranscriptTooShortError,
)

TRANSCRIPT = "um so I was like thinking we should uh move the meeting to friday"


class ReplyBackend:
    """Answers every request with one fixed reply."""

    name = "reply"

    def __init__(self, reply: str, *, structured: bool = True) -> None:
        self.reply = reply
        self.requests: list[ChatRequest] = []
        self.capabilities = BackendCapabilities(structured_output=structured)

    async def stream(self, request: ChatRequest) -> AsyncIterator[Any]:
        self.requests.append(request)
        yield TextDeltaEvent(self.reply)
        yield DoneEvent(finish_reason="stop")

    async def aclose(self) -> None:
        return None


class ExplodingBackend(ReplyBackend):
    def __init__(self, error: Exception) -> None:
        super().__init__("")
        self.error = error

    async def stream(self, request: ChatRequest) -> AsyncIterator[Any]:
        self.requests.append(request)
        raise self.error
        yield  # pragma: no cover


def _reply(title: str = "Moving The Meeting", text: str = "We should move the meeting to Friday.") -> str:
    return json.dumps({"title": title, "cleanedTranscript": text})


def test_estimate_tokens():
    assert estimate_tokens("abcd" * 10) == 10
    assert estimate_tokens("") == 0


def test_prompts_include_custom_words():
    assert structured_prompt("hello there", ["Obsidian", " ", "Zettel"]).endswith(
        "(preserve these when appropriate): Obsidian, Zettel\n\nhello there"
    )
    assert structured_prompt("hello there") == "Clean this voice transcript:\n\nhello there"
    assert "TRANSCRIPT:\nhello there" in json_prompt("hello there")
    assert '"cleanedTranscript"' in json_prompt("hello there")


def test_parse_cleanup_reply_accepts_fenced_json():
    result = parse_cleanup_reply("Sure!\n```json\n" + _reply("T") + "\n```")

    assert result == CleanupResult(title="T", transcript="We should move the meeting to Friday.")


@pytest.mark.parametrize(
    "reply",
    [
        '{"title": "Half", "cleanedTranscript": "cut o',
        "no json at all",
        '{"title": "Only a title"}',
    ],
)
def test_parse_cleanup_reply_rejects_bad_replies(reply):
    with pytest.raises(ResponseParsingError) as excinfo:
        parse_cleanup_reply(reply)

    assert excinfo.value.error_code == "RESPONSE_PARSING_FAILED"


@pytest.mark.anyio
async def test_too_short_transcript_never_reaches_backend():
    backend = ReplyBackend(_reply())
    service = TranscriptCleanupService(backend)

    with pytest.raises(TranscriptTooShortError):
        await service.process_transcript_with_title("hi there")

    assert backend.requests == []


@pytest.mark.anyio
async def test_too_long_transcript_never_reaches_backend():
    backend = ReplyBackend(_reply())
    service = TranscriptCleanupService(backend, CleanupConfig(cloud_max_input_tokens=5))

    with pytest.raises(TranscriptTooLongError) as excinfo:
        await service.process_transcript_with_title(TRANSCRIPT)

    assert excinfo.value.max_characters == 20
    assert backend.requests == []


def test_local_budget_reserves_instructions_and_response():
    service = TranscriptCleanupService(ReplyBackend(""), local=True)

    assert service.max_transcript_tokens == 4096 - 200 - 800
    assert service.is_transcript_too_long("x" * (3096 * 4 + 4))
    assert not service.is_transcript_too_long("x" * (3096 * 4))


@pytest.mark.anyio
async def test_structured_backend_gets_typed_request():
    backend = ReplyBackend(_reply())
    service = TranscriptCleanupService(backend, CleanupConfig(custom_words=["Friday"]))

    result = await service.process_transcript_with_title(TRANSCRIPT)

    assert result.title == "Moving The Meeting"
    assert result.transcript == "We should move the meeting to Friday."
    request = backend.requests[0]
    assert request.response_format is not None
    assert request.response_format.title == "TranscriptCleanupResult"
    assert request.messages[0].role == "system"
    assert request.messages[0].content == CLEANUP_INSTRUCTIONS
    assert request.messages[-1].content == structured_prompt(TRANSCRIPT, ["Friday"])
    assert request.options.maximum_response_tokens == 4096


@pytest.mark.anyio
async def test_text_backend_gets_json_prompt():
    backend = ReplyBackend("Here it is:\n```json\n" + _reply("Friday Meeting") + "\n```", structured=False)
    service = TranscriptCleanupService(backend, local=True)

    result = await service.process_transcript_with_title(TRANSCRIPT, ["Obsidian"])

    assert result.title == "Friday Meeting"
    request = backend.requests[0]
    assert request.response_format is None
    assert "ONLY valid JSON" in request.messages[0].content
    assert request.messages[-1].content == json_prompt(TRANSCRIPT, ["Obsidian"])
    assert request.options.maximum_response_tokens == 800


@pytest.mark.anyio
async def test_cloud_response_budget_grows_with_input():
    long_text = "word " * 5000
    backend = ReplyBackend(_reply())
    service = TranscriptCleanupService(backend)

    await service.process_transcript_with_title(long_text)

    assert backend.requests[0].options.maximum_response_tokens == estimate_tokens(long_text) + 500


@pytest.mark.anyio
async def test_truncated_reply_is_parsing_error():
    backend = ReplyBackend('{"title": "Half", "cleanedTranscript": "we should', structured=False)
    service = TranscriptCleanupService(backend)

    with pytest.raises(ResponseParsingError):
        await service.process_transcript_with_title(TRANSCRIPT)


@pytest.mark.anyio
async def test_structured_reply_missing_field_is_parsing_error():
    backend = ReplyBackend('{"title": "Only"}')
    service = TranscriptCleanupService(backend)

    with pytest.raises(ResponseParsingError):
        await service.process_transcript_with_title(TRANSCRIPT)


@pytest.mark.anyio
async def test_package_errors_pass_through():
    backend = ExplodingBackend(BackendFailure("HTTP 500", backend="reply", status_code=500))
    service = TranscriptCleanupService(backend)

    with pytest.raises(BackendFailure):
        await service.process_transcript_with_title(TRANSCRIPT)


@pytest.mark.anyio
async def test_foreign_errors_become_request_errors():
    backend = ExplodingBackend(RuntimeError("socket closed"))
    service = TranscriptCleanupService(backend)

    with pytest.raises(LLMRequestError) as excinfo:
        await service.process_transcript_with_title(TRANSCRIPT)

    assert isinstance(excinfo.value.__cause__, RuntimeError)
