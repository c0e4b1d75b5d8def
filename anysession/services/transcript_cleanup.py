"""
Transcript cleanup service.

Sends a voice transcript through a LanguageModelSession to remove filler words, fix
punctuation and suggest a short title. Backends with structured output get a typed
response; the others are asked for a bare JSON object that is then extracted from the reply.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from anysession.config.settings import CleanupConfig
from anysession.llm_native.backend import ChatBackend, GenerationOptions
from anysession.llm_native.content import GeneratedContent, extract_json_text
from anysession.llm_native.local_backend import LocalModelBackend
from anysession.llm_native.session import LanguageModelSession
from anysession.utils.exceptions import (
    AnySessionError,
    LLMRequestError,
    MissingField,
    ParseError,
    ResponseParsingError,
    SchemaMismatch,
    TranscriptTooLongError,
    TranscriptTooShortError,
)
from anysession.utils.logger import get_logger

logger = get_logger(__name__)

CHARS_PER_TOKEN = 4

CLEANUP_INSTRUCTIONS = """\
You are a transcript editor. Your task is to clean voice transcripts by:
- Removing filler words (um, uh, like, you know, so, basically)
- Fixing grammar and punctuation errors
- Improving readability while preserving the original meaning
- NOT adding content that wasn't in the original

Generate a concise title (5-7 words) that captures the main topic.
Do NOT use special characters in titles: : / \\ ? * " < > | [ ] # ^"""

JSON_ONLY_INSTRUCTIONS = (
    CLEANUP_INSTRUCTIONS
    + "\n\nIMPORTANT: Respond with ONLY valid JSON. No markdown code blocks, no explanation."
)


class CleanupResult(BaseModel):
    """Cleaned transcript plus suggested title."""

    model_config = ConfigDict(populate_by_name=True, title="TranscriptCleanupResult")

    title: str = Field(description="Concise title (5-7 words) capturing the main topic")
    transcript: str = Field(
        alias="cleanedTranscript",
        description="The cleaned transcript",
    )


def estimate_tokens(text: str) -> int:
    """Rough token count for English text (about four characters per token)."""
    return len(text) // CHARS_PER_TOKEN


def _custom_words_section(custom_words: Sequence[str]) -> str:
    words = [w.strip() for w in custom_words if w and w.strip()]
    if not words:
        return ""
    return (
        "\n\nCommon words the speaker uses (preserve these when appropriate): "
        + ", ".join(words)
    )


def structured_prompt(transcript: str, custom_words: Sequence[str] = ()) -> str:
    return f"Clean this voice transcript:{_custom_words_section(custom_words)}\n\n{transcript}"


def json_prompt(transcript: str, custom_words: Sequence[str] = ()) -> str:
    return (
        f"Clean this voice transcript and generate a title.{_custom_words_section(custom_words)}"
        f"\n\nTRANSCRIPT:\n{transcript}\n\n"
        "Respond with ONLY a JSON object in this exact format (no markdown, no explanation):\n"
        '{"title": "Your Title Here", "cleanedTranscript": "Your cleaned transcript here"}'
    )


def parse_cleanup_reply(reply: str) -> CleanupResult:
    """Extract and validate the JSON object in a free-text reply."""
    logger.debug("parsing cleanup reply (%d chars): %s", len(reply), reply[:200])
    try:
        content = GeneratedContent.from_json(extract_json_text(reply))
    except ParseError as exc:
        logger.error("cleanup reply is not valid JSON: %s", exc)
        raise ResponseParsingError(
            f"Invalid JSON: {exc.message}", {"preview": reply[:500]}
        ) from exc
    return _validate(content.value, reply)


def _validate(data: object, reply: str) -> CleanupResult:
    try:
        return CleanupResult.model_validate(data)
    except ValidationError as exc:
        logger.error("cleanup reply has the wrong shape: %s", exc)
        raise ResponseParsingError(
            f"Invalid JSON: {exc.errors()[0]['msg']}", {"preview": reply[:500]}
        ) from exc


class TranscriptCleanupService:
    """
    Clean up transcripts with whichever backend is configured.

    Usage:
        service = TranscriptCleanupService(create_backend(settings), settings.cleanup)
        result = await service.process_transcript_with_title(text, ["Obsidian"])
    """

    def __init__(
        self,
        backend: ChatBackend,
        config: CleanupConfig | None = None,
        *,
        local: bool | None = None,
    ) -> None:
        self.backend = backend
        self.config = config or CleanupConfig()
        # local models share a small context window between input and output
        self.local = isinstance(backend, LocalModelBackend) if local is None else local

    @property
    def uses_structured_output(self) -> bool:
        return self.backend.capabilities.structured_output

    @property
    def max_transcript_tokens(self) -> int:
        cfg = self.config
        if not self.local:
            return cfg.cloud_max_input_tokens
        return cfg.local_context_tokens - cfg.local_instruction_tokens - cfg.local_response_tokens

    def is_transcript_processable(self, transcript: str) -> bool:
        return len(transcript.split()) >= self.config.min_word_count

    def is_transcript_too_long(self, transcript: str) -> bool:
        return estimate_tokens(transcript) > self.max_transcript_tokens

    def _check(self, transcript: str) -> None:
        if not self.is_transcript_processable(transcript):
            words = len(transcript.split())
            logger.warning("transcript too short to process: %d words", words)
            raise TranscriptTooShortError(words, self.config.min_word_count)
        if self.is_transcript_too_long(transcript):
            max_chars = self.max_transcript_tokens * CHARS_PER_TOKEN
            logger.warning(
                "transcript too long (%d chars) for context window (max %d chars)",
                len(transcript),
                max_chars,
            )
            raise TranscriptTooLongError(max_chars, len(transcript))

    def _options(self, transcript: str) -> GenerationOptions:
        cfg = self.config
        if not self.local:
            # output is roughly the input plus JSON overhead
            tokens = max(
                cfg.min_response_tokens, estimate_tokens(transcript) + cfg.response_token_margin
            )
        else:
            tokens = cfg.local_response_tokens
        logger.debug("cleanup maximum_response_tokens=%d", tokens)
        return GenerationOptions(maximum_response_tokens=tokens)

    async def process_transcript_with_title(
        self, transcript: str, custom_words: Iterable[str] | None = None
    ) -> CleanupResult:
        """
        Clean ``transcript`` and suggest a title.

        Raises:
            TranscriptTooShortError / TranscriptTooLongError: before any backend call
            ResponseParsingError: the reply could not be read as a cleanup result
            LLMRequestError: any failure outside the package's error types
        """
        words = list(custom_words if custom_words is not None else self.config.custom_words)
        self._check(transcript)
        logger.info(
            "cleaning transcript with %s (%d chars, structured=%s)",
            self.backend.name,
            len(transcript),
            self.uses_structured_output,
        )

        options = self._options(transcript)
        try:
            if self.uses_structured_output:
                session = LanguageModelSession(self.backend, instructions=CLEANUP_INSTRUCTIONS)
                response = await session.respond(
                    structured_prompt(transcript, words),
                    generating=CleanupResult,
                    options=options,
                )
                result = response.content
            else:
                session = LanguageModelSession(self.backend, instructions=JSON_ONLY_INSTRUCTIONS)
                response = await session.respond(json_prompt(transcript, words), options=options)
                result = parse_cleanup_reply(response.text)
        except (ParseError, SchemaMismatch, MissingField) as exc:
            raise ResponseParsingError(f"Invalid JSON: {exc}") from exc
        except AnySessionError:
            raise
        except Exception as exc:
            logger.error("cleanup request failed: %s", exc)
            raise LLMRequestError(str(exc)) from exc

        logger.debug("cleanup finished with title: %s", result.title)
        return result


__all__ = [
    "CLEANUP_INSTRUCTIONS",
    "CleanupResult",
    "TranscriptCleanupService",
    "estimate_tokens",
    "json_prompt",
    "parse_cleanup_reply",
    "structured_prompt",
]
