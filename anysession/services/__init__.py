"""Application services built on LanguageModelSession."""

from .transcript_cleanup import CleanupResult, TranscriptCleanupService

__all__ = ["CleanupResult", "TranscriptCleanupService"]
