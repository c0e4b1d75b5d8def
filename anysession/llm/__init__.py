"""Provider catalog and backend/session construction."""

from .factory import LLMProvider, create_backend, create_session, generation_options

__all__ = ["LLMProvider", "create_backend", "create_session", "generation_options"]
