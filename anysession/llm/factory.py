"""
Backend factory: provider catalog plus construction of backends and sessions from settings.

Notes:
- Construction only; nothing here performs network I/O.
- Every cloud provider is reached through its OpenAI-compatible endpoint, so one adapter
  (OpenAICompatibleBackend) serves them all.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable, Optional

from anysession.llm_native.backend import BackendCapabilities, BackendConfig, GenerationOptions
from anysession.llm_native.local_backend import LocalModelBackend, LocalRuntime
from anysession.llm_native.openai_backend import OpenAICompatibleBackend
from anysession.llm_native.session import LanguageModelSession, SessionConfig
from anysession.llm_native.tools import Tool
from anysession.utils.exceptions import AdapterUnavailable, APIKeyMissingError
from anysession.utils.logger import get_logger

if TYPE_CHECKING:
    from anysession.config.settings import LLMConfig, Settings
    from anysession.llm_native.backend import ChatBackend

logger = get_logger(__name__)


class LLMProvider(str, Enum):
    LOCAL = "local"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    OLLAMA = "ollama"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def requires_api_key(self) -> bool:
        return self in (LLMProvider.OPENAI, LLMProvider.ANTHROPIC, LLMProvider.GEMINI)

    @property
    def default_model(self) -> str:
        return self.available_models[0]

    @property
    def available_models(self) -> list[str]:
        return list(_MODELS[self])

    @property
    def default_base_url(self) -> str:
        return _BASE_URLS[self]

    @property
    def api_key_env(self) -> str | None:
        return _KEY_ENV.get(self)

    @property
    def capabilities(self) -> BackendCapabilities:
        if self is LLMProvider.LOCAL:
            return BackendCapabilities(structured_output=False, images=False)
        # Anthropic's compatibility layer ignores response_format
        return BackendCapabilities(
            structured_output=self is not LLMProvider.ANTHROPIC,
            images=self is not LLMProvider.OLLAMA,
        )


_DISPLAY_NAMES = {
    LLMProvider.LOCAL: "Local model",
    LLMProvider.OPENAI: "OpenAI",
    LLMProvider.ANTHROPIC: "Claude (Anthropic)",
    LLMProvider.GEMINI: "Gemini (Google)",
    LLMProvider.OLLAMA: "Ollama",
}

_MODELS = {
    LLMProvider.LOCAL: ("mlx-community/Llama-3.2-3B-Instruct-4bit",),
    LLMProvider.OPENAI: ("gpt-4o", "gpt-4o-mini", "gpt-4-turbo"),
    LLMProvider.ANTHROPIC: ("claude-sonnet-4-5-20250929", "claude-haiku-3-5-20240307"),
    LLMProvider.GEMINI: ("gemini-2.0-flash", "gemini-1.5-pro", "gemini-1.5-flash"),
    LLMProvider.OLLAMA: ("llama3.2",),
}

_BASE_URLS = {
    LLMProvider.LOCAL: "",
    LLMProvider.OPENAI: "https://api.openai.com/v1",
    LLMProvider.ANTHROPIC: "https://api.anthropic.com/v1",
    LLMProvider.GEMINI: "https://generativelanguage.googleapis.com/v1beta/openai",
    LLMProvider.OLLAMA: "http://localhost:11434/v1",
}

_KEY_ENV = {
    LLMProvider.OPENAI: "OPENAI_API_KEY",
    LLMProvider.ANTHROPIC: "ANTHROPIC_API_KEY",
    LLMProvider.GEMINI: "GEMINI_API_KEY",
}


def _llm_config(config: "Settings | LLMConfig") -> "LLMConfig":
    return getattr(config, "llm", config)


def create_backend(
    config: "Settings | LLMConfig",
    *,
    runtime: Optional[LocalRuntime] = None,
    client: Any | None = None,
) -> "ChatBackend":
    """
    Build the backend selected by ``config``.

    Args:
        config: full Settings (local model settings are read from it) or just an LLMConfig
        runtime: inference runtime for the local provider
        client: pre-built OpenAI SDK client (tests, shared connection pools)

    Raises:
        APIKeyMissingError: a cloud provider without a key (config or environment)
        AdapterUnavailable: the local provider without a runtime
    """
    cfg = _llm_config(config)
    provider = cfg.provider

    if provider is LLMProvider.LOCAL:
        if runtime is None:
            raise AdapterUnavailable("local provider selected but no runtime supplied", "local")
        local = getattr(config, "local", None)
        model_id = cfg.model.strip() or getattr(local, "model_id", "") or provider.default_model
        directory = getattr(local, "directory", None)
        logger.debug("creating local backend: model=%s", model_id)
        return LocalModelBackend(runtime, model_id, directory=directory)

    api_key = cfg.resolved_key()
    if provider.requires_api_key and not api_key and client is None:
        raise APIKeyMissingError(provider.value)

    backend_config = BackendConfig(
        base_url=cfg.resolved_api(),
        # ollama ignores the key but the SDK insists on one
        api_key=api_key or provider.value,
        model=cfg.resolved_model(),
        provider=provider.value,
        timeout_s=cfg.timeout_s,
        max_retries=cfg.max_retries,
    )
    logger.debug(
        "creating %s backend: model=%s base_url=%s",
        provider.value,
        backend_config.model,
        backend_config.base_url,
    )
    return OpenAICompatibleBackend(
        backend_config, client=client, capabilities=provider.capabilities
    )


def generation_options(config: "Settings | LLMConfig") -> GenerationOptions:
    cfg = _llm_config(config)
    return GenerationOptions(
        maximum_response_tokens=cfg.max_tokens,
        temperature=cfg.temperature,
        extra=dict(cfg.extra_config or {}),
    )


def create_session(
    settings: "Settings",
    *,
    tools: Iterable[Tool] = (),
    instructions: str | None = None,
    runtime: Optional[LocalRuntime] = None,
    backend: "ChatBackend | None" = None,
) -> LanguageModelSession:
    """Session wired from settings (backend, sampling options, tool-loop limits)."""
    return LanguageModelSession(
        backend or create_backend(settings, runtime=runtime),
        tools=tools,
        instructions=instructions,
        options=generation_options(settings),
        config=SessionConfig(
            max_tool_rounds=settings.session.max_tool_rounds,
            tool_timeout_s=settings.session.tool_timeout_s,
            include_history=settings.session.include_history,
        ),
    )


__all__ = ["LLMProvider", "create_backend", "create_session", "generation_options"]
