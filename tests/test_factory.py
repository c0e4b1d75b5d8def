from __future__ import annotations

from types import SimpleNamespace

import pytest

from anysession.config.settings import LLMConfig, Settings
from anysession.llm.factory import (
    LLMProvider,
    create_backend,
    create_session,
    generation_options,
)
from anysession.llm_native.local_backend import LocalModelBackend
from anysession.llm_native.openai_backend import OpenAICompatibleBackend
from anysession.llm_native.session import LanguageModelSession
from anysession.llm_native.transcript import Instructions
from anysession.utils.exceptions import AdapterUnavailable, APIKeyMissingError


class DummyClient:
    def __init__(self) -> None:
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=None))

    async def close(self) -> None:
        return None


class DummyRuntime:
    supports_images = False

    async def load(self, model_id, directory=None):
        return model_id

    async def generate(self, model, messages, *, tools, parameters):
        if False:
            yield None


def test_provider_catalog():
    assert LLMProvider.OPENAI.default_model == "gpt-4o"
    assert LLMProvider.GEMINI.available_models[0] == "gemini-2.0-flash"
    assert LLMProvider.OLLAMA.default_base_url == "http://localhost:11434/v1"
    assert LLMProvider.ANTHROPIC.display_name == "Claude (Anthropic)"

    assert LLMProvider.OPENAI.requires_api_key
    assert not LLMProvider.OLLAMA.requires_api_key
    assert not LLMProvider.LOCAL.requires_api_key
    assert LLMProvider.GEMINI.api_key_env == "GEMINI_API_KEY"
    assert LLMProvider.LOCAL.api_key_env is None


def test_provider_capabilities():
    assert LLMProvider.OPENAI.capabilities.structured_output
    assert LLMProvider.OPENAI.capabilities.images
    assert not LLMProvider.ANTHROPIC.capabilities.structured_output
    assert not LLMProvider.OLLAMA.capabilities.images
    assert not LLMProvider.LOCAL.capabilities.structured_output


def test_create_openai_backend_from_settings(sample_config_dict):
    settings = Settings.from_dict(sample_config_dict)

    backend = create_backend(settings)

    assert isinstance(backend, OpenAICompatibleBackend)
    assert backend.name == "openai:test-model"
    assert backend.config.base_url == "https://api.test.com/v1"
    assert backend.config.api_key == "test-api-key"
    assert backend.capabilities.structured_output


def test_provider_defaults_fill_empty_fields(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "env-key")

    backend = create_backend(LLMConfig(provider="gemini"), client=DummyClient())

    assert backend.config.model == "gemini-2.0-flash"
    assert backend.config.base_url == LLMProvider.GEMINI.default_base_url
    assert backend.config.api_key == "env-key"


def test_missing_api_key_is_rejected(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)

    with pytest.raises(APIKeyMissingError) as excinfo:
        create_backend(LLMConfig(provider="anthropic"))

    assert excinfo.value.provider == "anthropic"
    assert excinfo.value.error_code == "CONFIG_ERROR"


def test_ollama_needs_no_key():
    backend = create_backend(LLMConfig(provider="ollama"), client=DummyClient())

    assert backend.name == "ollama:llama3.2"
    assert backend.config.api_key == "ollama"
    assert not backend.capabilities.images


def test_anthropic_backend_has_no_structured_output():
    backend = create_backend(
        LLMConfig(provider="anthropic", key="sk-ant"), client=DummyClient()
    )

    assert backend.capabilities.structured_output is False
    assert backend.name == "anthropic:claude-sonnet-4-5-20250929"


def test_local_backend_requires_runtime():
    with pytest.raises(AdapterUnavailable):
        create_backend(LLMConfig(provider="local"))


def test_local_backend_uses_local_section():
    settings = Settings.from_dict(
        {"LLM": {"provider": "local"}, "Local": {"model_id": "tiny-model", "directory": "/m"}}
    )

    backend = create_backend(settings, runtime=DummyRuntime())

    assert isinstance(backend, LocalModelBackend)
    assert backend.model_id == "tiny-model"
    assert str(backend.directory) == "/m"


def test_generation_options_from_config():
    cfg = LLMConfig(temperature=0.3, max_tokens=64, extra_config={"user": "abc"})

    options = generation_options(cfg)

    assert options.temperature == 0.3
    assert options.maximum_response_tokens == 64
    assert dict(options.extra) == {"user": "abc"}


def test_create_session_wires_settings(sample_config_dict):
    settings = Settings.from_dict(sample_config_dict)

    session = create_session(settings, instructions="Be brief.", backend=create_backend(settings))

    assert isinstance(session, LanguageModelSession)
    assert session.options.temperature == 0.7
    assert session.options.maximum_response_tokens == 2000
    assert session.config.max_tool_rounds == 4
    assert session.config.tool_timeout_s == 5
    assert isinstance(session.transcript[0], Instructions)
