from __future__ import annotations

import os

import pytest
import yaml
from pydantic import ValidationError

from anysession.config.config_files import deep_merge_dict, read_yaml_file
from anysession.config.settings import LLMConfig, Settings, load_settings
from anysession.llm.factory import LLMProvider
from anysession.utils.exceptions import ConfigurationError


def _load(path, dev=None, **kwargs):
    return load_settings(path, dev, apply_logging=False, **kwargs)


def test_settings_from_yaml(sample_config_yaml):
    settings = _load(sample_config_yaml)

    assert settings.llm.provider is LLMProvider.OPENAI
    assert settings.llm.resolved_model() == "test-model"
    assert settings.llm.resolved_api() == "https://api.test.com/v1"
    assert settings.session.max_tool_rounds == 4
    assert settings.session.tool_timeout_s == 5
    assert settings.cleanup.custom_words == ["Obsidian"]
    assert settings.log_level == "DEBUG"


def test_llm_config_aliases_and_provider_case():
    cfg = LLMConfig.model_validate(
        {"provider": " Gemini ", "base_url": "https://proxy/v1", "api_key": "k"}
    )

    assert cfg.provider is LLMProvider.GEMINI
    assert cfg.api == "https://proxy/v1"
    assert cfg.key == "k"


def test_unknown_provider_is_rejected():
    with pytest.raises(ValidationError):
        LLMConfig(provider="mystery")


def test_key_falls_back_to_environment(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", " env-key ")

    assert LLMConfig().resolved_key() == "env-key"
    assert LLMConfig(key="explicit").resolved_key() == "explicit"
    assert LLMConfig(provider="ollama").resolved_key() == ""


def test_dev_config_overrides_user(temp_dir, sample_config_yaml):
    dev_path = temp_dir / "config.dev.yaml"
    dev_path.write_text(
        yaml.safe_dump({"LLM": {"model": "dev-model"}, "log_level": "warning"}), encoding="utf-8"
    )

    settings = _load(sample_config_yaml, dev_path)

    assert settings.llm.model == "dev-model"
    assert settings.llm.key == "test-api-key"
    assert settings.log_level == "WARNING"


def test_missing_file_uses_defaults(temp_dir):
    settings = _load(temp_dir / "nope.yaml")

    assert settings == Settings()
    assert settings.llm.resolved_model() == "gpt-4o"


def test_malformed_yaml_uses_defaults(temp_dir):
    path = temp_dir / "config.user.yaml"
    path.write_text("LLM: [unclosed", encoding="utf-8")

    assert _load(path) == Settings()


def test_invalid_values_use_defaults(temp_dir):
    path = temp_dir / "config.user.yaml"
    path.write_text(yaml.safe_dump({"LLM": {"temperature": 9}}), encoding="utf-8")

    assert _load(path).llm.temperature is None


def test_malformed_dev_config_is_ignored(temp_dir, sample_config_yaml):
    dev_path = temp_dir / "config.dev.yaml"
    dev_path.write_text("- just\n- a list\n", encoding="utf-8")

    assert _load(sample_config_yaml, dev_path).llm.model == "test-model"


def test_cache_follows_file_changes(sample_config_yaml):
    first = _load(sample_config_yaml)
    assert _load(sample_config_yaml) is first

    data = yaml.safe_load(sample_config_yaml.read_text(encoding="utf-8"))
    data["LLM"]["model"] = "changed"
    sample_config_yaml.write_text(yaml.safe_dump(data), encoding="utf-8")
    stat = sample_config_yaml.stat()
    os.utime(sample_config_yaml, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))

    second = _load(sample_config_yaml)
    assert second is not first
    assert second.llm.model == "changed"
    assert _load(sample_config_yaml, use_cache=False) is not second


def test_to_yaml_round_trip(temp_dir, sample_config_dict):
    settings = Settings.from_dict(sample_config_dict)
    out = temp_dir / "saved.yaml"

    settings.to_yaml(out)

    assert Settings.from_yaml(out) == settings
    assert "LLM" in yaml.safe_load(out.read_text(encoding="utf-8"))


def test_deep_merge_does_not_mutate():
    base = {"a": {"x": 1, "y": 2}, "b": 1}
    override = {"a": {"y": 3}, "c": 4}

    merged = deep_merge_dict(base, override)

    assert merged == {"a": {"x": 1, "y": 3}, "b": 1, "c": 4}
    assert base == {"a": {"x": 1, "y": 2}, "b": 1}


def test_read_yaml_requires_mapping(temp_dir):
    path = temp_dir / "list.yaml"
    path.write_text("- 1\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        read_yaml_file(path)
