"""
Application settings

pydantic models loaded from YAML: config.user.yaml merged with an optional
config.dev.yaml (dev wins). Provider API keys fall back to environment variables.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from anysession.config.config_files import (
    DEFAULT_DEV_CONFIG_PATH,
    DEFAULT_USER_CONFIG_EXAMPLE_PATH,
    DEFAULT_USER_CONFIG_PATH,
    deep_merge_dict,
    read_yaml_file,
    resolve_config_paths,
    to_project_path,
    write_yaml_atomic,
)
from anysession.llm.factory import LLMProvider
from anysession.utils.exceptions import ConfigurationError
from anysession.utils.logger import get_logger

logger = get_logger(__name__)

# ==================== LLM ====================


class LLMConfig(BaseModel):
    """Which provider/model to talk to and how."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    provider: LLMProvider = Field(
        default=LLMProvider.OPENAI,
        description="local / openai / anthropic / gemini / ollama",
    )

    api: str = Field(
        default="",
        validation_alias=AliasChoices("api", "base_url"),
        description="API base URL; empty means the provider default",
    )

    key: str = Field(
        default="",
        validation_alias=AliasChoices("key", "api_key"),
        description="API key; empty falls back to the provider's environment variable",
    )

    model: str = Field(
        default="",
        description="Model name; empty means the provider default",
    )

    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)

    max_tokens: Optional[int] = Field(default=None, ge=1)

    timeout_s: float = Field(default=60.0, gt=0)

    max_retries: int = Field(default=2, ge=0)

    extra_config: Dict[str, Any] = Field(
        default_factory=dict,
        description="Extra request parameters passed through to the backend",
    )

    @field_validator("provider", mode="before")
    @classmethod
    def _normalize_provider(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    def resolved_api(self) -> str:
        return self.api.strip() or self.provider.default_base_url

    def resolved_model(self) -> str:
        return self.model.strip() or self.provider.default_model

    def resolved_key(self) -> str:
        key = self.key.strip()
        if key:
            return key
        env_name = self.provider.api_key_env
        return os.getenv(env_name, "").strip() if env_name else ""


class LocalModelConfig(BaseModel):
    """Local on-device model."""

    model_config = ConfigDict(extra="ignore")

    model_id: str = Field(default="mlx-community/Llama-3.2-3B-Instruct-4bit")
    directory: Optional[str] = Field(
        default=None, description="Load weights from this directory instead of downloading"
    )


class SessionSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    max_tool_rounds: Optional[int] = Field(
        default=None, ge=0, description="None keeps calling tools until the model stops"
    )
    tool_timeout_s: Optional[float] = Field(default=None, gt=0)
    include_history: bool = True


class CleanupConfig(BaseModel):
    """Transcript cleanup service budgets."""

    model_config = ConfigDict(extra="ignore")

    min_word_count: int = Field(default=3, ge=1)
    local_context_tokens: int = Field(default=4096, ge=1)
    local_instruction_tokens: int = Field(default=200, ge=0)
    local_response_tokens: int = Field(default=800, ge=0)
    cloud_max_input_tokens: int = Field(default=30000, ge=1)
    min_response_tokens: int = Field(default=4096, ge=1)
    response_token_margin: int = Field(default=500, ge=0)
    custom_words: List[str] = Field(default_factory=list)


# ==================== Settings ====================


class Settings(BaseModel):
    """Application settings (YAML backed)."""

    llm: LLMConfig = Field(default_factory=LLMConfig)
    local: LocalModelConfig = Field(default_factory=LocalModelConfig)
    session: SessionSettings = Field(default_factory=SessionSettings)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)

    log_level: str = Field(default="INFO", description="DEBUG, INFO, WARNING, ERROR, CRITICAL")
    log_dir: str = Field(default="logs")
    log_file: str = Field(default="", description="Empty disables the file sink")
    log_rotation: str = Field(default="20 MB")
    log_retention: str = Field(default="7 days")
    log_json: bool = Field(default=False)
    log_quiet_libs: List[str] = Field(
        default_factory=lambda: ["httpx", "httpcore", "openai", "asyncio", "urllib3", "PIL"]
    )
    log_quiet_level: str = Field(default="WARNING")

    @field_validator("log_level", "log_quiet_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        level = str(value).upper()
        if level not in {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {value}")
        return level

    def ensure_directories(self) -> None:
        if self.log_file:
            to_project_path(self.log_dir).mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_dict(cls, config_data: Dict[str, Any]) -> "Settings":
        """Build from the YAML layout: upper-case section keys plus flat log_* keys."""
        sections = {
            "llm": ("LLM", "llm"),
            "local": ("Local", "LOCAL", "local"),
            "session": ("Session", "SESSION", "session"),
            "cleanup": ("Cleanup", "CLEANUP", "cleanup"),
        }
        settings_kwargs: Dict[str, Any] = {}
        for field_name, keys in sections.items():
            for key in keys:
                section = config_data.get(key)
                if section:
                    settings_kwargs[field_name] = section
                    break

        for key, value in config_data.items():
            if key.startswith("log_") and value is not None:
                settings_kwargs[key] = value

        return cls(**settings_kwargs)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        return cls.from_dict(read_yaml_file(to_project_path(path)))

    def to_yaml(self, output_path: str | Path) -> None:
        config_dict: Dict[str, Any] = {
            "LLM": self.llm.model_dump(mode="json", exclude_none=True),
            "Local": self.local.model_dump(mode="json", exclude_none=True),
            "Session": self.session.model_dump(mode="json"),
            "Cleanup": self.cleanup.model_dump(mode="json"),
            "log_level": self.log_level,
            "log_dir": self.log_dir,
            "log_file": self.log_file,
            "log_rotation": self.log_rotation,
            "log_retention": self.log_retention,
            "log_json": self.log_json,
            "log_quiet_libs": self.log_quiet_libs,
            "log_quiet_level": self.log_quiet_level,
        }

        write_yaml_atomic(output_path, config_dict)


# ==================== loading ====================


_settings_cache: Optional[Settings] = None
_settings_cache_key: Optional[tuple[str, str, int | None, int | None]] = None


def _mtime_ns(path: Path | None) -> int | None:
    if path is None:
        return None
    try:
        return path.stat().st_mtime_ns
    except FileNotFoundError:
        return None


def load_settings(
    user_config_path: str | Path = DEFAULT_USER_CONFIG_PATH,
    dev_config_path: str | Path | None = DEFAULT_DEV_CONFIG_PATH,
    use_cache: bool = True,
    *,
    apply_logging: bool = True,
) -> Settings:
    """
    Load settings (cached by file paths and modification times).

    Args:
        user_config_path: user config file (default config.user.yaml)
        dev_config_path: developer overrides (default config.dev.yaml, optional)
        use_cache: reuse the last instance while neither file has changed
        apply_logging: re-apply logging configuration from the loaded settings

    A missing or malformed user file falls back to defaults with a warning; a malformed
    dev file is ignored with a warning.
    """
    global _settings_cache, _settings_cache_key

    user_path, dev_path = resolve_config_paths(user_config_path, dev_config_path)

    cache_key = (
        str(user_path),
        str(dev_path) if dev_path is not None else "",
        _mtime_ns(user_path),
        _mtime_ns(dev_path),
    )

    if use_cache and _settings_cache is not None and _settings_cache_key == cache_key:
        logger.debug("settings cache hit: user=%s dev=%s", user_path, dev_path)
        return _settings_cache

    try:
        user_data: Dict[str, Any] = {}
        if user_path.exists():
            user_data = read_yaml_file(user_path)
        else:
            logger.warning(
                "config file not found: %s; using defaults (copy %s to start)",
                user_path,
                DEFAULT_USER_CONFIG_EXAMPLE_PATH,
            )

        dev_data: Dict[str, Any] = {}
        if dev_path is not None:
            try:
                dev_data = read_yaml_file(dev_path)
            except ConfigurationError as exc:
                logger.warning("dev config ignored: %s (%s)", dev_path, exc)

        settings_instance = Settings.from_dict(deep_merge_dict(user_data, dev_data))
    except (ConfigurationError, ValueError) as exc:
        logger.warning("failed to load settings, using defaults: %s", exc)
        settings_instance = Settings()

    settings_instance.ensure_directories()
    if apply_logging:
        from anysession.utils.logger import apply_settings as apply_logging_settings

        apply_logging_settings(settings_instance)

    if use_cache:
        _settings_cache = settings_instance
        _settings_cache_key = cache_key

    return settings_instance


def clear_settings_cache() -> None:
    global _settings_cache, _settings_cache_key
    _settings_cache = None
    _settings_cache_key = None
