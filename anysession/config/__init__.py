"""Settings loaded from config.user.yaml / config.dev.yaml."""

from .settings import (
    CleanupConfig,
    LLMConfig,
    LocalModelConfig,
    SessionSettings,
    Settings,
    clear_settings_cache,
    load_settings,
)

__all__ = [
    "CleanupConfig",
    "LLMConfig",
    "LocalModelConfig",
    "SessionSettings",
    "Settings",
    "clear_settings_cache",
    "load_settings",
]
