"""
Logging utilities

Goals:
- stderr console sink plus optional rotating file / JSON sinks
- standard-library logging (openai, httpx) routed into loguru so output is uniform
- contextual fields (session_id, round, ...) bound per task through a ContextVar
- `%s` style call sites keep working on top of loguru's `{}` formatting
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Dict, List, Optional

from loguru import logger as loguru_logger

DEFAULT_LEVEL = os.getenv("ANYSESSION_LOG_LEVEL", "INFO")
DEFAULT_LOG_DIR = Path(os.getenv("ANYSESSION_LOG_DIR", "logs"))
DEFAULT_LOG_FILE = os.getenv("ANYSESSION_LOG_FILE", "")
DEFAULT_JSON_FILE = os.getenv("ANYSESSION_JSON_LOG_FILE", "anysession.jsonl")
DEFAULT_ROTATION = os.getenv("ANYSESSION_LOG_ROTATION", "20 MB")
DEFAULT_RETENTION = os.getenv("ANYSESSION_LOG_RETENTION", "7 days")
DEFAULT_QUIET_LIBS = ["httpx", "httpcore", "openai", "asyncio", "urllib3", "PIL"]
DEFAULT_QUIET_LEVEL = os.getenv("ANYSESSION_LOG_QUIET_LEVEL", "WARNING")

_ORIG_STDERR: IO[str] = sys.stderr

LOG_CONTEXT: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})
_loguru_base = None
_current_config: "LoggerConfig" | None = None


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() not in {"0", "false", "no", "off"}


@dataclass
class LoggerConfig:
    """Logging configuration container."""

    level: str = DEFAULT_LEVEL
    log_dir: Path = DEFAULT_LOG_DIR
    # Empty file name disables the file sinks.
    log_file: str = DEFAULT_LOG_FILE
    json_file: str = DEFAULT_JSON_FILE
    rotation: str = DEFAULT_ROTATION
    retention: str = DEFAULT_RETENTION
    enable_json: bool = _env_flag("ANYSESSION_LOG_JSON", False)
    colorize: bool = _env_flag("ANYSESSION_LOG_COLOR", True)
    enqueue: bool = _env_flag("ANYSESSION_LOG_ENQUEUE", False)
    backtrace: bool = False
    diagnose: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)
    quiet_libs: List[str] = field(default_factory=lambda: list(DEFAULT_QUIET_LIBS))
    quiet_level: str = DEFAULT_QUIET_LEVEL

    def normalized_level(self) -> str:
        return str(self.level).upper()


class _LegacyLoggerAdapter:
    """Accept standard logging `%s` arguments and `exc_info` on top of loguru."""

    __slots__ = ("_logger",)

    def __init__(self, logger):
        self._logger = logger

    @staticmethod
    def _format_message(message: Any, args: tuple[Any, ...]) -> str:
        if not args:
            return str(message)
        try:
            return str(message) % args
        except (TypeError, ValueError):
            joined = " ".join(str(arg) for arg in args)
            return f"{message} {joined}"

    def _log(self, level_name: str, message: Any, *args: Any, **kwargs: Any) -> None:
        exc_info = kwargs.pop("exc_info", None)
        extra = kwargs.pop("extra", None)
        target = self._logger.opt(depth=2, exception=exc_info or None)
        if isinstance(extra, dict) and extra:
            target = target.bind(**extra)
        target.log(level_name, self._format_message(message, args))

    def bind(self, **kwargs: Any) -> "_LegacyLoggerAdapter":
        return _LegacyLoggerAdapter(self._logger.bind(**kwargs))

    def debug(self, message: Any, *args: Any, **kwargs: Any) -> None:
        self._log("DEBUG", message, *args, **kwargs)

    def info(self, message: Any, *args: Any, **kwargs: Any) -> None:
        self._log("INFO", message, *args, **kwargs)

    def warning(self, message: Any, *args: Any, **kwargs: Any) -> None:
        self._log("WARNING", message, *args, **kwargs)

    def error(self, message: Any, *args: Any, **kwargs: Any) -> None:
        self._log("ERROR", message, *args, **kwargs)

    def exception(self, message: Any, *args: Any, **kwargs: Any) -> None:
        kwargs.setdefault("exc_info", True)
        self._log("ERROR", message, *args, **kwargs)

    def critical(self, message: Any, *args: Any, **kwargs: Any) -> None:
        self._log("CRITICAL", message, *args, **kwargs)


class _InterceptHandler(logging.Handler):
    """Route standard logging records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = loguru_logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 0
        while frame:
            filename = frame.f_code.co_filename
            is_logging = filename == logging.__file__
            is_frozen = "importlib" in filename and "_bootstrap" in filename
            if depth > 0 and not (is_logging or is_frozen):
                break
            frame = frame.f_back
            depth += 1

        target = _loguru_base or loguru_logger
        target.bind(logger_name=record.name).opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def _format_context(context: Dict[str, Any]) -> str:
    if not context:
        return ""
    return " ".join(f"{k}={v}" for k, v in context.items())


def _inject_context(record: Dict[str, Any]) -> None:
    context = LOG_CONTEXT.get({})
    extra = record["extra"]
    merged = {**context, **(extra.get("context") or {})}
    extra["context"] = merged
    extra["context_str"] = _format_context(merged)
    extra.setdefault("logger_name", record.get("name") or "anysession")


def _merge_config(config: Optional[LoggerConfig], overrides: Dict[str, Any]) -> LoggerConfig:
    base = config or _current_config or LoggerConfig()
    merged = {**base.__dict__, **{k: v for k, v in overrides.items() if v is not None}}
    merged["log_dir"] = Path(merged["log_dir"])
    merged["level"] = str(merged["level"]).upper()
    merged["quiet_level"] = str(merged.get("quiet_level", DEFAULT_QUIET_LEVEL)).upper()
    return LoggerConfig(**merged)


def setup_logger(config: Optional[LoggerConfig] = None, **overrides: Any) -> _LegacyLoggerAdapter:
    """Initialise or reset logging; safe to call repeatedly with new settings."""
    global _loguru_base, _current_config

    cfg = _merge_config(config, overrides)
    _current_config = cfg

    loguru_logger.remove()
    loguru_logger.configure(patcher=_inject_context)
    _loguru_base = loguru_logger.bind(app="anysession", **cfg.extra)

    _loguru_base.add(
        _ORIG_STDERR,
        level=cfg.normalized_level(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[logger_name]}</cyan> | "
            "<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level> {extra[context_str]}"
        ),
        colorize=cfg.colorize,
        enqueue=cfg.enqueue,
        backtrace=cfg.backtrace,
        diagnose=cfg.diagnose,
    )

    if cfg.log_file:
        cfg.log_dir.mkdir(parents=True, exist_ok=True)
        _loguru_base.add(
            cfg.log_dir / cfg.log_file,
            level=cfg.normalized_level(),
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
                "{extra[logger_name]} | {function}:{line} | {message} {extra[context_str]}"
            ),
            rotation=cfg.rotation,
            retention=cfg.retention,
            encoding="utf-8",
            enqueue=cfg.enqueue,
        )
        if cfg.enable_json:
            _loguru_base.add(
                cfg.log_dir / cfg.json_file,
                level=cfg.normalized_level(),
                rotation=cfg.rotation,
                retention=cfg.retention,
                encoding="utf-8",
                enqueue=cfg.enqueue,
                serialize=True,
            )

    logging.basicConfig(
        handlers=[_InterceptHandler()],
        level=getattr(logging, cfg.normalized_level(), logging.INFO),
        force=True,
    )
    set_library_log_levels({name: cfg.quiet_level for name in cfg.quiet_libs})
    return _LegacyLoggerAdapter(_loguru_base.bind(logger_name="anysession"))


def apply_settings(settings: Any) -> None:
    """Re-apply logging configuration from a Settings instance."""
    quiet_libs = getattr(settings, "log_quiet_libs", None)
    if not isinstance(quiet_libs, list) or not quiet_libs:
        quiet_libs = DEFAULT_QUIET_LIBS
    setup_logger(
        level=getattr(settings, "log_level", DEFAULT_LEVEL),
        log_dir=Path(getattr(settings, "log_dir", DEFAULT_LOG_DIR)),
        log_file=getattr(settings, "log_file", DEFAULT_LOG_FILE),
        rotation=getattr(settings, "log_rotation", DEFAULT_ROTATION),
        retention=getattr(settings, "log_retention", DEFAULT_RETENTION),
        enable_json=getattr(settings, "log_json", False),
        quiet_libs=quiet_libs,
        quiet_level=getattr(settings, "log_quiet_level", DEFAULT_QUIET_LEVEL),
    )


def set_library_log_levels(level_map: Dict[str, str], default_level: Optional[str] = None) -> None:
    """
    Set third-party logger levels in bulk.

    Args:
        level_map: logger name -> level
        default_level: root level for everything else (optional)
    """
    for name, level in level_map.items():
        logging.getLogger(name).setLevel(level)
    if default_level:
        logging.getLogger().setLevel(default_level)


def bind_context(**kwargs: Any) -> None:
    """Bind fields for the current task and everything it spawns."""
    current = LOG_CONTEXT.get({})
    updated = current.copy()
    updated.update(kwargs)
    LOG_CONTEXT.set(updated)


@contextmanager
def log_context(**kwargs: Any):
    """Context manager form of bind_context."""
    token = LOG_CONTEXT.set({**LOG_CONTEXT.get({}), **kwargs})
    try:
        yield
    finally:
        LOG_CONTEXT.reset(token)


def get_logger(name: str) -> _LegacyLoggerAdapter:
    """Module logger carrying its name in every record."""
    base = _loguru_base if _loguru_base is not None else loguru_logger
    return _LegacyLoggerAdapter(base.bind(logger_name=name))


# Default setup so early imports already have a console sink.
logger = setup_logger()
