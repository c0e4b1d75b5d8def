"""Shared utilities: logging and the exception taxonomy."""

from .exceptions import AnySessionError
from .logger import get_logger, log_context, logger, setup_logger

__all__ = ["AnySessionError", "get_logger", "log_context", "logger", "setup_logger"]
