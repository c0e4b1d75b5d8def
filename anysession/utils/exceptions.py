"""
anysession custom exceptions

One base class carries an error code and a context mapping so callers can tell a
backend problem from a tool bug from malformed model output without string matching.
"""

from typing import Any, Dict, Optional


class AnySessionError(Exception):
    """Base exception for the package."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        """
        Args:
            message: human readable message
            error_code: stable machine readable code
            context: extra diagnostic fields
        """
        self.message = message
        self.error_code = error_code or "UNKNOWN_ERROR"
        self.context = context or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        error_str = f"[{self.error_code}] {self.message}"
        if self.context:
            error_str += f" | Context: {self.context}"
        return error_str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "type": self.__class__.__name__,
        }


class ConfigurationError(AnySessionError):
    """Invalid or missing configuration."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIG_ERROR", context)


# ==================== schema / structured values ====================


class SchemaError(AnySessionError):
    """A schema definition is invalid (duplicate field names, bad shape)."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SCHEMA_ERROR", context)


class SchemaReferenceError(SchemaError):
    """A schema references a definition that does not exist."""

    def __init__(self, reference: str, available: Optional[list[str]] = None):
        self.reference = reference
        super().__init__(
            f"Unresolved schema reference: {reference}",
            {"reference": reference, "available": sorted(available or [])},
        )


class ParseError(AnySessionError):
    """Raw model output could not be parsed as JSON."""

    def __init__(self, position: int, reason: str, context: Optional[Dict[str, Any]] = None):
        self.position = position
        self.reason = reason
        ctx = dict(context or {})
        ctx["position"] = position
        super().__init__(f"Malformed JSON at position {position}: {reason}", "PARSE_ERROR", ctx)


class SchemaMismatch(AnySessionError):
    """A decoded value does not have the kind its schema declares."""

    def __init__(self, field_path: str, expected_kind: str, actual_kind: str):
        self.field_path = field_path
        self.expected_kind = expected_kind
        self.actual_kind = actual_kind
        super().__init__(
            f"Expected {expected_kind} at {field_path}, got {actual_kind}",
            "SCHEMA_MISMATCH",
            {"field_path": field_path, "expected": expected_kind, "actual": actual_kind},
        )


class MissingField(AnySessionError):
    """A required object field is absent."""

    def __init__(self, field_path: str):
        self.field_path = field_path
        super().__init__(
            f"Missing required field: {field_path}",
            "MISSING_FIELD",
            {"field_path": field_path},
        )


# ==================== tools ====================


class ToolNotFound(AnySessionError):
    """No tool is registered under the requested name."""

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Tool not found: {tool_name}", "TOOL_NOT_FOUND", {"tool": tool_name})


class ToolExecutionError(AnySessionError):
    """A tool failed while executing; the underlying error is kept as ``cause``."""

    def __init__(self, tool_name: str, cause: BaseException, call_id: Optional[str] = None):
        self.tool_name = tool_name
        self.call_id = call_id
        self.cause = cause
        ctx: Dict[str, Any] = {"tool": tool_name, "cause": type(cause).__name__}
        if call_id:
            ctx["call_id"] = call_id
        super().__init__(f"Tool '{tool_name}' failed: {cause}", "TOOL_EXECUTION_ERROR", ctx)


class ToolLoopLimitError(AnySessionError):
    """The model kept requesting tools past the configured round limit."""

    def __init__(self, max_rounds: int):
        self.max_rounds = max_rounds
        super().__init__(
            "tool loop exceeded max_tool_rounds",
            "TOOL_LOOP_LIMIT",
            {"max_tool_rounds": max_rounds},
        )


# ==================== backends ====================


class AdapterUnavailable(AnySessionError):
    """A backend cannot be reached or its model cannot be loaded."""

    def __init__(
        self,
        message: str,
        backend: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = dict(context or {})
        if backend:
            ctx["backend"] = backend
        super().__init__(message, "ADAPTER_UNAVAILABLE", ctx)


class BackendFailure(AnySessionError):
    """A backend call failed after it was accepted."""

    def __init__(
        self,
        message: str,
        backend: Optional[str] = None,
        status_code: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = dict(context or {})
        if backend:
            ctx["backend"] = backend
        if status_code:
            ctx["status_code"] = status_code
        super().__init__(message, "BACKEND_FAILURE", ctx)


class UnsupportedOutputType(AnySessionError):
    """The active backend cannot produce the requested output type."""

    def __init__(self, backend: str, requested: str):
        self.backend = backend
        self.requested = requested
        super().__init__(
            f"{backend} only supports generating str content (requested {requested})",
            "UNSUPPORTED_OUTPUT_TYPE",
            {"backend": backend, "requested": requested},
        )


class ConcurrentRequestError(AnySessionError):
    """A session was asked to respond while it is already responding."""

    def __init__(self, message: str = "session is already responding"):
        super().__init__(message, "CONCURRENT_REQUEST")


# ==================== transcript cleanup service ====================


class APIKeyMissingError(ConfigurationError):
    """A cloud provider was selected without an API key."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"API key is missing for provider: {provider}", {"provider": provider})


class TranscriptTooShortError(AnySessionError):
    def __init__(self, word_count: int, minimum: int):
        super().__init__(
            "Transcript is too short to process",
            "TRANSCRIPT_TOO_SHORT",
            {"word_count": word_count, "minimum": minimum},
        )


class TranscriptTooLongError(AnySessionError):
    def __init__(self, max_characters: int, length: int):
        self.max_characters = max_characters
        super().__init__(
            f"Transcript is too long ({length} chars, max {max_characters})",
            "TRANSCRIPT_TOO_LONG",
            {"max_characters": max_characters, "length": length},
        )


class ResponseParsingError(AnySessionError):
    """The model response could not be turned into a cleanup result."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, "RESPONSE_PARSING_FAILED", context)


class LLMRequestError(AnySessionError):
    """Catch-all for failures outside the package's own taxonomy."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, "LLM_REQUEST_FAILED", context)
