"""
Session orchestration core.

Contents:
- GenerationSchema / GeneratedContent (declared output shapes and dynamic structured values)
- Transcript with typed entries and segments (text / structured / image)
- Tool / FunctionTool / ToolRegistry (tool schemas and execution)
- ChatBackend protocol plus the OpenAI-compatible and local adapters
- ToolRunner / ToolLoopRunner (sequential tool execution and the generate/tool loop)
- LanguageModelSession (owns the transcript; respond / stream_response)

The interfaces here do not depend on any provider's types; adapters translate at the edge.
"""

from .agent_runner import AgentRunnerConfig, ToolLoopRunner, TurnResult
from .backend import (
    BackendCapabilities,
    BackendConfig,
    ChatBackend,
    ChatRequest,
    GenerationOptions,
)
from .content import ContentKind, GeneratedContent, extract_json_text
from .events import (
    DoneEvent,
    InfoEvent,
    StreamEvent,
    TextDeltaEvent,
    ToolCallAccumulator,
    ToolCallDeltaEvent,
    ToolCallEvent,
    ToolResultEvent,
    TurnCompletedEvent,
)
from .messages import AssistantToolCall, Message, Role, message_from_segments
from .schema import GenerationSchema, SchemaKind, SchemaProperty
from .session import LanguageModelSession, ResponseSnapshot, SessionConfig, SessionResponse
from .tool_runner import ToolRunner, parse_tool_arguments
from .tools import FunctionTool, Tool, ToolRegistry, ToolSpec, tool
from .transcript import (
    Entry,
    ImageSegment,
    Instructions,
    Prompt,
    Response,
    Segment,
    StructuredSegment,
    TextSegment,
    ToolCall,
    ToolCalls,
    ToolDefinition,
    ToolOutput,
    Transcript,
)

__all__ = [
    "AgentRunnerConfig",
    "AssistantToolCall",
    "BackendCapabilities",
    "BackendConfig",
    "ChatBackend",
    "ChatRequest",
    "ContentKind",
    "DoneEvent",
    "Entry",
    "FunctionTool",
    "GeneratedContent",
    "GenerationOptions",
    "GenerationSchema",
    "ImageSegment",
    "InfoEvent",
    "Instructions",
    "LanguageModelSession",
    "Message",
    "Prompt",
    "Response",
    "ResponseSnapshot",
    "Role",
    "SchemaKind",
    "SchemaProperty",
    "Segment",
    "SessionConfig",
    "SessionResponse",
    "StreamEvent",
    "StructuredSegment",
    "TextDeltaEvent",
    "TextSegment",
    "Tool",
    "ToolCall",
    "ToolCallAccumulator",
    "ToolCallDeltaEvent",
    "ToolCallEvent",
    "ToolCalls",
    "ToolDefinition",
    "ToolLoopRunner",
    "ToolOutput",
    "ToolRegistry",
    "ToolResultEvent",
    "ToolRunner",
    "ToolSpec",
    "Transcript",
    "TurnCompletedEvent",
    "TurnResult",
    "extract_json_text",
    "message_from_segments",
    "parse_tool_arguments",
    "tool",
]
