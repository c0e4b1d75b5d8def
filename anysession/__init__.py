"""
anysession: one session API over cloud and local language models.

A LanguageModelSession keeps a typed transcript, calls tools the model asks for and can
return structured output described by a GenerationSchema or a pydantic model.
"""

from .llm_native import (
    FunctionTool,
    GeneratedContent,
    GenerationOptions,
    GenerationSchema,
    LanguageModelSession,
    Tool,
    ToolRegistry,
    Transcript,
    tool,
)
from .utils.exceptions import AnySessionError
from .version import __version__

__all__ = [
    "AnySessionError",
    "FunctionTool",
    "GeneratedContent",
    "GenerationOptions",
    "GenerationSchema",
    "LanguageModelSession",
    "Tool",
    "ToolRegistry",
    "Transcript",
    "__version__",
    "tool",
]
