from __future__ import annotations

import asyncio
import collections.abc
import inspect
import types
import typing
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Sequence, get_args, get_origin

from pydantic import BaseModel

from anysession.utils.exceptions import SchemaError, ToolNotFound
from anysession.utils.logger import get_logger

from .content import GeneratedContent
from .schema import GenerationSchema, SchemaKind, SchemaProperty
from .transcript import (
    ImageSegment,
    Segment,
    StructuredSegment,
    TextSegment,
    ToolDefinition,
)

logger = get_logger(__name__)

_SEGMENT_TYPES = (TextSegment, StructuredSegment, ImageSegment)


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """Tool schema definition for OpenAI-compatible tool calling."""

    name: str
    description: str
    parameters: dict[str, Any]
    strict: bool | None = None

    def to_openai(self) -> dict[str, Any]:
        func: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }
        if self.strict is not None:
            func["strict"] = bool(self.strict)
        return {
            "type": "function",
            "function": func,
        }


class Tool(ABC):
    """
    A named capability the model may call.

    Subclasses set ``name``, ``description`` and ``parameters`` (an object schema) and
    implement ``call``, which receives the decoded-from-JSON arguments and returns output
    segments. Failures propagate; the tool loop wraps them as ToolExecutionError.
    """

    name: str = ""
    description: str = ""
    parameters: GenerationSchema = GenerationSchema.object(None, [])

    @abstractmethod
    async def call(self, arguments: GeneratedContent) -> Sequence[Segment]:
        raise NotImplementedError

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name, description=self.description, parameters=self.parameters
        )

    def to_spec(self, *, strict: bool | None = None) -> ToolSpec:
        return ToolSpec(
            name=self.name,
            description=self.description,
            parameters=self.parameters.to_json_schema(),
            strict=strict,
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


def tool_output_segments(result: Any) -> tuple[Segment, ...]:
    """Normalize whatever a tool function returned into transcript segments."""
    if result is None:
        return ()
    if isinstance(result, str):
        return (TextSegment(content=result),)
    if isinstance(result, _SEGMENT_TYPES):
        return (result,)
    if isinstance(result, GeneratedContent):
        return (StructuredSegment(content=result),)
    if isinstance(result, BaseModel):
        return (
            StructuredSegment(
                content=GeneratedContent(result),
                schema=GenerationSchema.from_pydantic(type(result)),
            ),
        )
    if isinstance(result, (list, tuple)) and result and all(
        isinstance(item, _SEGMENT_TYPES) for item in result
    ):
        return tuple(result)
    return (StructuredSegment(content=GeneratedContent(result)),)


# ---------------------------------------------------------------------------
# Signature -> schema
# ---------------------------------------------------------------------------
def _is_optional_annotation(annotation: Any) -> bool:
    if annotation is inspect.Signature.empty:
        return False
    origin = get_origin(annotation)
    if origin in (types.UnionType, typing.Union):
        return type(None) in get_args(annotation)
    return False


def _model_schema(model: type[BaseModel]) -> GenerationSchema:
    schema = GenerationSchema.from_pydantic(model).resolve_references()
    if schema.definitions:
        raise SchemaError(
            f"recursive model {model.__name__} cannot be a tool parameter",
            {"model": model.__name__},
        )
    return schema


def _annotation_to_schema(annotation: Any) -> tuple[GenerationSchema, str | None]:
    """Map a parameter annotation to (schema, description)."""
    if annotation is inspect.Signature.empty:
        return GenerationSchema.string(), None

    origin = get_origin(annotation)
    if origin is typing.Annotated:
        inner, *extras = get_args(annotation)
        schema, description = _annotation_to_schema(inner)
        text = next((e for e in extras if isinstance(e, str)), None)
        return schema, text or description

    if origin in (types.UnionType, typing.Union):
        args = [a for a in get_args(annotation) if a is not type(None)]  # noqa: E721
        if len(args) == 1:
            return _annotation_to_schema(args[0])
        return GenerationSchema.string(), None

    if origin is typing.Literal:
        return GenerationSchema.string(choices=[str(a) for a in get_args(annotation)]), None

    if isinstance(annotation, type):
        if issubclass(annotation, Enum):
            return GenerationSchema.string(choices=[str(m.value) for m in annotation]), None
        if issubclass(annotation, BaseModel):
            return _model_schema(annotation), None
        if annotation is bool:
            return GenerationSchema.boolean(), None
        if annotation is int:
            return GenerationSchema.integer(), None
        if annotation is float:
            return GenerationSchema.number(), None
        if annotation is str:
            return GenerationSchema.string(), None

    if origin in (list, tuple, collections.abc.Sequence):
        item = get_args(annotation)[0] if get_args(annotation) else str
        item_schema, _ = _annotation_to_schema(item)
        return GenerationSchema.array(item_schema), None

    return GenerationSchema.string(), None


def _model_arguments(annotation: Any) -> type[BaseModel] | None:
    origin = get_origin(annotation)
    if origin is typing.Annotated:
        return _model_arguments(get_args(annotation)[0])
    if origin in (types.UnionType, typing.Union):
        args = [a for a in get_args(annotation) if a is not type(None)]  # noqa: E721
        return _model_arguments(args[0]) if len(args) == 1 else None
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return annotation
    return None


class FunctionTool(Tool):
    """Tool backed by a plain (sync or async) function; the schema comes from its signature."""

    def __init__(
        self,
        func: Callable[..., Any],
        *,
        name: str | None = None,
        description: str | None = None,
        parameters: GenerationSchema | type[BaseModel] | None = None,
    ) -> None:
        self.func = func
        self.name = str(name or getattr(func, "__name__", "") or "").strip()
        if not self.name:
            raise ValueError("tool name is required")
        self.description = str(description or inspect.getdoc(func) or "").strip()

        target = inspect.unwrap(func)
        self._is_async = inspect.iscoroutinefunction(target)
        self._models: dict[str, type[BaseModel]] = {}
        self._whole_model: type[BaseModel] | None = None

        signature = inspect.signature(target, eval_str=True)
        params = [
            p
            for p in signature.parameters.values()
            if p.kind not in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD)
            and p.name not in ("self", "cls")
        ]

        if isinstance(parameters, type) and issubclass(parameters, BaseModel):
            self._whole_model = parameters
            self.parameters = _model_schema(parameters)
        elif isinstance(parameters, GenerationSchema):
            parameters.resolve_references()
            self.parameters = parameters
        elif len(params) == 1 and _model_arguments(params[0].annotation) is not None:
            # f(args: SomeModel): the model's fields are the tool's parameters
            self._whole_model = _model_arguments(params[0].annotation)
            self.parameters = _model_schema(self._whole_model)  # type: ignore[arg-type]
        else:
            self.parameters = self._signature_schema(params)

        if self.parameters.kind != SchemaKind.OBJECT:
            raise SchemaError(f"tool {self.name} parameters must be an object schema")

    def _signature_schema(self, params: Sequence[inspect.Parameter]) -> GenerationSchema:
        properties: list[SchemaProperty] = []
        for param in params:
            schema, description = _annotation_to_schema(param.annotation)
            model = _model_arguments(param.annotation)
            if model is not None:
                self._models[param.name] = model
            optional = param.default is not inspect.Signature.empty or _is_optional_annotation(
                param.annotation
            )
            properties.append(
                SchemaProperty(
                    name=param.name, schema=schema, description=description, optional=optional
                )
            )
        return GenerationSchema.object(self.name, properties)

    async def call(self, arguments: GeneratedContent) -> Sequence[Segment]:
        data = arguments.decode(self.parameters)
        if self._whole_model is not None:
            args: tuple[Any, ...] = (self._whole_model.model_validate(data),)
            kwargs: dict[str, Any] = {}
        else:
            args = ()
            kwargs = {
                key: self._models[key].model_validate(value)
                if key in self._models and value is not None
                else value
                for key, value in data.items()
            }

        if self._is_async:
            result = await self.func(*args, **kwargs)
        else:
            result = await asyncio.to_thread(self.func, *args, **kwargs)
        return tool_output_segments(result)


def tool(
    func: Callable[..., Any] | None = None,
    *,
    name: str | None = None,
    description: str | None = None,
    parameters: GenerationSchema | type[BaseModel] | None = None,
) -> Any:
    """Turn a function into a FunctionTool.

    Usable bare (``@tool``) or with overrides (``@tool(name=..., description=...)``).
    The description defaults to the docstring.
    """

    def decorator(inner: Callable[..., Any]) -> FunctionTool:
        return FunctionTool(inner, name=name, description=description, parameters=parameters)

    if func is None:
        return decorator
    return decorator(func)


class ToolRegistry:
    """Name -> Tool mapping for one session; read-only once the session is built."""

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {}
        for item in tools:
            self.register(item)

    def register(self, tool: Tool) -> bool:
        """
        Add a tool. The first registration of a name wins; later ones are ignored.

        Raises SchemaReferenceError when the parameter schema names an unknown definition.
        """
        if not tool.name:
            raise ValueError("tool.name is required")
        if tool.name in self._tools:
            logger.warning("duplicate tool ignored (first registration wins): %s", tool.name)
            return False
        tool.parameters.resolve_references()
        self._tools[tool.name] = tool
        return True

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def require(self, name: str) -> Tool:
        found = self._tools.get(name)
        if found is None:
            raise ToolNotFound(name)
        return found

    def tools(self) -> list[Tool]:
        return list(self._tools.values())

    def specs(self) -> list[ToolSpec]:
        return [t.to_spec() for t in self._tools.values()]

    def definitions(self) -> tuple[ToolDefinition, ...]:
        return tuple(t.definition for t in self._tools.values())

    def to_openai(self) -> list[dict[str, Any]]:
        return [spec.to_openai() for spec in self.specs()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self):
        return iter(self.tools())


__all__ = [
    "FunctionTool",
    "Tool",
    "ToolRegistry",
    "ToolSpec",
    "tool",
    "tool_output_segments",
]
