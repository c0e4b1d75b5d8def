from __future__ import annotations

import json
import math
from enum import Enum
from typing import Any, Iterator, Mapping

from pydantic import BaseModel, ValidationError

from anysession.utils.exceptions import MissingField, ParseError, SchemaMismatch

from .schema import GenerationSchema, SchemaKind


class ContentKind(str, Enum):
    NULL = "null"
    BOOL = "boolean"
    NUMBER = "number"
    STRING = "string"
    ARRAY = "array"
    STRUCTURE = "object"


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number literal: {name}")


class GeneratedContent:
    """
    Dynamic structured value produced by a model or built from application values.

    Object fields keep their insertion order, and equality is order-sensitive for objects.
    ``is_complete`` is False for values recovered from partial (still streaming) output.
    """

    __slots__ = ("kind", "_value", "is_complete")

    def __init__(self, value: Any = None, *, is_complete: bool = True) -> None:
        if isinstance(value, GeneratedContent):
            self.kind = value.kind
            self._value = value._value
            self.is_complete = is_complete and value.is_complete
            return
        self.kind, self._value = _convert(value)
        self.is_complete = is_complete

    # ---------------------------------------------------------------------------
    # Construction
    # ---------------------------------------------------------------------------
    @classmethod
    def from_json(cls, text: str) -> "GeneratedContent":
        """Parse raw model text; malformed input raises ParseError(position, reason)."""
        try:
            data = json.loads(text, parse_constant=_reject_constant)
        except json.JSONDecodeError as exc:
            raise ParseError(exc.pos, exc.msg) from exc
        except ValueError as exc:
            raise ParseError(0, str(exc)) from exc
        return cls(data)

    @classmethod
    def from_partial_json(cls, text: str) -> "GeneratedContent":
        """Best-effort parse of a JSON prefix (open strings and containers are closed)."""
        stripped = str(text or "").strip()
        if not stripped:
            return cls(None, is_complete=False)
        try:
            return cls.from_json(stripped)
        except ParseError:
            pass
        return cls(_repair_partial_json(stripped), is_complete=False)

    # ---------------------------------------------------------------------------
    # Accessors
    # ---------------------------------------------------------------------------
    @property
    def value(self) -> Any:
        """Plain Python value (dict / list / str / int / float / bool / None)."""
        return _to_python(self)

    def properties(self) -> dict[str, "GeneratedContent"]:
        if self.kind != ContentKind.STRUCTURE:
            raise SchemaMismatch("$", ContentKind.STRUCTURE.value, self.kind.value)
        return dict(self._value)

    def elements(self) -> list["GeneratedContent"]:
        if self.kind != ContentKind.ARRAY:
            raise SchemaMismatch("$", ContentKind.ARRAY.value, self.kind.value)
        return list(self._value)

    def __getitem__(self, key: str | int) -> "GeneratedContent":
        if isinstance(key, int):
            return self.elements()[key]
        props = self.properties()
        if key not in props:
            raise MissingField(f"$.{key}")
        return props[key]

    def __iter__(self) -> Iterator[Any]:
        if self.kind == ContentKind.STRUCTURE:
            return iter(self._value)
        return iter(self.elements())

    @property
    def json_string(self) -> str:
        """Canonical compact JSON text; control characters, quotes and backslashes escaped."""
        return json.dumps(
            _to_python(self), ensure_ascii=False, separators=(",", ":"), allow_nan=False
        )

    def __str__(self) -> str:
        if self.kind == ContentKind.STRING:
            return str(self._value)
        return self.json_string

    def __repr__(self) -> str:
        suffix = "" if self.is_complete else ", is_complete=False"
        return f"GeneratedContent({self.json_string}{suffix})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GeneratedContent):
            return NotImplemented
        if self.kind != other.kind:
            return False
        if self.kind == ContentKind.STRUCTURE:
            return list(self._value.items()) == list(other._value.items())
        return self._value == other._value

    __hash__ = None  # type: ignore[assignment]

    # ---------------------------------------------------------------------------
    # Typed extraction
    # ---------------------------------------------------------------------------
    def decode(self, target: Any) -> Any:
        """
        Extract a typed value.

        ``target`` may be a GenerationSchema (returns plain Python data shaped by the schema),
        a pydantic model class (returns a validated instance), or one of str/int/float/bool.
        """
        if isinstance(target, GenerationSchema):
            root = target.resolve_references()
            return _decode(self, root, root, "$")
        if isinstance(target, type) and issubclass(target, BaseModel):
            data = self.decode(GenerationSchema.from_pydantic(target))
            try:
                return target.model_validate(data)
            except ValidationError as exc:
                first = exc.errors()[0]
                path = "$" + "".join(
                    f"[{p}]" if isinstance(p, int) else f".{p}" for p in first.get("loc", ())
                )
                raise SchemaMismatch(
                    path, str(first.get("type")), _kind_name(first.get("input"))
                ) from exc
        if target is GeneratedContent:
            return self
        if target in _PRIMITIVE_SCHEMAS:
            return _decode(self, _PRIMITIVE_SCHEMAS[target], _PRIMITIVE_SCHEMAS[target], "$")
        raise TypeError(f"cannot decode GeneratedContent into {target!r}")


_PRIMITIVE_SCHEMAS: dict[Any, GenerationSchema] = {
    str: GenerationSchema.string(),
    int: GenerationSchema.integer(),
    float: GenerationSchema.number(),
    bool: GenerationSchema.boolean(),
}


def _convert(value: Any) -> tuple[ContentKind, Any]:
    if value is None:
        return ContentKind.NULL, None
    if isinstance(value, GeneratedContent):
        return value.kind, value._value
    if isinstance(value, bool):
        return ContentKind.BOOL, value
    if isinstance(value, Enum):
        return _convert(value.value)
    if isinstance(value, int):
        return ContentKind.NUMBER, value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"non-finite number cannot be represented: {value}")
        return ContentKind.NUMBER, value
    if isinstance(value, str):
        return ContentKind.STRING, value
    if isinstance(value, BaseModel):
        return _convert(value.model_dump(mode="json"))
    if isinstance(value, Mapping):
        fields: dict[str, GeneratedContent] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"object keys must be str, got {type(key).__name__}")
            fields[key] = GeneratedContent(item)
        return ContentKind.STRUCTURE, fields
    if isinstance(value, (list, tuple)):
        return ContentKind.ARRAY, [GeneratedContent(item) for item in value]
    raise TypeError(f"unsupported value type: {type(value).__name__}")


def _to_python(content: GeneratedContent) -> Any:
    if content.kind == ContentKind.STRUCTURE:
        return {key: _to_python(item) for key, item in content._value.items()}
    if content.kind == ContentKind.ARRAY:
        return [_to_python(item) for item in content._value]
    return content._value


def _kind_name(value: Any) -> str:
    try:
        return GeneratedContent(value).kind.value
    except (TypeError, ValueError):
        return type(value).__name__


def _decode(
    content: GeneratedContent, schema: GenerationSchema, root: GenerationSchema, path: str
) -> Any:
    schema = root.resolve(schema)
    kind = schema.kind

    if kind == SchemaKind.STRING:
        if content.kind != ContentKind.STRING:
            raise SchemaMismatch(path, "string", content.kind.value)
        if schema.choices and content._value not in schema.choices:
            expected = "one of " + ", ".join(schema.choices)
            raise SchemaMismatch(path, expected, repr(content._value))
        return content._value

    if kind in (SchemaKind.NUMBER, SchemaKind.INTEGER):
        if content.kind != ContentKind.NUMBER:
            raise SchemaMismatch(path, kind.value, content.kind.value)
        number = content._value
        if kind == SchemaKind.INTEGER:
            if isinstance(number, float):
                if not number.is_integer():
                    raise SchemaMismatch(path, "integer", "number")
                return int(number)
        return number

    if kind == SchemaKind.BOOLEAN:
        if content.kind != ContentKind.BOOL:
            raise SchemaMismatch(path, "boolean", content.kind.value)
        return content._value

    if kind == SchemaKind.ARRAY:
        if content.kind != ContentKind.ARRAY:
            raise SchemaMismatch(path, "array", content.kind.value)
        return [
            _decode(item, schema.items, root, f"{path}[{idx}]")  # type: ignore[arg-type]
            for idx, item in enumerate(content._value)
        ]

    if kind == SchemaKind.OBJECT:
        if content.kind != ContentKind.STRUCTURE:
            raise SchemaMismatch(path, "object", content.kind.value)
        fields = content._value
        out: dict[str, Any] = {}
        for prop in schema.properties:
            field_path = f"{path}.{prop.name}"
            item = fields.get(prop.name)
            if item is None:
                if prop.optional:
                    continue
                raise MissingField(field_path)
            if item.kind == ContentKind.NULL and prop.optional:
                out[prop.name] = None
                continue
            out[prop.name] = _decode(item, prop.schema, root, field_path)
        return out

    raise SchemaMismatch(path, kind.value, content.kind.value)


# ---------------------------------------------------------------------------
# Raw text helpers
# ---------------------------------------------------------------------------
def _close_partial(text: str) -> str:
    stack: list[str] = []
    in_string = False
    escape = False
    for ch in text:
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack:
            stack.pop()

    out = text
    if in_string:
        if escape:
            out = out[:-1]
        out += '"'
    out = out.rstrip()
    if out.endswith(","):
        out = out[:-1]
    return out + "".join(reversed(stack))


def _repair_partial_json(text: str) -> Any:
    candidate = text
    while candidate:
        try:
            return json.loads(_close_partial(candidate), parse_constant=_reject_constant)
        except ValueError:
            pass
        idx = max(candidate.rfind(","), candidate.rfind("{"), candidate.rfind("["))
        if idx < 0:
            break
        cut = idx if candidate[idx] == "," else idx + 1
        if cut >= len(candidate):
            cut = idx
        if cut <= 0:
            break
        candidate = candidate[:cut]
    raise ParseError(0, "no recoverable JSON prefix")


def extract_json_text(response: str) -> str:
    """
    Pull the JSON object out of a model reply.

    Handles Markdown code fences and prose around the object. A reply whose object is
    cut off (no closing brace) raises ParseError so truncation is reported, not masked.
    """
    text = str(response or "").strip()

    fence = text.find("```json")
    if fence >= 0:
        text = text[fence + len("```json") :]
        end = text.find("```")
        if end >= 0:
            text = text[:end]
    else:
        fence = text.find("```")
        if fence >= 0:
            text = text[fence + 3 :]
            end = text.find("```")
            if end >= 0:
                text = text[:end]

    start = text.find("{")
    if start < 0:
        raise ParseError(0, "no JSON object found in response")
    end = text.rfind("}")
    if end >= start:
        text = text[start : end + 1]
    else:
        text = text[start:]

    text = text.strip()
    if not text.endswith("}"):
        raise ParseError(len(text), "response was truncated")
    return text


__all__ = ["ContentKind", "GeneratedContent", "extract_json_text"]
