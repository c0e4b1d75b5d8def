from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping, Sequence

from pydantic import BaseModel

from anysession.utils.exceptions import ParseError, SchemaError, SchemaReferenceError

_REF_PREFIXES = ("#/$defs/", "#/definitions/")


class SchemaKind(str, Enum):
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"
    REFERENCE = "reference"


@dataclass(frozen=True)
class SchemaProperty:
    """One named field of an object schema, with author-supplied guidance text."""

    name: str
    schema: "GenerationSchema"
    description: str | None = None
    optional: bool = False


@dataclass(frozen=True)
class GenerationSchema:
    """
    Declarative description of an expected structured value.

    A schema is a primitive, an array of a sub-schema, an object (ordered named fields),
    or a reference to a named definition. Definitions live on the root schema; a root that
    carries definitions is validated on construction so unknown references fail early.
    """

    kind: SchemaKind
    title: str | None = None
    description: str | None = None
    properties: tuple[SchemaProperty, ...] = ()
    items: "GenerationSchema | None" = None
    choices: tuple[str, ...] = ()
    ref: str | None = None
    definitions: Mapping[str, "GenerationSchema"] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.kind == SchemaKind.OBJECT:
            seen: set[str] = set()
            for prop in self.properties:
                if prop.name in seen:
                    raise SchemaError(
                        f"duplicate field name: {prop.name}",
                        {"schema": self.title, "field": prop.name},
                    )
                seen.add(prop.name)
        elif self.properties:
            raise SchemaError("only object schemas may declare properties")

        if self.kind == SchemaKind.ARRAY and self.items is None:
            raise SchemaError("array schema requires items")
        if self.kind == SchemaKind.REFERENCE and not self.ref:
            raise SchemaError("reference schema requires a name")
        if self.choices and self.kind != SchemaKind.STRING:
            raise SchemaError("choices are only valid for string schemas")

        if self.definitions:
            names = set(self.definitions)
            for schema in (self, *self.definitions.values()):
                for ref in schema._references():
                    if ref not in names:
                        raise SchemaReferenceError(ref, list(names))

    # ---------------------------------------------------------------------------
    # Constructors
    # ---------------------------------------------------------------------------
    @classmethod
    def string(
        cls, description: str | None = None, *, choices: Sequence[str] | None = None
    ) -> "GenerationSchema":
        return cls(SchemaKind.STRING, description=description, choices=tuple(choices or ()))

    @classmethod
    def number(cls, description: str | None = None) -> "GenerationSchema":
        return cls(SchemaKind.NUMBER, description=description)

    @classmethod
    def integer(cls, description: str | None = None) -> "GenerationSchema":
        return cls(SchemaKind.INTEGER, description=description)

    @classmethod
    def boolean(cls, description: str | None = None) -> "GenerationSchema":
        return cls(SchemaKind.BOOLEAN, description=description)

    @classmethod
    def array(cls, items: "GenerationSchema", description: str | None = None) -> "GenerationSchema":
        return cls(SchemaKind.ARRAY, description=description, items=items)

    @classmethod
    def object(
        cls,
        title: str | None,
        properties: Sequence[SchemaProperty],
        *,
        description: str | None = None,
        definitions: Mapping[str, "GenerationSchema"] | None = None,
    ) -> "GenerationSchema":
        return cls(
            SchemaKind.OBJECT,
            title=title,
            description=description,
            properties=tuple(properties),
            definitions=dict(definitions or {}),
        )

    @classmethod
    def reference(cls, name: str, description: str | None = None) -> "GenerationSchema":
        return cls(SchemaKind.REFERENCE, ref=name, description=description)

    # ---------------------------------------------------------------------------
    # Reference resolution
    # ---------------------------------------------------------------------------
    def _references(self) -> list[str]:
        if self.kind == SchemaKind.REFERENCE:
            return [str(self.ref)]
        if self.kind == SchemaKind.ARRAY and self.items is not None:
            return self.items._references()
        refs: list[str] = []
        for prop in self.properties:
            refs.extend(prop.schema._references())
        return refs

    def _recursive_definitions(self) -> set[str]:
        """Names of definitions that can reach themselves through references."""
        graph = {name: set(body._references()) for name, body in self.definitions.items()}
        recursive: set[str] = set()
        for start in graph:
            stack = list(graph[start])
            visited: set[str] = set()
            while stack:
                name = stack.pop()
                if name == start:
                    recursive.add(start)
                    break
                if name in visited:
                    continue
                visited.add(name)
                stack.extend(graph.get(name, ()))
        return recursive

    def resolve_references(self) -> "GenerationSchema":
        """
        Return an equivalent schema with references inlined.

        References into recursive definitions cannot be inlined finitely; those stay as
        references and their (inlined) bodies are carried in ``definitions``. A root that
        is itself a reference is replaced by the referenced body.
        """
        definitions = dict(self.definitions)
        recursive = self._recursive_definitions()

        def inline(schema: GenerationSchema) -> GenerationSchema:
            if schema.kind == SchemaKind.REFERENCE:
                name = str(schema.ref)
                if name not in definitions:
                    raise SchemaReferenceError(name, list(definitions))
                if name in recursive:
                    return schema
                body = inline(definitions[name])
                if schema.description and not body.description:
                    body = replace(body, description=schema.description)
                return body
            if schema.kind == SchemaKind.ARRAY and schema.items is not None:
                return replace(schema, items=inline(schema.items), definitions={})
            if schema.kind == SchemaKind.OBJECT:
                props = tuple(replace(p, schema=inline(p.schema)) for p in schema.properties)
                return replace(schema, properties=props, definitions={})
            return replace(schema, definitions={})

        root = self
        if root.kind == SchemaKind.REFERENCE:
            name = str(root.ref)
            if name not in definitions:
                raise SchemaReferenceError(name, list(definitions))
            root = replace(definitions[name], definitions={})

        resolved = inline(root)
        kept = {name: inline(definitions[name]) for name in sorted(recursive)}
        return replace(resolved, definitions=kept)

    def resolve(self, schema: "GenerationSchema") -> "GenerationSchema":
        """Follow a reference node against this root's definitions."""
        if schema.kind != SchemaKind.REFERENCE:
            return schema
        name = str(schema.ref)
        if name not in self.definitions:
            raise SchemaReferenceError(name, list(self.definitions))
        return self.definitions[name]

    # ---------------------------------------------------------------------------
    # JSON Schema interchange
    # ---------------------------------------------------------------------------
    def to_json_schema(self) -> dict[str, Any]:
        """
        Interchange form every backend derives its native format from:
        ``{"type": "object", "properties": {...}, "required": [...]}``.
        """
        resolved = self.resolve_references()
        payload = _node_to_json(resolved)
        if resolved.definitions:
            payload["$defs"] = {
                name: _node_to_json(body) for name, body in resolved.definitions.items()
            }
        return payload

    def to_json(self, *, indent: int | None = None) -> str:
        return json.dumps(self.to_json_schema(), ensure_ascii=False, indent=indent)

    @classmethod
    def from_json(cls, text: str) -> "GenerationSchema":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ParseError(exc.pos, exc.msg) from exc
        if not isinstance(data, dict):
            raise SchemaError("schema JSON must be an object")
        return cls.from_json_schema(data)

    @classmethod
    def from_json_schema(cls, data: Mapping[str, Any]) -> "GenerationSchema":
        raw_defs = data.get("$defs") or data.get("definitions") or {}
        definitions = {str(name): _node_from_json(body) for name, body in raw_defs.items()}
        root = _node_from_json(data)
        if definitions:
            root = replace(root, definitions=definitions)
        return root

    @classmethod
    def from_pydantic(cls, model: type[BaseModel]) -> "GenerationSchema":
        """Describe a pydantic model; nested models become definitions."""
        return cls.from_json_schema(model.model_json_schema())


def _node_to_json(schema: GenerationSchema) -> dict[str, Any]:
    if schema.kind == SchemaKind.REFERENCE:
        node: dict[str, Any] = {"$ref": f"#/$defs/{schema.ref}"}
    elif schema.kind == SchemaKind.ARRAY:
        node = {"type": "array", "items": _node_to_json(schema.items)}  # type: ignore[arg-type]
    elif schema.kind == SchemaKind.OBJECT:
        properties: dict[str, Any] = {}
        for prop in schema.properties:
            child = _node_to_json(prop.schema)
            if prop.description is not None:
                child["description"] = prop.description
            properties[prop.name] = child
        node = {
            "type": "object",
            "properties": properties,
            "required": [p.name for p in schema.properties if not p.optional],
            "additionalProperties": False,
        }
    else:
        node = {"type": schema.kind.value}
        if schema.choices:
            node["enum"] = list(schema.choices)

    if schema.title:
        node["title"] = schema.title
    if schema.description is not None and "description" not in node:
        node["description"] = schema.description
    return node


def _ref_name(ref: str) -> str:
    for prefix in _REF_PREFIXES:
        if ref.startswith(prefix):
            return ref[len(prefix) :]
    raise SchemaError(f"unsupported $ref: {ref}")


def _node_from_json(data: Any) -> GenerationSchema:
    if not isinstance(data, Mapping):
        raise SchemaError(f"schema node must be an object, got {type(data).__name__}")

    title = data.get("title")
    description = data.get("description")

    if "$ref" in data:
        return GenerationSchema.reference(_ref_name(str(data["$ref"])), description)

    # Optional[X] from pydantic: anyOf [X, null]
    for combinator in ("anyOf", "oneOf", "allOf"):
        branches = [b for b in data.get(combinator) or [] if b.get("type") != "null"]
        if branches:
            inner = _node_from_json(branches[0])
            if description is not None:
                inner = replace(inner, description=description)
            return inner

    node_type = data.get("type")
    if isinstance(node_type, list):
        node_type = next((t for t in node_type if t != "null"), None)
    if node_type is None and "properties" in data:
        node_type = "object"
    if node_type is None and "enum" in data:
        node_type = "string"

    if node_type == "object":
        required = set(data.get("required") or [])
        props = []
        for name, child in (data.get("properties") or {}).items():
            child_schema = _node_from_json(child)
            guidance = child_schema.description
            props.append(
                SchemaProperty(
                    name=str(name),
                    schema=replace(child_schema, description=None),
                    description=guidance,
                    optional=name not in required,
                )
            )
        return GenerationSchema.object(title, props, description=description)
    if node_type == "array":
        items = data.get("items")
        if items is None:
            raise SchemaError("array schema requires items")
        return GenerationSchema(
            SchemaKind.ARRAY, title=title, description=description, items=_node_from_json(items)
        )
    if node_type == "string":
        choices = tuple(str(c) for c in data.get("enum") or ())
        return GenerationSchema(
            SchemaKind.STRING, title=title, description=description, choices=choices
        )
    if node_type in ("number", "integer", "boolean"):
        return GenerationSchema(SchemaKind(node_type), title=title, description=description)
    raise SchemaError(f"unsupported schema type: {node_type!r}")


__all__ = ["GenerationSchema", "SchemaKind", "SchemaProperty"]
