from __future__ import annotations

import json
from typing import Any, AsyncIterator, Literal, Optional, Sequence

import pytest
from pydantic import BaseModel, Field

from anysession.llm_native.backend import BackendCapabilities, ChatRequest
from anysession.llm_native.content import GeneratedContent
from anysession.llm_native.schema import GenerationSchema, SchemaKind, SchemaProperty
from anysession.llm_native.session import LanguageModelSession
from anysession.llm_native.tools import FunctionTool, Tool, ToolRegistry
from anysession.llm_native.transcript import Prompt, Segment, text_segments
from anysession.utils.exceptions import SchemaError, SchemaReferenceError


class Address(BaseModel):
    city: str
    zip_code: Optional[str] = None


class Person(BaseModel):
    name: str = Field(description="Full name")
    age: int
    mood: Literal["happy", "sad"]
    address: Address


def _person_schema() -> GenerationSchema:
    return GenerationSchema.object(
        "Person",
        [
            SchemaProperty("name", GenerationSchema.string(), "Full name"),
            SchemaProperty("age", GenerationSchema.integer(), "Age in years"),
            SchemaProperty("nickname", GenerationSchema.string(), optional=True),
        ],
    )


def test_object_schema_interchange_shape():
    payload = _person_schema().to_json_schema()

    assert payload["type"] == "object"
    assert list(payload["properties"]) == ["name", "age", "nickname"]
    assert payload["properties"]["name"] == {"type": "string", "description": "Full name"}
    assert payload["properties"]["age"] == {"type": "integer", "description": "Age in years"}
    assert payload["required"] == ["name", "age"]
    assert payload["title"] == "Person"


def test_duplicate_field_names_are_rejected():
    with pytest.raises(SchemaError):
        GenerationSchema.object(
            "Dup",
            [
                SchemaProperty("a", GenerationSchema.string()),
                SchemaProperty("a", GenerationSchema.number()),
            ],
        )


def test_array_requires_items_and_choices_require_string():
    with pytest.raises(SchemaError):
        GenerationSchema(SchemaKind.ARRAY)
    with pytest.raises(SchemaError):
        GenerationSchema(SchemaKind.NUMBER, choices=("1",))


def test_unknown_reference_fails_at_construction():
    with pytest.raises(SchemaReferenceError) as excinfo:
        GenerationSchema.object(
            "Root",
            [SchemaProperty("x", GenerationSchema.reference("Missing"))],
            definitions={"Other": GenerationSchema.string()},
        )
    assert excinfo.value.reference == "Missing"


def _dangling_schema() -> GenerationSchema:
    return GenerationSchema.object(
        "Args", [SchemaProperty("x", GenerationSchema.reference("Missing"))]
    )


class Dangling(Tool):
    name = "dangling"
    description = "Parameters point at a definition that does not exist."
    parameters = _dangling_schema()

    async def call(self, arguments: GeneratedContent) -> Sequence[Segment]:
        return text_segments("unreachable")


class NoBackend:
    name = "none"
    capabilities = BackendCapabilities(structured_output=True)

    async def stream(self, request: ChatRequest) -> AsyncIterator[Any]:
        raise AssertionError("backend must not be called")
        yield

    async def aclose(self) -> None:
        return None


def test_unknown_reference_without_definitions_fails_at_registration():
    with pytest.raises(SchemaReferenceError) as excinfo:
        ToolRegistry([Dangling()])
    assert excinfo.value.reference == "Missing"


def test_session_rejects_tool_with_unknown_reference():
    with pytest.raises(SchemaReferenceError):
        LanguageModelSession(NoBackend(), tools=[Dangling()])


def test_function_tool_rejects_explicit_parameters_with_unknown_reference():
    async def lookup(x: str) -> str:
        return "x"

    with pytest.raises(SchemaReferenceError):
        FunctionTool(lookup, parameters=_dangling_schema())


def test_prompt_rejects_response_format_with_unknown_reference():
    with pytest.raises(SchemaReferenceError):
        Prompt(segments=text_segments("hi"), response_format=_dangling_schema())


@pytest.mark.anyio
async def test_respond_rejects_output_schema_with_unknown_reference():
    session = LanguageModelSession(NoBackend())

    with pytest.raises(SchemaReferenceError):
        await session.respond("hi", generating=_dangling_schema())
    assert len(session.transcript) == 0


def test_non_recursive_reference_is_inlined():
    address = GenerationSchema.object(
        "Address", [SchemaProperty("city", GenerationSchema.string())]
    )
    root = GenerationSchema.object(
        "Customer",
        [SchemaProperty("home", GenerationSchema.reference("Address"), "Where they live")],
        definitions={"Address": address},
    )

    resolved = root.resolve_references()
    assert resolved.definitions == {}
    assert resolved.properties[0].schema.kind == SchemaKind.OBJECT

    payload = root.to_json_schema()
    assert "$defs" not in payload
    assert payload["properties"]["home"]["properties"]["city"] == {"type": "string"}
    assert payload["properties"]["home"]["description"] == "Where they live"


def test_recursive_reference_serializes_finitely():
    node = GenerationSchema.object(
        "Node",
        [
            SchemaProperty("value", GenerationSchema.integer()),
            SchemaProperty("children", GenerationSchema.array(GenerationSchema.reference("Node"))),
        ],
    )
    tree = GenerationSchema.object(
        "Tree",
        [SchemaProperty("root", GenerationSchema.reference("Node"))],
        definitions={"Node": node},
    )

    payload = tree.to_json_schema()
    text = json.dumps(payload)

    assert payload["properties"]["root"] == {"$ref": "#/$defs/Node"}
    children = payload["$defs"]["Node"]["properties"]["children"]
    assert children == {"type": "array", "items": {"$ref": "#/$defs/Node"}}
    assert json.loads(text) == payload


def test_guidance_with_quotes_backslashes_and_newlines_survives_serialization():
    guidance = 'Say "hi" to C:\\Users\\me\nthen a second line\twith a tab'
    schema = GenerationSchema.object(
        "Greeting", [SchemaProperty("message", GenerationSchema.string(), guidance)]
    )

    text = schema.to_json()

    assert "\n" not in text
    json.loads(text)
    restored = GenerationSchema.from_json(text)
    assert restored.properties[0].description == guidance


def test_string_choices_serialize_as_enum():
    payload = GenerationSchema.string(choices=["low", "high"]).to_json_schema()
    assert payload == {"type": "string", "enum": ["low", "high"]}


def test_from_pydantic_describes_fields_in_order():
    schema = GenerationSchema.from_pydantic(Person).resolve_references()

    assert schema.kind == SchemaKind.OBJECT
    assert [p.name for p in schema.properties] == ["name", "age", "mood", "address"]
    by_name = {p.name: p for p in schema.properties}
    assert by_name["name"].description == "Full name"
    assert by_name["age"].schema.kind == SchemaKind.INTEGER
    assert by_name["mood"].schema.choices == ("happy", "sad")

    address = by_name["address"].schema
    assert address.kind == SchemaKind.OBJECT
    zip_code = {p.name: p for p in address.properties}["zip_code"]
    assert zip_code.optional is True
    assert zip_code.schema.kind == SchemaKind.STRING


def test_from_json_schema_round_trips_interchange_form():
    original = _person_schema()
    restored = GenerationSchema.from_json_schema(original.to_json_schema())

    assert restored.to_json_schema() == original.to_json_schema()
