"""Tests for schema compilation and validation."""

import pytest

from async_genai.exceptions import SchemaInvalidError
from async_genai.structured.schema import (
    ValidationOptions,
    compile_schema,
    parse_and_validate,
    validate,
    validate_text,
)
from async_genai.structured.formats import OutputFormat


PERSON = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "age": {"type": "integer", "minimum": 0, "maximum": 150},
        "email": {"type": "string", "pattern": "^[^@]+@[^@]+$"},
        "role": {"enum": ["admin", "user"]},
        "tags": {"type": "array", "items": {"type": "string"}, "maxItems": 3},
        "address": {
            "type": "object",
            "properties": {"city": {"type": "string"}, "zip": {"type": "string"}},
            "required": ["city", "zip"],
        },
    },
    "required": ["name", "age"],
}


class TestCompile:
    def test_not_a_mapping(self):
        with pytest.raises(SchemaInvalidError):
            compile_schema(["type", "object"])

    def test_bad_keyword_value(self):
        with pytest.raises(SchemaInvalidError) as exc_info:
            compile_schema({"type": "objekt"})
        assert exc_info.value.detail

    def test_bad_pattern(self):
        with pytest.raises(SchemaInvalidError):
            compile_schema({"type": "string", "pattern": "(unclosed"})

    def test_bad_pattern_in_nested_subschema(self):
        schema = {"type": "array", "items": {"anyOf": [{"type": "string", "pattern": "[a-"}]}}
        with pytest.raises(SchemaInvalidError) as exc_info:
            compile_schema(schema)
        assert "/items/anyOf/0" in exc_info.value.detail

    def test_instance_data_keywords_not_treated_as_schemas(self):
        schema = {
            "const": {"pattern": "("},
            "enum": [{"pattern": "("}, {"pattern": "("}],
            "default": {"patternProperties": {"(": {}}},
        }
        handle = compile_schema(schema)
        assert validate(handle, {"pattern": "("}).valid

    def test_boolean_schema(self):
        assert validate(compile_schema(True), {"anything": 1}).valid
        assert not validate(compile_schema(False), 1).valid

    def test_input_not_mutated(self):
        doc = {"type": "object", "properties": {"a": {"type": "string"}}}
        compile_schema(doc, ValidationOptions(allow_additional_properties=False))
        assert "additionalProperties" not in doc

    def test_handle_document_is_a_copy(self):
        handle = compile_schema({"type": "string"})
        handle.document["type"] = "integer"
        assert validate(handle, "still a string").valid


class TestRequired:
    def test_missing_required_property(self):
        handle = compile_schema({"type": "object", "required": ["name"]})
        outcome = validate(handle, {})
        assert not outcome.valid
        assert len(outcome.errors) == 1
        assert outcome.errors[0].pointer == "/name"
        assert "required" in outcome.errors[0].message

    def test_present(self):
        handle = compile_schema({"type": "object", "required": ["name"]})
        outcome = validate(handle, {"name": "a"})
        assert outcome.valid
        assert outcome.errors == ()

    def test_each_missing_property_gets_its_pointer(self):
        outcome = validate(compile_schema(PERSON), {"address": {}})
        pointers = [e.pointer for e in outcome.errors]
        assert pointers == ["/address/city", "/address/zip", "/name", "/age"]


class TestConstraints:
    def test_all_violations_collected(self):
        candidate = {
            "name": "",
            "age": 200,
            "email": "nope",
            "role": "root",
            "tags": ["a", 1, "c", "d"],
        }
        outcome = validate(compile_schema(PERSON), candidate)
        found = {(e.pointer, e.keyword) for e in outcome.errors}
        assert ("/name", "minLength") in found
        assert ("/age", "maximum") in found
        assert ("/email", "pattern") in found
        assert ("/role", "enum") in found
        assert ("/tags", "maxItems") in found
        assert ("/tags/1", "type") in found

    def test_type_mismatch_at_root(self):
        outcome = validate(compile_schema(PERSON), [])
        assert outcome.errors[0].pointer == ""
        assert outcome.errors[0].keyword == "type"

    def test_const(self):
        outcome = validate(compile_schema({"const": 3}), 4)
        assert outcome.errors[0].keyword == "const"

    def test_deterministic(self):
        handle = compile_schema(PERSON)
        candidate = {"name": 5, "age": -1, "tags": [1, 2], "address": {"city": 3}}
        first = validate(handle, candidate)
        for _ in range(5):
            assert validate(handle, candidate) == first

    def test_pointer_escaping(self):
        handle = compile_schema({"properties": {"a/b": {"type": "string"}, "c~d": {"type": "string"}}})
        outcome = validate(handle, {"a/b": 1, "c~d": 2})
        assert [e.pointer for e in outcome.errors] == ["/a~1b", "/c~0d"]


class TestOptions:
    def test_closed_objects_reject_extras(self):
        options = ValidationOptions(allow_additional_properties=False)
        handle = compile_schema(PERSON, options)
        outcome = validate(handle, {"name": "a", "age": 1, "extra": True})
        assert not outcome.valid
        assert outcome.errors[0].keyword == "additionalProperties"

    def test_open_objects_by_default(self):
        outcome = validate(compile_schema(PERSON), {"name": "a", "age": 1, "extra": True})
        assert outcome.valid

    def test_property_named_properties(self):
        schema = {
            "type": "object",
            "properties": {"properties": {"type": "object", "properties": {"x": {"type": "integer"}}}},
            "examples": [{"properties": {"x": 1}}],
        }
        handle = compile_schema(schema, ValidationOptions(allow_additional_properties=False))
        document = handle.document
        assert set(document["properties"]) == {"properties"}
        assert document["properties"]["properties"]["additionalProperties"] is False
        assert document["examples"] == [{"properties": {"x": 1}}]
        assert validate(handle, {"properties": {"x": 1}}).valid
        assert not validate(handle, {"properties": {"x": 1, "y": 2}}).valid

    def test_explicit_additional_properties_kept(self):
        schema = {"type": "object", "properties": {"a": {}}, "additionalProperties": True}
        handle = compile_schema(schema, ValidationOptions(allow_additional_properties=False))
        assert validate(handle, {"a": 1, "b": 2}).valid


class TestText:
    def test_json_in_code_fence(self):
        handle = compile_schema(PERSON)
        text = 'Sure!\n```json\n{"name": "Ann", "age": 30}\n```'
        assert validate_text(handle, text, "json").valid

    def test_yaml(self):
        handle = compile_schema(PERSON)
        value, outcome = parse_and_validate(handle, "name: Ann\nage: 30\n", OutputFormat.YAML)
        assert outcome.valid
        assert value == {"name": "Ann", "age": 30}

    def test_xml_coerced_by_schema(self):
        handle = compile_schema(PERSON)
        text = "<person><name>Ann</name><age>30</age><tags>a</tags><tags>b</tags></person>"
        value, outcome = parse_and_validate(handle, text, OutputFormat.XML)
        assert outcome.valid, outcome.messages
        assert value == {"name": "Ann", "age": 30, "tags": ["a", "b"]}

    def test_parse_failure_is_single_format_error(self):
        handle = compile_schema(PERSON)
        outcome = validate_text(handle, "{not json", OutputFormat.JSON)
        assert not outcome.valid
        assert len(outcome.errors) == 1
        assert outcome.errors[0].keyword == "format"
        assert outcome.errors[0].pointer == ""

    def test_bad_xml(self):
        outcome = validate_text(compile_schema(PERSON), "<person><name>", OutputFormat.XML)
        assert [e.keyword for e in outcome.errors] == ["format"]

    def test_yaml_validation_errors_still_reported(self):
        outcome = validate_text(compile_schema(PERSON), "name: Ann\n", "yaml")
        assert [e.pointer for e in outcome.errors] == ["/age"]
