"""Structured output: schema validation and format extraction."""

from async_genai.structured.formats import OutputFormat, OutputParseError, parse_output
from async_genai.structured.generator import Instruction, StructuredOutput, StructuredResponse
from async_genai.structured.schema import (
    SchemaHandle,
    ValidationOptions,
    compile_schema,
    parse_and_validate,
    validate,
    validate_text,
)

__all__ = [
    "Instruction",
    "OutputFormat",
    "OutputParseError",
    "SchemaHandle",
    "StructuredOutput",
    "StructuredResponse",
    "ValidationOptions",
    "compile_schema",
    "parse_and_validate",
    "parse_output",
    "validate",
    "validate_text",
]
