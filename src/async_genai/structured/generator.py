"""Prompt instructions and response parsing for structured output.

:class:`StructuredOutput` turns a pydantic model (or a raw JSON Schema)
into text that asks a model to answer in a given format, then parses and
checks the answer.

Example::

    class Joke(BaseModel):
        joke: str
        explanation: str

    so = StructuredOutput(Joke).describe("joke", "The joke itself").validate(True)
    prompt = so.build_instruction().text
    joke = so.parse_data(reply_text)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Generic, Mapping, TypeVar

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from async_genai.exceptions import ValidationFailedError
from async_genai.structured.formats import OutputFormat, parse_output
from async_genai.structured.schema import (
    SchemaHandle,
    ValidationOptions,
    compile_schema,
    issues_from_pydantic,
)
from async_genai.structured.schema import validate as validate_value
from async_genai.types import ValidationOutcome

_logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Instruction:
    """Rendered prompt text plus the schema it was built from."""

    text: str
    format: OutputFormat
    json_schema: str | None = None

    def __str__(self) -> str:
        return self.text


@dataclass
class StructuredResponse(Generic[T]):
    """Parsed answer.

    ``validation_messages`` is ``None`` when validation was off or passed,
    and lists the violations when it failed in non-strict mode.
    """

    data: T
    raw_response: str
    validation_messages: list[str] | None = None


class StructuredOutput(Generic[T]):
    """Builder for structured-output instructions and parsers.

    Parameters
    ----------
    schema:
        A pydantic model class, or a JSON Schema mapping.  With a mapping
        the parsed data is returned as plain dicts/lists.
    format:
        Answer format requested from the model.
    """

    def __init__(
        self,
        schema: type[T] | Mapping[str, Any],
        format: OutputFormat | str = OutputFormat.JSON,
    ) -> None:
        if isinstance(schema, type) and issubclass(schema, BaseModel):
            self._model: type[BaseModel] | None = schema
            self._schema: dict[str, Any] = schema.model_json_schema()
        elif isinstance(schema, Mapping):
            self._model = None
            self._schema = dict(schema)
        else:
            raise TypeError(f"expected a pydantic model or a schema mapping, got {schema!r}")
        self._format = OutputFormat(format)
        self._prefix: str | None = None
        self._suffix: str | None = None
        self._descriptions: dict[str, str] = {}
        self._validate = False
        self._options: ValidationOptions | None = None
        self._handle: SchemaHandle | None = None

    # -- constructors -------------------------------------------------------

    @classmethod
    def json(cls, schema: Any) -> StructuredOutput:
        return cls(schema, OutputFormat.JSON)

    @classmethod
    def json_array(cls, schema: Any) -> StructuredOutput:
        return cls(schema, OutputFormat.JSON_ARRAY)

    @classmethod
    def yaml(cls, schema: Any) -> StructuredOutput:
        return cls(schema, OutputFormat.YAML)

    @classmethod
    def xml(cls, schema: Any) -> StructuredOutput:
        return cls(schema, OutputFormat.XML)

    # -- fluent setters -----------------------------------------------------

    def prefix(self, text: str) -> StructuredOutput[T]:
        self._prefix = text
        return self

    def suffix(self, text: str) -> StructuredOutput[T]:
        self._suffix = text
        return self

    def describe(self, field: str, text: str) -> StructuredOutput[T]:
        self._descriptions[field] = text
        return self

    def format(self, fmt: OutputFormat | str) -> StructuredOutput[T]:
        self._format = OutputFormat(fmt)
        self._handle = None
        return self

    def validate(self, enabled: bool = True) -> StructuredOutput[T]:
        """Check answers against the schema.

        Failures are reported in ``validation_messages`` unless
        :meth:`validation_options` asked for strict mode.
        """
        self._validate = enabled
        return self

    def validation_options(self, options: ValidationOptions) -> StructuredOutput[T]:
        self._options = options
        self._handle = None
        return self

    # -- schema -------------------------------------------------------------

    @property
    def output_format(self) -> OutputFormat:
        return self._format

    @property
    def response_schema(self) -> dict[str, Any]:
        """Schema of the whole answer (an array of items for ``json_array``)."""
        if self._format is not OutputFormat.JSON_ARRAY:
            return dict(self._schema)
        item = dict(self._schema)
        wrapper: dict[str, Any] = {"type": "array"}
        # $defs must stay at the document root for local $refs to resolve
        if "$defs" in item:
            wrapper["$defs"] = item.pop("$defs")
        wrapper["items"] = item
        return wrapper

    @property
    def handle(self) -> SchemaHandle:
        if self._handle is None:
            self._handle = compile_schema(self.response_schema, self._options)
        return self._handle

    # -- instruction --------------------------------------------------------

    def build_instruction(self) -> Instruction:
        schema_text = json.dumps(self.response_schema, indent=2)
        parts = []
        if self._prefix:
            parts.append(self._prefix.strip())

        fence = "xml" if self._format is OutputFormat.XML else (
            "yaml" if self._format is OutputFormat.YAML else "json"
        )
        body = (
            f"Respond with {self._format.label} only, with no additional commentary. "
            f"The response must conform to the following JSON Schema:\n"
            f"```json\n{schema_text}\n```"
        )
        if self._format is OutputFormat.XML:
            body += (
                "\nUse a single root element; each property is a child element "
                "and repeated elements form a list."
            )
        parts.append(body)

        if self._descriptions:
            lines = ["Field descriptions:"]
            lines.extend(f"- {name}: {text}" for name, text in self._descriptions.items())
            parts.append("\n".join(lines))

        parts.append(f"Wrap the response in a ```{fence} code block.")
        if self._suffix:
            parts.append(self._suffix.strip())

        return Instruction(text="\n\n".join(parts), format=self._format, json_schema=schema_text)

    def build_instruction_text(self) -> str:
        return self.build_instruction().text

    # -- parsing ------------------------------------------------------------

    def parse_response(self, text: str) -> StructuredResponse[Any]:
        """Extract, check and convert the model's answer.

        Raises
        ------
        OutputParseError
            No value in the requested format could be found.
        ValidationFailedError
            Validation failed in strict mode, or the value does not fit the
            pydantic model.
        """
        value = parse_output(text, self._format, self.response_schema)

        messages: list[str] | None = None
        if self._validate:
            outcome = validate_value(self.handle, value)
            if not outcome.valid:
                if self._options is not None and self._options.require_all_required_properties:
                    raise ValidationFailedError(
                        f"response failed validation: {'; '.join(outcome.messages)}",
                        outcome=outcome,
                        response_text=text,
                    )
                _logger.info("Response failed validation: %s", outcome.messages)
                messages = outcome.messages

        return StructuredResponse(
            data=self._convert(value, text),
            raw_response=text,
            validation_messages=messages,
        )

    def parse_data(self, text: str) -> Any:
        return self.parse_response(text).data

    def _convert(self, value: Any, text: str) -> Any:
        if self._model is None:
            return value
        try:
            if self._format is OutputFormat.JSON_ARRAY:
                return TypeAdapter(list[self._model]).validate_python(value)
            return self._model.model_validate(value)
        except PydanticValidationError as e:
            outcome = ValidationOutcome.from_issues(issues_from_pydantic(e))
            raise ValidationFailedError(
                f"response does not match {self._model.__name__}",
                outcome=outcome,
                response_text=text,
            ) from e

