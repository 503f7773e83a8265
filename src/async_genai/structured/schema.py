"""Schema compilation and validation.

``compile_schema`` checks a JSON-Schema document once and returns an
immutable :class:`SchemaHandle`; ``validate`` walks a candidate value
against it and reports *every* violation with a JSON pointer.
"""

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterator, Mapping

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from jsonschema.exceptions import ValidationError as JSONSchemaError
from pydantic import ValidationError as PydanticValidationError

from async_genai.exceptions import SchemaInvalidError
from async_genai.structured.formats import OutputFormat, OutputParseError, parse_output
from async_genai.types import ValidationIssue, ValidationOutcome

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationOptions:
    """Knobs applied when compiling a schema for structured output.

    ``allow_additional_properties``
        When false, object schemas that list ``properties`` but say nothing
        about ``additionalProperties`` are closed.
    ``require_all_required_properties``
        When true, validation failures raise instead of being reported
        alongside the parsed data.
    """

    allow_additional_properties: bool = False
    require_all_required_properties: bool = True


class SchemaHandle:
    """A compiled, read-only schema.  Share freely across validations."""

    __slots__ = ("_document", "_validator")

    def __init__(self, document: Mapping[str, Any] | bool, validator: Draft202012Validator) -> None:
        self._document = document
        self._validator = validator

    @property
    def document(self) -> Any:
        """A copy of the compiled document."""
        return copy.deepcopy(self._document)

    def __repr__(self) -> str:
        title = self._document.get("title") if isinstance(self._document, dict) else None
        return f"<SchemaHandle {title or type(self._document).__name__}>"


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------

def compile_schema(
    document: Mapping[str, Any] | bool,
    options: ValidationOptions | None = None,
) -> SchemaHandle:
    """Check *document* against the draft 2020-12 meta-schema and compile it.

    Raises
    ------
    SchemaInvalidError
        The document is not a well-formed schema.
    """
    if not isinstance(document, (Mapping, bool)):
        raise SchemaInvalidError(
            f"schema must be an object or boolean, got {type(document).__name__}",
        )
    doc = copy.deepcopy(dict(document) if isinstance(document, Mapping) else document)
    if options is not None and not options.allow_additional_properties:
        _close_objects(doc)

    try:
        Draft202012Validator.check_schema(doc)
    except SchemaError as e:
        where = _pointer(e.absolute_path) or "/"
        raise SchemaInvalidError(f"{e.message} (at {where})") from e
    _check_patterns(doc, "")

    validator = Draft202012Validator(doc, format_checker=Draft202012Validator.FORMAT_CHECKER)
    return SchemaHandle(doc, validator)


# Keywords whose values are schemas.  Anything else (const, enum, default,
# examples, ...) holds instance data and is never walked.
_SCHEMA_KEYWORDS = frozenset({
    "additionalItems", "additionalProperties", "contains", "else", "if", "items",
    "not", "propertyNames", "then", "unevaluatedItems", "unevaluatedProperties",
})
_SCHEMA_LIST_KEYWORDS = frozenset({"allOf", "anyOf", "oneOf", "prefixItems"})
_SCHEMA_MAP_KEYWORDS = frozenset({
    "$defs", "definitions", "dependentSchemas", "patternProperties", "properties",
})


def _subschemas(node: dict[str, Any], where: str) -> Iterator[tuple[Any, str]]:
    """Yield ``(subschema, pointer)`` for the schemas nested directly in *node*."""
    for key, value in node.items():
        here = f"{where}/{_escape(key)}"
        if key in _SCHEMA_KEYWORDS:
            # draft-4 style tuple "items" is still a list of schemas
            if isinstance(value, list):
                yield from ((item, f"{here}/{i}") for i, item in enumerate(value))
            else:
                yield value, here
        elif key in _SCHEMA_LIST_KEYWORDS and isinstance(value, list):
            yield from ((item, f"{here}/{i}") for i, item in enumerate(value))
        elif key in _SCHEMA_MAP_KEYWORDS and isinstance(value, dict):
            yield from ((sub, f"{here}/{_escape(name)}") for name, sub in value.items())


def _close_objects(node: Any) -> None:
    """Set ``additionalProperties: false`` wherever properties are listed."""
    if not isinstance(node, dict):
        return
    if "properties" in node and "additionalProperties" not in node:
        node["additionalProperties"] = False
    for sub, _ in _subschemas(node, ""):
        _close_objects(sub)


def _check_patterns(node: Any, where: str) -> None:
    if not isinstance(node, dict):
        return
    patterns = []
    if isinstance(node.get("pattern"), str):
        patterns.append(node["pattern"])
    if isinstance(node.get("patternProperties"), dict):
        patterns.extend(node["patternProperties"])
    for pattern in patterns:
        try:
            re.compile(pattern)
        except re.error as e:
            raise SchemaInvalidError(f"bad pattern {pattern!r}: {e} (at {where or '/'})") from e
    for sub, pointer in _subschemas(node, where):
        _check_patterns(sub, pointer)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate(handle: SchemaHandle, candidate: Any) -> ValidationOutcome:
    """Validate *candidate*, collecting all violations.

    Errors come out in schema document order, then candidate order, and
    are identical across repeated calls.
    """
    issues: list[ValidationIssue] = []
    missing: dict[tuple[Any, ...], Iterator[str]] = {}

    for error in handle._validator.iter_errors(candidate):
        pointer = _pointer(error.absolute_path)
        if error.validator == "required":
            pointer += _missing_member(error, missing)
        issues.append(
            ValidationIssue(pointer=pointer, message=error.message, keyword=str(error.validator or "")),
        )
    return ValidationOutcome.from_issues(issues)


def _missing_member(error: JSONSchemaError, cursors: dict[tuple[Any, ...], Iterator[str]]) -> str:
    """Pointer suffix naming the property a ``required`` error is about.

    One error is raised per missing property, in the order the ``required``
    list names them.
    """
    key = (tuple(error.absolute_path), tuple(error.absolute_schema_path))
    if key not in cursors:
        instance = error.instance if isinstance(error.instance, dict) else {}
        cursors[key] = iter([p for p in error.validator_value if p not in instance])
    prop = next(cursors[key], None)
    return "" if prop is None else "/" + _escape(prop)


def validate_text(handle: SchemaHandle, text: str, fmt: OutputFormat | str = OutputFormat.JSON) -> ValidationOutcome:
    """Parse *text* as *fmt* and validate the result.

    A parse failure is reported as a single ``format`` issue at the root
    rather than raised.
    """
    return parse_and_validate(handle, text, fmt)[1]


def parse_and_validate(
    handle: SchemaHandle, text: str, fmt: OutputFormat | str = OutputFormat.JSON,
) -> tuple[Any, ValidationOutcome]:
    """Like :func:`validate_text` but also return the parsed value (``None`` on parse failure)."""
    schema = handle._document if isinstance(handle._document, dict) else None
    try:
        value = parse_output(text, OutputFormat(fmt), schema)
    except OutputParseError as e:
        _logger.debug("Response is not valid %s: %s", e.format.value, e.detail)
        return None, format_issue(str(e))
    return value, validate(handle, value)


def format_issue(message: str) -> ValidationOutcome:
    """Outcome for a candidate that could not even be parsed."""
    return ValidationOutcome.from_issues(
        [ValidationIssue(pointer="", message=message, keyword="format")],
    )


def issues_from_pydantic(error: PydanticValidationError) -> list[ValidationIssue]:
    """Convert a pydantic ``ValidationError`` into pointer-qualified issues."""
    issues = []
    for detail in error.errors():
        issues.append(
            ValidationIssue(
                pointer=_pointer(detail.get("loc", ())),
                message=detail.get("msg", ""),
                keyword=detail.get("type", ""),
            )
        )
    return issues or [ValidationIssue(pointer="", message=str(error))]


def _escape(part: Any) -> str:
    return str(part).replace("~", "~0").replace("/", "~1")


def _pointer(path: Any) -> str:
    return "".join("/" + _escape(part) for part in path)
