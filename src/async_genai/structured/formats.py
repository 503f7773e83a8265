"""Extract structured values from free-form model output.

Models often wrap their answer in a Markdown code fence or surround it with
prose.  Each extractor looks for a fenced block first, then the bare text,
and hands back a JSON-like value (dicts, lists, scalars).
"""

from __future__ import annotations

import enum
import json
import logging
import re
import xml.etree.ElementTree as ET
from typing import Any, Mapping

import yaml

from async_genai.exceptions import ValidationFailedError

_logger = logging.getLogger(__name__)


class OutputFormat(str, enum.Enum):
    """Wire format the model is asked to answer in."""

    JSON = "json"
    JSON_ARRAY = "json_array"
    YAML = "yaml"
    XML = "xml"

    @property
    def label(self) -> str:
        return {
            OutputFormat.JSON: "a JSON object",
            OutputFormat.JSON_ARRAY: "a JSON array",
            OutputFormat.YAML: "YAML",
            OutputFormat.XML: "XML",
        }[self]


class OutputParseError(ValidationFailedError):
    """The response text could not be parsed in the expected format."""

    def __init__(self, fmt: OutputFormat, detail: str, response_text: str | None = None):
        super().__init__(f"could not parse {fmt.value} response: {detail}", response_text=response_text)
        self.format = fmt
        self.detail = detail


_JSON_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_YAML_FENCE = re.compile(r"```(?:ya?ml)?\s*([\s\S]*?)\s*```")
_XML_FENCE = re.compile(r"```(?:xml)?\s*(<[\s\S]*?>)\s*```")


def parse_output(text: str, fmt: OutputFormat, schema: Mapping[str, Any] | None = None) -> Any:
    """Parse *text* as *fmt*.

    *schema* only matters for XML, where element text is coerced to the
    scalar types the schema asks for.

    Raises
    ------
    OutputParseError
        Nothing parseable was found.
    """
    fmt = OutputFormat(fmt)
    if fmt in (OutputFormat.JSON, OutputFormat.JSON_ARRAY):
        return extract_json(text, array=fmt is OutputFormat.JSON_ARRAY)
    if fmt is OutputFormat.YAML:
        return extract_yaml(text)
    return extract_xml(text, schema)


# ---------------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------------

def extract_json(text: str, array: bool = False) -> Any:
    fmt = OutputFormat.JSON_ARRAY if array else OutputFormat.JSON
    candidates = []
    match = _JSON_FENCE.search(text)
    if match:
        candidates.append(match.group(1))
    candidates.append(text.strip())

    last_error = "empty response"
    for candidate in candidates:
        if not candidate:
            continue
        try:
            return json.loads(candidate)
        except json.JSONDecodeError as e:
            last_error = str(e)

    embedded = _extract_balanced(text, "[" if array else "{")
    if embedded is not None:
        try:
            return json.loads(embedded)
        except json.JSONDecodeError as e:
            last_error = str(e)
    raise OutputParseError(fmt, last_error, response_text=text)


def _extract_balanced(text: str, opener: str) -> str | None:
    """Return the first balanced ``{...}`` or ``[...]`` span in *text*.

    String literals are skipped so braces inside them do not count.
    """
    closer = "}" if opener == "{" else "]"
    start = text.find(opener)
    while start != -1:
        depth = 0
        in_string = False
        escape = False
        for i in range(start, len(text)):
            c = text[i]
            if escape:
                escape = False
                continue
            if c == "\\" and in_string:
                escape = True
                continue
            if c == '"':
                in_string = not in_string
                continue
            if in_string:
                continue
            if c == opener:
                depth += 1
            elif c == closer:
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        start = text.find(opener, start + 1)
    return None


# ---------------------------------------------------------------------------
# YAML
# ---------------------------------------------------------------------------

def extract_yaml(text: str) -> Any:
    match = _YAML_FENCE.search(text)
    body = match.group(1) if match else text.strip()
    if not body:
        raise OutputParseError(OutputFormat.YAML, "empty response", response_text=text)
    try:
        return yaml.safe_load(body)
    except yaml.YAMLError as e:
        raise OutputParseError(OutputFormat.YAML, str(e), response_text=text) from e


# ---------------------------------------------------------------------------
# XML
# ---------------------------------------------------------------------------

def extract_xml(text: str, schema: Mapping[str, Any] | None = None) -> Any:
    """Parse XML into a JSON-like value.

    The root element stands for the whole value; its tag is ignored.
    Child elements become object members, repeated tags become lists and
    attributes become members too.  Leaf text is coerced using *schema*
    when one is given, otherwise left as strings.
    """
    match = _XML_FENCE.search(text)
    body = match.group(1) if match else text.strip()
    if not body.startswith("<"):
        start = body.find("<")
        if start == -1:
            raise OutputParseError(OutputFormat.XML, "no XML element found", response_text=text)
        body = body[start:body.rfind(">") + 1]
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise OutputParseError(OutputFormat.XML, str(e), response_text=text) from e

    try:
        return _element_value(root, schema, schema)
    except ValueError as e:
        raise OutputParseError(OutputFormat.XML, str(e), response_text=text) from e


def _element_value(elem: ET.Element, schema: Any, root: Any) -> Any:
    schema = _resolve(schema, root)
    kind = _schema_type(schema)
    children = list(elem)

    if kind == "array":
        items = schema.get("items") if isinstance(schema, dict) else None
        return [_element_value(child, items, root) for child in children]

    if children or elem.attrib or kind == "object":
        props = schema.get("properties", {}) if isinstance(schema, dict) else {}
        value: dict[str, Any] = {}
        for name, raw in elem.attrib.items():
            value[name] = _coerce_text(raw, _resolve(props.get(name), root))
        for child in children:
            prop = _resolve(props.get(child.tag), root)
            if _schema_type(prop) == "array":
                value.setdefault(child.tag, []).append(
                    _element_value(child, prop.get("items"), root)
                )
                continue
            item = _element_value(child, prop, root)
            if child.tag in value:
                existing = value[child.tag]
                if not isinstance(existing, list):
                    value[child.tag] = [existing]
                value[child.tag].append(item)
            else:
                value[child.tag] = item
        return value

    return _coerce_text((elem.text or "").strip(), schema)


def _coerce_text(raw: str, schema: Any) -> Any:
    kind = _schema_type(schema)
    if kind == "integer":
        return int(raw)
    if kind == "number":
        return float(raw)
    if kind == "boolean":
        lowered = raw.lower()
        if lowered in ("true", "1"):
            return True
        if lowered in ("false", "0"):
            return False
        raise ValueError(f"not a boolean: {raw!r}")
    if kind == "null" and raw == "":
        return None
    return raw


def _schema_type(schema: Any) -> str | None:
    """The first non-null type a schema allows, if it names one."""
    if not isinstance(schema, dict):
        return None
    kind = schema.get("type")
    if isinstance(kind, list):
        kind = next((k for k in kind if k != "null"), None)
    if kind:
        return kind
    # Optional fields: anyOf [{X}, {"type": "null"}]
    for branch in schema.get("anyOf", ()) or schema.get("oneOf", ()):
        branch_type = _schema_type(branch)
        if branch_type and branch_type != "null":
            return branch_type
    if "properties" in schema:
        return "object"
    return None


def _resolve(schema: Any, root: Any) -> Any:
    """Follow a local ``$ref`` and unwrap nullable ``anyOf`` branches."""
    seen = 0
    while isinstance(schema, dict) and seen < 32:
        seen += 1
        ref = schema.get("$ref")
        if isinstance(ref, str) and ref.startswith("#/"):
            target: Any = root
            for part in ref[2:].split("/"):
                part = part.replace("~1", "/").replace("~0", "~")
                if not isinstance(target, dict) or part not in target:
                    _logger.debug("Unresolvable $ref %s", ref)
                    return None
                target = target[part]
            schema = target
            continue
        branches = schema.get("anyOf") or schema.get("oneOf")
        if branches and "type" not in schema:
            non_null = [b for b in branches if not (isinstance(b, dict) and b.get("type") == "null")]
            if len(non_null) == 1:
                schema = non_null[0]
                continue
        break
    return schema
