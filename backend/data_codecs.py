# -*- coding: utf-8 -*-
"""
Data Codecs
Export and import of mock data payloads as JSON, CSV, YAML and XML
"""

import csv
import io
import json
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import yaml

from engine_errors import UnsupportedFormatError, ValidationError

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'
ENVELOPE_KEYS = {"data", "metadata", "checksum"}
_XML_NAME = re.compile(r'^[A-Za-z_][A-Za-z0-9_.-]*$')
_JSON_LITERAL = re.compile(r'^(-?\d+(\.\d+)?([eE][+-]?\d+)?|true|false|null)$')
_JSON_OPENERS = ("{", "[", "\"")


class DataFormat(Enum):
    """Serialization forms for mock data"""
    JSON = "json"
    CSV = "csv"
    YAML = "yaml"
    XML = "xml"


def coerce_format(value) -> DataFormat:
    if isinstance(value, DataFormat):
        return value
    normalized = str(value).strip().lower()
    if normalized == "yml":
        normalized = "yaml"
    try:
        return DataFormat(normalized)
    except ValueError:
        raise UnsupportedFormatError(str(value), [f.value for f in DataFormat])


@dataclass
class ImportedPayload:
    """Decoded payload plus the metadata envelope it came in, if any"""
    data: Any
    envelope: Optional[Dict[str, Any]] = None


# ============================================================================
# EXPORT
# ============================================================================

def export_payload(payload: Any, fmt, envelope: Optional[Dict[str, Any]] = None) -> str:
    """
    Serialize a payload. When `envelope` is given (a data set's full
    dictionary form) it is serialized instead of the bare payload, except
    for CSV which is always tabular.
    """
    fmt = coerce_format(fmt)
    document = envelope if envelope is not None else payload

    if fmt == DataFormat.JSON:
        return json.dumps(document, indent=2, ensure_ascii=False, default=str)
    if fmt == DataFormat.CSV:
        return to_csv(payload)
    if fmt == DataFormat.YAML:
        return yaml.safe_dump(document, sort_keys=False, allow_unicode=True, default_flow_style=False)
    return to_xml(document, root_tag="mock_data_set" if envelope is not None else "data")


def _csv_rows(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, dict):
        return [payload]
    if isinstance(payload, list) and all(isinstance(item, dict) for item in payload):
        return payload
    raise ValidationError("csv_requires_objects", "CSV export needs an object or an array of objects")


def _csv_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        # Strings that would read back as another type are written JSON-quoted.
        if value == "" or _JSON_LITERAL.match(value) or value[:1] in _JSON_OPENERS:
            return json.dumps(value, ensure_ascii=False)
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def to_csv(payload: Any) -> str:
    rows = _csv_rows(payload)
    headers: List[str] = []
    for row in rows:
        for key in row:
            if key not in headers:
                headers.append(key)

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(headers)
    for row in rows:
        writer.writerow([_csv_cell(row.get(header)) for header in headers])
    return buffer.getvalue()


def _xml_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return "string"


def _append_xml(parent: ET.Element, key: str, value: Any):
    if _XML_NAME.match(key) and not key.lower().startswith("xml"):
        element = ET.SubElement(parent, key)
    else:
        element = ET.SubElement(parent, "entry", {"key": key})
    _fill_xml(element, value)


def _fill_xml(element: ET.Element, value: Any):
    kind = _xml_type(value)
    element.set("type", kind)
    if kind == "object":
        for key, child in value.items():
            _append_xml(element, str(key), child)
    elif kind == "array":
        for child in value:
            _fill_xml(ET.SubElement(element, "item"), child)
    elif kind == "boolean":
        element.text = "true" if value else "false"
    elif kind != "null":
        element.text = str(value)


def to_xml(document: Any, root_tag: str = "data") -> str:
    root = ET.Element(root_tag)
    _fill_xml(root, document)
    return f"{XML_DECLARATION}\n{ET.tostring(root, encoding='unicode')}"


# ============================================================================
# IMPORT
# ============================================================================

def import_payload(text: str, fmt) -> ImportedPayload:
    fmt = coerce_format(fmt)
    try:
        if fmt == DataFormat.JSON:
            document = json.loads(text)
        elif fmt == DataFormat.CSV:
            return ImportedPayload(data=from_csv(text))
        elif fmt == DataFormat.YAML:
            document = yaml.safe_load(text)
        else:
            return from_xml(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValidationError("invalid_import_payload", f"Invalid {fmt.value} payload: {e}")

    if isinstance(document, dict) and ENVELOPE_KEYS.issubset(document):
        return ImportedPayload(data=document["data"], envelope=document)
    return ImportedPayload(data=document)


def _parse_csv_cell(cell: str) -> Any:
    if cell == "":
        return None
    if _JSON_LITERAL.match(cell) or cell[:1] in _JSON_OPENERS:
        try:
            return json.loads(cell)
        except json.JSONDecodeError:
            return cell
    return cell


def from_csv(text: str) -> List[Dict[str, Any]]:
    reader = csv.DictReader(io.StringIO(text))
    if reader.fieldnames is None:
        return []
    try:
        return [
            {key: _parse_csv_cell(value or "") for key, value in row.items() if key is not None}
            for row in reader
        ]
    except csv.Error as e:
        raise ValidationError("invalid_import_payload", f"Invalid csv payload: {e}")


def _read_xml(element: ET.Element) -> Any:
    kind = element.get("type")
    children = list(element)

    if kind is None:
        # Untyped documents: infer structure from the element layout
        if not children:
            return element.text or ""
        kind = "array" if all(child.tag == "item" for child in children) else "object"

    if kind == "object":
        return {child.get("key", child.tag) if child.tag == "entry" else child.tag: _read_xml(child)
                for child in children}
    if kind == "array":
        return [_read_xml(child) for child in children]
    if kind == "null":
        return None
    text = element.text or ""
    if kind == "boolean":
        return text == "true"
    if kind == "integer":
        return int(text)
    if kind == "number":
        return float(text)
    return text


def from_xml(text: str) -> ImportedPayload:
    try:
        root = ET.fromstring(text.strip().encode("utf-8"))
        document = _read_xml(root)
    except (ET.ParseError, ValueError) as e:
        raise ValidationError("invalid_import_payload", f"Invalid xml payload: {e}")

    if root.tag == "mock_data_set" and isinstance(document, dict) and "data" in document:
        return ImportedPayload(data=document["data"], envelope=document)
    return ImportedPayload(data=document)
