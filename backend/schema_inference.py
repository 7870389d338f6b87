# -*- coding: utf-8 -*-
"""
Schema Inference Module
Infers a JSON-Schema-like shape from arbitrary payloads
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class FieldType(Enum):
    """Detected field kinds"""
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"
    NULL = "null"


# Checked in order; the first match wins
STRING_FORMATS: List[Tuple[str, str]] = [
    ('email', r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'),
    ('uri', r'^https?://[^\s/$.?#].[^\s]*$'),
    ('uuid', r'^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$'),
    ('ipv4', r'^(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)$'),
    ('date', r'^\d{4}-\d{2}-\d{2}$'),
    ('date-time', r'^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}'),
]


@dataclass
class FieldSchema:
    """Tagged descriptor for one inferred field"""
    name: str
    type: FieldType
    format: Optional[str] = None
    children: Dict[str, 'FieldSchema'] = field(default_factory=dict)
    array_item_type: Optional['FieldSchema'] = None

    @property
    def required_fields(self) -> List[str]:
        """Children that carry a value; nulls are optional"""
        return [name for name, child in self.children.items() if child.type != FieldType.NULL]


def detect_string_format(value: str) -> Optional[str]:
    for format_name, pattern in STRING_FORMATS:
        if re.match(pattern, value):
            return format_name
    return None


def analyze_value(field_name: str, value: Any) -> FieldSchema:
    """Classify a value recursively into a FieldSchema"""

    if value is None:
        return FieldSchema(name=field_name, type=FieldType.NULL)

    # bool is a subclass of int, so it has to be checked first
    if isinstance(value, bool):
        return FieldSchema(name=field_name, type=FieldType.BOOLEAN)

    if isinstance(value, int):
        return FieldSchema(name=field_name, type=FieldType.INTEGER)

    if isinstance(value, float):
        return FieldSchema(name=field_name, type=FieldType.NUMBER)

    if isinstance(value, str):
        return FieldSchema(name=field_name, type=FieldType.STRING, format=detect_string_format(value))

    if isinstance(value, (list, tuple)):
        item_schema = analyze_value(f"{field_name}_item", value[0]) if value else None
        return FieldSchema(name=field_name, type=FieldType.ARRAY, array_item_type=item_schema)

    if isinstance(value, dict):
        children = {str(key): analyze_value(str(key), val) for key, val in value.items()}
        return FieldSchema(name=field_name, type=FieldType.OBJECT, children=children)

    return FieldSchema(name=field_name, type=FieldType.STRING)


def to_json_schema(schema: FieldSchema, top_level: bool = False) -> Dict[str, Any]:
    """Render a FieldSchema as a JSON Schema fragment"""
    result: Dict[str, Any] = {"type": schema.type.value}

    if schema.format:
        result["format"] = schema.format

    if schema.type == FieldType.ARRAY:
        result["items"] = to_json_schema(schema.array_item_type) if schema.array_item_type else {}

    if schema.type == FieldType.OBJECT:
        result["properties"] = {
            name: to_json_schema(child) for name, child in schema.children.items()
        }
        result["required"] = schema.required_fields
        if top_level:
            result["additionalProperties"] = False

    return result


def infer_schema(payload: Any) -> Dict[str, Any]:
    """
    Infer a JSON Schema for a payload.

    Objects list every non-null field as required and reject unknown
    properties at the top level. Arrays take their element shape from the
    first entry.
    """
    return to_json_schema(analyze_value("root", payload), top_level=True)
