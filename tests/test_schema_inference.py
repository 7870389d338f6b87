import pytest

from schema_inference import FieldType, analyze_value, detect_string_format, infer_schema


@pytest.mark.parametrize("value, expected", [
    ("ada@example.com", "email"),
    ("https://example.com/a", "uri"),
    ("123e4567-e89b-12d3-a456-426614174000", "uuid"),
    ("10.0.0.1", "ipv4"),
    ("2024-01-31", "date"),
    ("2024-01-31T10:00:00Z", "date-time"),
    ("hello", None),
])
def test_detect_string_format(value, expected):
    assert detect_string_format(value) == expected


def test_bool_is_not_integer():
    assert analyze_value("flag", True).type == FieldType.BOOLEAN
    assert analyze_value("count", 3).type == FieldType.INTEGER
    assert analyze_value("ratio", 0.5).type == FieldType.NUMBER


def test_infer_object_schema():
    schema = infer_schema({
        "id": 1,
        "email": "ada@example.com",
        "nickname": None,
        "tags": ["a", "b"],
        "address": {"city": "London"},
    })

    assert schema["type"] == "object"
    assert schema["additionalProperties"] is False
    assert schema["required"] == ["id", "email", "tags", "address"]
    assert schema["properties"]["email"] == {"type": "string", "format": "email"}
    assert schema["properties"]["nickname"] == {"type": "null"}
    assert schema["properties"]["tags"] == {"type": "array", "items": {"type": "string"}}
    nested = schema["properties"]["address"]
    assert nested["required"] == ["city"]
    assert "additionalProperties" not in nested


def test_infer_array_and_scalar():
    assert infer_schema([]) == {"type": "array", "items": {}}
    assert infer_schema([{"x": 1}])["items"]["properties"] == {"x": {"type": "integer"}}
    assert infer_schema("plain") == {"type": "string"}
