"""Structural JSON Schema validation for task parameters.

Supports the keywords of JSON Schema draft 4 that can be checked without
resolving remote documents. Data is plain decoded JSON: dict, list, str,
int/float, bool and None.
"""

import re
from decimal import Decimal
from typing import Any, Iterable, List, Optional

from async_timetable.errors import SchemaError


def json_type(data: Any) -> str:
    """Name of the JSON type of a decoded value."""
    if data is None:
        return "null"
    if isinstance(data, bool):
        return "boolean"
    if isinstance(data, (int, float, Decimal)):
        return "number"
    if isinstance(data, str):
        return "string"
    if isinstance(data, list):
        return "array"
    if isinstance(data, dict):
        return "object"
    raise SchemaError(f"Value of type {type(data).__name__} is not JSON data")


def json_equal(left: Any, right: Any) -> bool:
    """Compare two JSON values the way jsonb does: 1 == 1.0, true != 1."""
    left_type, right_type = json_type(left), json_type(right)
    if left_type != right_type:
        return False
    if left_type == "number":
        return _number(left) == _number(right)
    if left_type == "array":
        return len(left) == len(right) and all(
            json_equal(a, b) for a, b in zip(left, right)
        )
    if left_type == "object":
        return left.keys() == right.keys() and all(
            json_equal(value, right[key]) for key, value in left.items()
        )
    return left == right


def _number(value: Any) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _schema_number(schema: dict, keyword: str) -> Decimal:
    value = schema[keyword]
    if json_type(value) != "number":
        raise SchemaError(f"'{keyword}' must be a number, got {value!r}")
    return _number(value)


def _validate_type(type_name: str, data: Any) -> bool:
    if type_name == "integer":
        if json_type(data) != "number":
            return False
        value = _number(data)
        return value == value.to_integral_value()
    return type_name == json_type(data)


def _resolve_ref(ref: str, root_schema: dict) -> Any:
    parts = ref.split("/")
    if parts[0] != "#":
        raise SchemaError(f"Only refs anchored at the root are supported: {ref!r}")
    target: Any = root_schema
    for part in parts[1:]:
        part = part.replace("~1", "/").replace("~0", "~")
        if isinstance(target, dict) and part in target:
            target = target[part]
        elif isinstance(target, list) and part.isdigit() and int(part) < len(target):
            target = target[int(part)]
        else:
            raise SchemaError(f"Unresolvable $ref {ref!r}")
    return target


def _all_valid(schemas: Iterable[Any], data: Any, root_schema: dict) -> bool:
    return all(validate_json_schema(s, data, root_schema) for s in schemas)


def _check_type(schema: dict, data: Any) -> bool:
    types = schema["type"]
    if not isinstance(types, list):
        types = [types]
    return any(_validate_type(t, data) for t in types)


def _check_object(schema: dict, data: Any, root_schema: dict) -> bool:
    properties = schema.get("properties") or {}
    is_object = isinstance(data, dict)

    if is_object:
        for prop, sub_schema in properties.items():
            if prop in data and not validate_json_schema(sub_schema, data[prop], root_schema):
                return False

    if "required" in schema and is_object:
        if not all(key in data for key in schema["required"]):
            return False
    return True


def _check_items(schema: dict, data: Any, root_schema: dict) -> bool:
    if not isinstance(data, list):
        return True
    items = schema.get("items")

    if isinstance(items, dict):
        if not all(validate_json_schema(items, item, root_schema) for item in data):
            return False
    elif isinstance(items, list):
        for item_schema, item in zip(items, data):
            if not validate_json_schema(item_schema, item, root_schema):
                return False

    additional = schema.get("additionalItems")
    if isinstance(items, list) and len(data) > len(items):
        extra = data[len(items):]
        if additional is False:
            return False
        if isinstance(additional, dict):
            if not all(validate_json_schema(additional, item, root_schema) for item in extra):
                return False
    return True


def _check_numeric(schema: dict, data: Any) -> bool:
    if json_type(data) != "number":
        return True
    value = _number(data)

    if "minimum" in schema and value < _schema_number(schema, "minimum"):
        return False
    if "maximum" in schema and value > _schema_number(schema, "maximum"):
        return False

    exclusive_min = schema.get("exclusiveMinimum")
    if exclusive_min is True and "minimum" in schema:
        if value == _schema_number(schema, "minimum"):
            return False
    elif json_type(exclusive_min) == "number" and value <= _number(exclusive_min):
        return False

    exclusive_max = schema.get("exclusiveMaximum")
    if exclusive_max is True and "maximum" in schema:
        if value == _schema_number(schema, "maximum"):
            return False
    elif json_type(exclusive_max) == "number" and value >= _number(exclusive_max):
        return False

    if "multipleOf" in schema:
        divisor = _schema_number(schema, "multipleOf")
        if divisor <= 0:
            raise SchemaError(f"'multipleOf' must be positive, got {schema['multipleOf']!r}")
        if value % divisor != 0:
            return False
    return True


def _check_combinators(schema: dict, data: Any, root_schema: dict) -> bool:
    if "anyOf" in schema:
        if not any(validate_json_schema(s, data, root_schema) for s in schema["anyOf"]):
            return False
    if "allOf" in schema:
        if not _all_valid(schema["allOf"], data, root_schema):
            return False
    if "oneOf" in schema:
        passed = sum(1 for s in schema["oneOf"] if validate_json_schema(s, data, root_schema))
        if passed != 1:
            return False
    return True


def _has_unique_items(data: List[Any]) -> bool:
    for i, left in enumerate(data):
        for right in data[i + 1:]:
            if json_equal(left, right):
                return False
    return True


def _additional_property_keys(schema: dict, data: dict) -> List[str]:
    properties = schema.get("properties") or {}
    patterns = list((schema.get("patternProperties") or {}).keys())
    return [
        key
        for key in data
        if key not in properties and not any(re.search(p, key) for p in patterns)
    ]


def _check_additional_properties(schema: dict, data: Any, root_schema: dict) -> bool:
    if "additionalProperties" not in schema or not isinstance(data, dict):
        return True
    additional = schema["additionalProperties"]
    keys = _additional_property_keys(schema, data)
    if isinstance(additional, bool):
        return additional or not keys
    return all(validate_json_schema(additional, data[key], root_schema) for key in keys)


def _check_string(schema: dict, data: Any) -> bool:
    if not isinstance(data, str):
        return True
    if "minLength" in schema and len(data) < _schema_number(schema, "minLength"):
        return False
    if "maxLength" in schema and len(data) > _schema_number(schema, "maxLength"):
        return False
    return True


def _check_sizes(schema: dict, data: Any) -> bool:
    if isinstance(data, dict):
        if "maxProperties" in schema and len(data) > _schema_number(schema, "maxProperties"):
            return False
        if "minProperties" in schema and len(data) < _schema_number(schema, "minProperties"):
            return False
    if isinstance(data, list):
        if "maxItems" in schema and len(data) > _schema_number(schema, "maxItems"):
            return False
        if "minItems" in schema and len(data) < _schema_number(schema, "minItems"):
            return False
    return True


def _check_dependencies(schema: dict, data: Any, root_schema: dict) -> bool:
    if not isinstance(data, dict):
        return True
    for prop, dependency in schema["dependencies"].items():
        if prop not in data:
            continue
        if isinstance(dependency, list):
            if not all(dep in data for dep in dependency):
                return False
        elif not validate_json_schema(dependency, data, root_schema):
            return False
    return True


def _check_pattern_properties(schema: dict, data: Any, root_schema: dict) -> bool:
    if not isinstance(data, dict):
        return True
    for prop, value in data.items():
        for pattern, sub_schema in schema["patternProperties"].items():
            if re.search(pattern, prop) and not validate_json_schema(sub_schema, value, root_schema):
                return False
    return True


def validate_json_schema(schema: Any, data: Any, root_schema: Optional[Any] = None) -> bool:
    """
    Validate decoded JSON data against a JSON schema.

    Keywords are checked in a fixed order and validation stops at the first
    failing one. Data that simply breaks a rule yields False; only a schema
    the validator cannot interpret raises.

    Args:
        schema: Schema (object, or boolean true/false)
        data: Decoded JSON value to check
        root_schema: Document that ``$ref`` pointers resolve against,
            defaults to ``schema``

    Returns:
        True if the data satisfies every keyword

    Raises:
        SchemaError: If the schema is not an object, or a ``$ref`` is not
            root-anchored or cannot be resolved
    """
    if isinstance(schema, bool):
        return schema
    if not isinstance(schema, dict):
        raise SchemaError(f"Schema must be an object, got {type(schema).__name__}")
    if root_schema is None:
        root_schema = schema

    if "type" in schema and not _check_type(schema, data):
        return False

    if not _check_object(schema, data, root_schema):
        return False

    if "items" in schema or "additionalItems" in schema:
        if not _check_items(schema, data, root_schema):
            return False

    if not _check_numeric(schema, data):
        return False

    if not _check_combinators(schema, data, root_schema):
        return False

    if schema.get("uniqueItems") is True and isinstance(data, list):
        if not _has_unique_items(data):
            return False

    if not _check_additional_properties(schema, data, root_schema):
        return False

    if "$ref" in schema:
        target = _resolve_ref(schema["$ref"], root_schema)
        if not validate_json_schema(target, data, root_schema):
            return False

    if "enum" in schema:
        if not any(json_equal(value, data) for value in schema["enum"]):
            return False

    if not _check_string(schema, data):
        return False

    if "not" in schema and validate_json_schema(schema["not"], data, root_schema):
        return False

    if not _check_sizes(schema, data):
        return False

    if "dependencies" in schema and not _check_dependencies(schema, data, root_schema):
        return False

    if "pattern" in schema and isinstance(data, str):
        if not re.search(schema["pattern"], data):
            return False

    if "patternProperties" in schema:
        if not _check_pattern_properties(schema, data, root_schema):
            return False

    return True
