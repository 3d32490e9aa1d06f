"""schema_validation.py — Validate tool-call arguments against a tool's JSON-Schema subset.

Supported keywords: type, required, properties, additionalProperties (false),
default, enum, minimum, maximum, minLength, maxLength, format (uuid,
date-time), items, minItems, maxItems.

Every violated constraint is reported, not just the first one. Tools that
declare allowed phases also reject a ``usage.phase`` outside that set.
"""
from __future__ import annotations

import copy
import datetime as dt
import uuid
from typing import Any, Dict, List, Optional

from .errors import SchemaValidationError
from .tool_registry import ToolDefinition

__all__ = [
    "check_schema",
    "validate",
]

_TYPE_NAMES = {
    "object": "an object",
    "array": "an array",
    "string": "a string",
    "integer": "an integer",
    "number": "a number",
    "boolean": "a boolean",
    "null": "null",
}


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _violation(violations: List[Dict[str, Any]], path: str, constraint: str, message: str) -> None:
    violations.append({"field": path or "<root>", "constraint": constraint, "message": message})


def _matches_type(expected: str, value: Any) -> bool:
    if expected == "object":
        return isinstance(value, dict)
    if expected == "array":
        return isinstance(value, list)
    if expected == "string":
        return isinstance(value, str)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "null":
        return value is None
    if isinstance(value, bool):
        return False
    if expected == "integer":
        return isinstance(value, int) or (isinstance(value, float) and value.is_integer())
    if expected == "number":
        return isinstance(value, (int, float))
    return True


def _valid_format(fmt: str, value: str) -> bool:
    if fmt == "uuid":
        try:
            uuid.UUID(value)
        except ValueError:
            return False
        return True
    if fmt == "date-time":
        try:
            dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return False
        return True
    return True


def check_schema(schema: Dict[str, Any], value: Any, path: str, violations: List[Dict[str, Any]]) -> Any:
    """Check ``value`` against ``schema``; append violations and return the narrowed value."""
    declared = schema.get("type")
    if declared is not None:
        allowed = declared if isinstance(declared, list) else [declared]
        matched: Optional[str] = next((t for t in allowed if _matches_type(t, value)), None)
        if matched is None:
            wanted = " or ".join(_TYPE_NAMES.get(t, t) for t in allowed)
            _violation(violations, path, "type", f"must be {wanted}")
            return value
        if matched == "integer" and isinstance(value, float):
            value = int(value)
    else:
        matched = None

    if "enum" in schema and value not in schema["enum"]:
        options = ", ".join(repr(v) for v in schema["enum"])
        _violation(violations, path, "enum", f"must be one of {options}")

    if isinstance(value, str):
        if "minLength" in schema and len(value) < int(schema["minLength"]):
            _violation(violations, path, "minLength", f"must be at least {schema['minLength']} characters")
        if "maxLength" in schema and len(value) > int(schema["maxLength"]):
            _violation(violations, path, "maxLength", f"must be at most {schema['maxLength']} characters")
        fmt = schema.get("format")
        if fmt and not _valid_format(str(fmt), value):
            _violation(violations, path, "format", f"must be a valid {fmt}")

    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        if "minimum" in schema and value < schema["minimum"]:
            _violation(violations, path, "minimum", f"must be >= {schema['minimum']}")
        if "maximum" in schema and value > schema["maximum"]:
            _violation(violations, path, "maximum", f"must be <= {schema['maximum']}")

    elif isinstance(value, list):
        if "minItems" in schema and len(value) < int(schema["minItems"]):
            _violation(violations, path, "minItems", f"must contain at least {schema['minItems']} items")
        if "maxItems" in schema and len(value) > int(schema["maxItems"]):
            _violation(violations, path, "maxItems", f"must contain at most {schema['maxItems']} items")
        item_schema = schema.get("items")
        if isinstance(item_schema, dict):
            value = [check_schema(item_schema, item, f"{path}[{idx}]", violations) for idx, item in enumerate(value)]

    elif isinstance(value, dict) and (matched == "object" or "properties" in schema):
        value = _check_object(schema, value, path, violations)

    return value


def _check_object(schema: Dict[str, Any], value: Dict[str, Any], path: str, violations: List[Dict[str, Any]]) -> Dict[str, Any]:
    properties: Dict[str, Any] = schema.get("properties") or {}
    out: Dict[str, Any] = {}

    for key in schema.get("required") or []:
        if key not in value:
            _violation(violations, _join(path, key), "required", "is required")

    for key, raw in value.items():
        prop_schema = properties.get(key)
        if prop_schema is None:
            if schema.get("additionalProperties") is False:
                _violation(violations, _join(path, key), "additionalProperties", "is not an allowed property")
                continue
            out[key] = raw
            continue
        out[key] = check_schema(prop_schema, raw, _join(path, key), violations)

    for key, prop_schema in properties.items():
        if key not in out and isinstance(prop_schema, dict) and "default" in prop_schema:
            out[key] = copy.deepcopy(prop_schema["default"])

    return out


def validate(tool: ToolDefinition, args: Any) -> Dict[str, Any]:
    """Return the narrowed arguments for ``tool`` or raise SchemaValidationError."""
    if args is None:
        args = {}
    violations: List[Dict[str, Any]] = []
    narrowed = check_schema(tool.input_schema, args, "", violations)
    usage = narrowed.get("usage") if isinstance(narrowed, dict) else None
    if tool.allowed_phases and isinstance(usage, dict) and usage.get("phase") is not None:
        if usage["phase"] not in tool.allowed_phases:
            allowed = ", ".join(tool.allowed_phases)
            _violation(
                violations,
                "usage.phase",
                "allowedPhases",
                f"{tool.name} 도구는 {allowed} 단계에서만 호출할 수 있습니다.",
            )
    if violations:
        raise SchemaValidationError(tool.name, violations)
    return narrowed
