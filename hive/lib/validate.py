"""
Schema validation for Hive.

AI classifier replies are free text that should contain one JSON object.
The object is pulled out of the reply and checked against the schemas
shipped in hive/schemas before anything acts on it.
"""

import json
import re
from pathlib import Path

import jsonschema


class ValidationError(Exception):
    """A reply had no usable JSON object or it failed its schema."""

    def __init__(self, schema_name: str, message: str, path: str | None = None):
        self.schema_name = schema_name
        self.path = path
        super().__init__(f"[{schema_name}] {message}" + (f" at {path}" if path else ""))


_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

_schema_cache: dict[str, dict] = {}


def schema_path(schema_name: str) -> Path:
    return Path(__file__).parent.parent / "schemas" / f"{schema_name}.schema.json"


def load_schema(schema_name: str) -> dict:
    if schema_name not in _schema_cache:
        path = schema_path(schema_name)
        if not path.exists():
            raise ValidationError(schema_name, f"Schema file not found: {path}")
        _schema_cache[schema_name] = json.loads(path.read_text())
    return _schema_cache[schema_name]


def validate(data: dict, schema_name: str) -> None:
    """
    Validate data against named schema.

    Raises:
        ValidationError: If validation fails
    """
    try:
        jsonschema.validate(instance=data, schema=load_schema(schema_name))
    except jsonschema.ValidationError as e:
        path = ".".join(str(p) for p in e.absolute_path) if e.absolute_path else "(root)"
        raise ValidationError(schema_name, e.message, path) from None


def extract_json_object(raw: str, schema_name: str) -> dict:
    """
    Parse the outermost {...} span of a CLI reply and validate it.

    Raises:
        ValidationError: No object found, invalid JSON, or schema mismatch
    """
    match = _JSON_OBJECT_RE.search(raw or "")
    if not match:
        raise ValidationError(schema_name, "No JSON object in reply")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ValidationError(schema_name, f"Invalid JSON: {e}") from None
    if not isinstance(data, dict):
        raise ValidationError(schema_name, "Reply is not a JSON object")
    validate(data, schema_name)
    return data
