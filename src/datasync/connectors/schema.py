"""Resource schema helpers and record validation."""

from __future__ import annotations

import copy
import logging
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import best_match

from datasync.errors import ValidationError

logger = logging.getLogger(__name__)

ID_FIELD = "id"


def ensure_id_field(schema: dict[str, Any], id_column: str = ID_FIELD) -> dict[str, Any]:
    """Return a copy of *schema* that declares an ``id_column`` property.

    An existing declaration is kept as-is; otherwise a string property is
    added.
    """
    result = copy.deepcopy(schema)
    properties = result.setdefault("properties", {})
    if id_column not in properties:
        properties[id_column] = {"type": "string"}
    return result


def _nullable(fragment: dict[str, Any]) -> dict[str, Any]:
    declared = fragment.get("type")
    if declared is None:
        return fragment
    types = list(declared) if isinstance(declared, list) else [declared]
    if "null" not in types:
        types.append("null")
    return {**fragment, "type": types}


def validation_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Top-level optional properties also accept ``null``.

    Providers routinely send explicit nulls for absent fields; only required
    properties must carry a value of their declared type.
    """
    result = copy.deepcopy(schema)
    required = set(result.get("required", []))
    properties = result.get("properties", {})
    for name, fragment in properties.items():
        if name not in required and isinstance(fragment, dict):
            properties[name] = _nullable(fragment)
    return result


def drop_records_without_id(
    records: list[dict[str, Any]],
    id_column: str = ID_FIELD,
) -> tuple[list[dict[str, Any]], int]:
    """Split off records whose identifier is missing or null.

    Returns ``(kept, dropped_count)``.
    """
    kept = [record for record in records if record.get(id_column) is not None]
    return kept, len(records) - len(kept)


def validate_records(
    resource_name: str,
    schema: dict[str, Any],
    records: list[dict[str, Any]],
    id_column: str = ID_FIELD,
) -> None:
    """Validate every record against *schema*.

    Raises ``ValidationError`` naming the first offending record.
    """
    validator = Draft202012Validator(validation_schema(schema))
    for position, record in enumerate(records):
        error = best_match(validator.iter_errors(record))
        if error is None:
            continue
        path = "/".join(str(part) for part in error.absolute_path) or "<root>"
        raise ValidationError(
            f"{resource_name} record {record.get(id_column, position)!r} failed validation at {path}: {error.message}",
            resource_name=resource_name,
        )
