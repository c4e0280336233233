"""Field schema contracts for importable CRM entities."""

from __future__ import annotations

from .fields import (
    EntitySchema,
    FieldSchemaError,
    FieldType,
    ImportField,
    ItemType,
    get_entity_schema,
    get_entity_types,
    guess_mapping,
    load_entity_schema,
    normalize_header,
)

__all__ = [
    "EntitySchema",
    "FieldSchemaError",
    "FieldType",
    "ImportField",
    "ItemType",
    "get_entity_schema",
    "get_entity_types",
    "guess_mapping",
    "load_entity_schema",
    "normalize_header",
]
