"""Importable field schemas for each CRM entity type.

Schemas are declared in YAML (``config/import_fields/<entity>.yaml``) so the
set of importable fields can change without touching pipeline code. Each file
lists the fields in display order with their type tag, validation rules and
header guesses used for auto-mapping.
"""

from __future__ import annotations

import enum
import hashlib
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import yaml
from flask import current_app, has_app_context
from rapidfuzz import fuzz, process

DEFAULT_SCHEMA_DIR = Path(__file__).resolve().parents[3] / "config" / "import_fields"
FUZZY_GUESS_THRESHOLD = 90


class FieldSchemaError(RuntimeError):
    """Raised when a field schema file cannot be loaded or validated."""


class FieldType(str, enum.Enum):
    TEXT = "text"
    DATE = "date"
    DATETIME = "datetime"
    NUMBER = "number"
    CHOICE = "choice"
    MULTI_CHOICE = "multi_choice"
    MULTI_VALUE = "multi_value"
    RELATIONSHIP = "relationship"

    @property
    def is_temporal(self) -> bool:
        return self in (FieldType.DATE, FieldType.DATETIME)


class ItemType(str, enum.Enum):
    """Token type of a multi-value field."""

    TEXT = "text"
    EMAIL = "email"
    PHONE = "phone"
    URL = "url"
    DOMAIN = "domain"


@dataclass(frozen=True)
class ImportField:
    """Metadata describing one importable field."""

    key: str
    label: str
    type: FieldType = FieldType.TEXT
    required: bool = False
    rules: tuple[str, ...] = ()
    guesses: tuple[str, ...] = ()
    options: tuple[str, ...] = ()
    item_type: ItemType | None = None
    relationship: str | None = None
    example: str | None = None

    @property
    def is_relationship(self) -> bool:
        return self.type is FieldType.RELATIONSHIP

    def headers(self) -> tuple[str, ...]:
        """Return the key, label and guesses used for header matching."""
        return (self.key, self.label, *self.guesses)

    def as_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "label": self.label,
            "type": self.type.value,
            "required": self.required,
            "rules": list(self.rules),
            "options": list(self.options),
            "item_type": self.item_type.value if self.item_type else None,
            "relationship": self.relationship,
            "example": self.example,
        }


@dataclass(frozen=True)
class EntitySchema:
    version: int
    entity_type: str
    label: str
    fields: tuple[ImportField, ...]
    lookup_field: str | None = None
    lookup_kind: str | None = None
    name_field: str = "name"
    matchable: bool = True
    checksum: str = ""
    path: Path | None = field(default=None, compare=False)

    def get(self, key: str) -> ImportField | None:
        for candidate in self.fields:
            if candidate.key == key:
                return candidate
        return None

    def require(self, key: str) -> ImportField:
        spec = self.get(key)
        if spec is None:
            raise FieldSchemaError(f"Unknown field '{key}' for entity '{self.entity_type}'.")
        return spec

    @property
    def required_fields(self) -> tuple[ImportField, ...]:
        return tuple(spec for spec in self.fields if spec.required)

    def as_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "label": self.label,
            "lookup_field": self.lookup_field,
            "lookup_kind": self.lookup_kind,
            "name_field": self.name_field,
            "matchable": self.matchable,
            "fields": [spec.as_dict() for spec in self.fields],
        }


def normalize_header(header: str) -> str:
    """Normalize a CSV header for comparison (case/space/underscore agnostic)."""

    token = header.strip().lstrip("\ufeff").lower()
    for char in (" ", "-", "."):
        token = token.replace(char, "_")
    while "__" in token:
        token = token.replace("__", "_")
    return token.strip("_")


def _as_tuple(value: Any, *, attribute: str, entity: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, Iterable):
        raise FieldSchemaError(f"Field attribute '{attribute}' for entity '{entity}' must be a list.")
    return tuple(str(item) for item in value)


def _parse_field(entry: Any, entity: str) -> ImportField:
    if not isinstance(entry, Mapping):
        raise FieldSchemaError(f"Field definition must be a mapping, got {entry!r}")
    key = str(entry.get("key") or "").strip()
    if not key:
        raise FieldSchemaError(f"Field definition for entity '{entity}' is missing a key.")
    try:
        field_type = FieldType(str(entry.get("type", "text")))
        item_type = ItemType(str(entry["item_type"])) if entry.get("item_type") else None
    except ValueError as exc:
        raise FieldSchemaError(f"Invalid type for field '{key}' of entity '{entity}': {exc}") from exc

    options = _as_tuple(entry.get("options"), attribute="options", entity=entity)
    if field_type in (FieldType.CHOICE, FieldType.MULTI_CHOICE) and not options:
        raise FieldSchemaError(f"Choice field '{key}' of entity '{entity}' declares no options.")
    if field_type is FieldType.MULTI_VALUE and item_type is None:
        item_type = ItemType.TEXT
    relationship = entry.get("relationship")
    if field_type is FieldType.RELATIONSHIP and not relationship:
        raise FieldSchemaError(f"Relationship field '{key}' of entity '{entity}' has no target.")

    return ImportField(
        key=key,
        label=str(entry.get("label") or key.replace("_", " ").capitalize()),
        type=field_type,
        required=bool(entry.get("required", False)),
        rules=_as_tuple(entry.get("rules"), attribute="rules", entity=entity),
        guesses=_as_tuple(entry.get("guesses"), attribute="guesses", entity=entity),
        options=options,
        item_type=item_type,
        relationship=str(relationship) if relationship else None,
        example=str(entry["example"]) if entry.get("example") is not None else None,
    )


def load_entity_schema(path: str | Path) -> EntitySchema:
    """
    Load and validate a YAML field schema.
    """

    path = Path(path)
    if not path.exists():
        raise FieldSchemaError(f"Field schema not found at {path}")

    text = path.read_text(encoding="utf-8")
    try:
        raw = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - YAML parser errors
        raise FieldSchemaError(f"Failed to parse field schema YAML at {path}: {exc}") from exc

    try:
        version = int(raw["version"])
        entity = str(raw["entity"]).strip()
        fields_payload = raw["fields"]
    except KeyError as exc:
        raise FieldSchemaError(f"Missing required schema attribute: {exc}") from exc
    except (TypeError, ValueError) as exc:
        raise FieldSchemaError(f"Invalid schema attribute: {exc}") from exc

    fields: list[ImportField] = []
    seen: set[str] = set()
    for entry in fields_payload or ():
        spec = _parse_field(entry, entity)
        if spec.key in seen:
            raise FieldSchemaError(f"Duplicate field '{spec.key}' in schema for '{entity}'.")
        seen.add(spec.key)
        fields.append(spec)

    lookup = raw.get("lookup") or {}
    lookup_field = lookup.get("field")
    if lookup_field and lookup_field not in seen:
        raise FieldSchemaError(f"Lookup field '{lookup_field}' is not declared for entity '{entity}'.")
    name_field = str(raw.get("name_field") or "name")
    if name_field not in seen:
        raise FieldSchemaError(f"Name field '{name_field}' is not declared for entity '{entity}'.")

    return EntitySchema(
        version=version,
        entity_type=entity,
        label=str(raw.get("label") or entity.title()),
        fields=tuple(fields),
        lookup_field=lookup_field,
        lookup_kind=lookup.get("kind"),
        name_field=name_field,
        matchable=bool(raw.get("matchable", True)),
        checksum=hashlib.sha256(text.encode("utf-8")).hexdigest(),
        path=path,
    )


@lru_cache(maxsize=8)
def _load_schema_directory(directory: str) -> dict[str, EntitySchema]:
    schemas: dict[str, EntitySchema] = {}
    for path in sorted(Path(directory).glob("*.yaml")):
        schema = load_entity_schema(path)
        schemas[schema.entity_type] = schema
    return schemas


def _schema_directory() -> Path:
    if has_app_context():
        configured = current_app.config.get("IMPORTER_FIELD_SCHEMA_DIR")
        if configured:
            return Path(configured)
    return DEFAULT_SCHEMA_DIR


def get_entity_types() -> tuple[str, ...]:
    return tuple(_load_schema_directory(str(_schema_directory())))


def get_entity_schema(entity_type: str) -> EntitySchema:
    """Return the field schema for ``entity_type``."""

    schemas = _load_schema_directory(str(_schema_directory()))
    try:
        return schemas[entity_type]
    except KeyError as exc:
        raise FieldSchemaError(
            f"Unknown entity type '{entity_type}'. Expected one of: {', '.join(sorted(schemas))}."
        ) from exc


def guess_mapping(schema: EntitySchema, headers: Sequence[str]) -> dict[str, str]:
    """
    Propose a field -> column mapping from header names.

    Exact (normalized) matches against key/label/guesses win; remaining fields
    fall back to a fuzzy comparison. Each column is used at most once.
    """

    normalized_headers = {header: normalize_header(header) for header in headers if header}
    mapping: dict[str, str] = {}
    used: set[str] = set()

    for spec in schema.fields:
        candidates = {normalize_header(alias) for alias in spec.headers()}
        for header, normalized in normalized_headers.items():
            if header in used:
                continue
            if normalized in candidates:
                mapping[spec.key] = header
                used.add(header)
                break

    for spec in schema.fields:
        if spec.key in mapping:
            continue
        remaining = {header: normalized for header, normalized in normalized_headers.items() if header not in used}
        if not remaining:
            break
        aliases = [normalize_header(alias) for alias in spec.headers()]
        best_header: str | None = None
        best_score = 0.0
        for header, normalized in remaining.items():
            result = process.extractOne(normalized, aliases, scorer=fuzz.ratio)
            if result is None:
                continue
            score = result[1]
            if score > best_score:
                best_header, best_score = header, score
        if best_header is not None and best_score >= FUZZY_GUESS_THRESHOLD:
            mapping[spec.key] = best_header
            used.add(best_header)

    return mapping
