"""
Row resolution shared by preview and commit.

:class:`RowResolver` turns one staged row into the attributes, match and
relationship links that commit would write. Preview calls the same resolver,
so the two phases cannot disagree about what a row becomes. When
:class:`~.matching.MatchResolver` has recorded a match on the staged row, that
stored outcome is used instead of matching the row again.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, Mapping

from crm_app.importer.contracts import EntitySchema, ImportField
from crm_app.importer.errors import RowCommitError

from .matching import EntityMatcher, MatchResult, MatchType
from .normalize import email_domains, split_tokens
from .staging import MappedColumn, StagedRow
from .validation import DEFAULT_COLUMN_FORMAT, ColumnFormat, ValidationError, cast_value, validate_value

AMBIGUOUS_SKIP = "skip"
AMBIGUOUS_CREATE = "create"

# Only a missing company is created on the fly for a relationship column.
CREATABLE_RELATIONSHIPS = frozenset({"company"})


class RowAction(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"


def decide_action(match: MatchResult, ambiguous_policy: str) -> RowAction:
    """Map a match classification to the write commit performs."""
    if match.is_ambiguous:
        return RowAction.CREATE if ambiguous_policy == AMBIGUOUS_CREATE else RowAction.SKIP
    if match.entity_id is not None:
        return RowAction.UPDATE
    return RowAction.CREATE


def describe_error(error: ValidationError) -> str:
    if error.has_item_errors:
        return "; ".join(f"{token}: {message}" for token, message in error.item_errors.items())
    return error.message or error.code.value


def display_value(value: Any, column_format: ColumnFormat = DEFAULT_COLUMN_FORMAT) -> Any:
    """Render a cast value the way the user wrote it in the column's format."""
    if isinstance(value, (date, datetime)):
        return column_format.date_format.format(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return column_format.number_format.format(value)
    return value


@dataclass(frozen=True)
class ResolvedRow:
    row_number: int
    attributes: Mapping[str, Any]
    match: MatchResult
    relationships: Mapping[str, MatchResult] = field(default_factory=dict)
    relationship_keys: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    relationship_types: Mapping[str, str] = field(default_factory=dict)
    display: Mapping[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.match.name

    def as_dict(self) -> dict[str, Any]:
        return {
            "row_number": self.row_number,
            "attributes": {key: self.display.get(key, value) for key, value in self.attributes.items()},
            "match": self.match.as_dict(),
            "relationships": {key: result.as_dict() for key, result in self.relationships.items()},
        }


class RowResolver:
    """
    Resolve staged rows for one session mapping.

    Values are read as effective values (correction, else raw), validated and
    cast with the column's format, then matched. A row that cannot be resolved
    raises :class:`RowCommitError`; callers decide whether that excludes it
    (preview) or records it as failed (commit).
    """

    def __init__(
        self,
        schema: EntitySchema,
        mapping: Mapping[str, str],
        matcher: EntityMatcher,
        *,
        formats: Mapping[str, ColumnFormat] | None = None,
        relationship_matchers: Mapping[str, EntityMatcher] | None = None,
        excluded_domains: Iterable[str] = (),
    ) -> None:
        self.schema = schema
        self.matcher = matcher
        self.formats = dict(formats or {})
        self.relationship_matchers = dict(relationship_matchers or {})
        self.excluded_domains = frozenset(excluded_domains)
        self.fields: list[tuple[ImportField, MappedColumn]] = [
            (spec, MappedColumn(spec.key, mapping[spec.key])) for spec in schema.fields if mapping.get(spec.key)
        ]

    def column_format(self, field_key: str) -> ColumnFormat:
        return self.formats.get(field_key, DEFAULT_COLUMN_FORMAT)

    def resolve(self, row: StagedRow) -> ResolvedRow:
        attributes: dict[str, Any] = {}
        display: dict[str, Any] = {}
        relationship_names: dict[str, str] = {}

        for spec, mapped in self.fields:
            value = row.effective_value(mapped)
            if spec.is_relationship:
                relationship_names[spec.key] = value.strip()
                continue
            column_format = self.column_format(spec.key)
            error = validate_value(spec, value, column_format)
            if error is not None:
                raise RowCommitError(f"{spec.label}: {describe_error(error)}", row_number=row.row_number)
            try:
                cast = cast_value(spec, value, column_format)
            except ValueError as exc:
                raise RowCommitError(f"{spec.label}: {exc}", row_number=row.row_number) from exc
            if cast is None or cast == []:
                continue
            attributes[spec.key] = cast
            display[spec.key] = display_value(cast, column_format)

        for spec in self.schema.required_fields:
            if spec.key not in attributes and spec.key not in relationship_names:
                raise RowCommitError(f"{spec.label} is required.", row_number=row.row_number)

        lookup_values: list[Any] = []
        if self.schema.lookup_field:
            lookup_values = list(attributes.get(self.schema.lookup_field) or [])
        name = attributes.get(self.schema.name_field, "")
        if row.match_action is not None:
            match = self.matcher.from_stored(name, row.match_action, row.matched_id, lookup_values)
        else:
            match = self.matcher.match(name, lookup_values)

        relationships: dict[str, MatchResult] = {}
        relationship_keys: dict[str, tuple[str, ...]] = {}
        relationship_types: dict[str, str] = {}
        for field_key, related_name in relationship_names.items():
            matcher = self.relationship_matchers.get(field_key)
            if matcher is None or not related_name:
                continue
            domains: tuple[str, ...] = ()
            if matcher.lookup_kind == "domain":
                domains = tuple(email_domains(attributes.get("emails") or [], excluded=self.excluded_domains))
            relationships[field_key] = matcher.match(related_name, domains)
            relationship_keys[field_key] = domains
            relationship_types[field_key] = matcher.entity_type

        return ResolvedRow(
            row_number=row.row_number,
            attributes=attributes,
            match=match,
            relationships=relationships,
            relationship_keys=relationship_keys,
            relationship_types=relationship_types,
            display=display,
        )

    def prime(self, rows: Iterable[StagedRow]) -> None:
        """Warm the matchers for a batch of rows with batched lookups."""
        names: set[str] = set()
        keys: set[str] = set()
        related: dict[str, tuple[set[str], set[str]]] = {key: (set(), set()) for key in self.relationship_matchers}
        lookup_column = next(
            (mapped for spec, mapped in self.fields if spec.key == self.schema.lookup_field),
            None,
        )
        name_column = next((mapped for spec, mapped in self.fields if spec.key == self.schema.name_field), None)
        email_column = next((mapped for spec, mapped in self.fields if spec.key == "emails"), None)

        for row in rows:
            if name_column is not None:
                names.add(row.effective_value(name_column).strip())
            if lookup_column is not None:
                keys.update(self.matcher.normalize_keys(split_tokens(row.effective_value(lookup_column))))
            for field_key, (related_names, related_keys) in related.items():
                mapped = next((m for spec, m in self.fields if spec.key == field_key), None)
                if mapped is None:
                    continue
                related_names.add(row.effective_value(mapped).strip())
                if email_column is not None and self.relationship_matchers[field_key].lookup_kind == "domain":
                    related_keys.update(
                        email_domains(split_tokens(row.effective_value(email_column)), excluded=self.excluded_domains)
                    )

        self.matcher.prime(names=names, keys=keys)
        for field_key, (related_names, related_keys) in related.items():
            self.relationship_matchers[field_key].prime(names=related_names, keys=related_keys)


def relationship_targets(resolved: ResolvedRow) -> tuple[dict[str, int | None], dict[str, tuple[str, list[str]]]]:
    """
    Split relationship matches into links to existing records and records to create.

    Ambiguous relationship matches link nothing, and only companies are
    created when no record matches.
    """
    existing: dict[str, int | None] = {}
    to_create: dict[str, tuple[str, list[str]]] = {}
    for field_key, result in resolved.relationships.items():
        if result.entity_id is not None:
            existing[field_key] = result.entity_id
        elif (
            result.match_type is MatchType.NEW
            and result.name
            and resolved.relationship_types.get(field_key) in CREATABLE_RELATIONSHIPS
        ):
            to_create[field_key] = (result.name, list(resolved.relationship_keys.get(field_key, ())))
    return existing, to_create
