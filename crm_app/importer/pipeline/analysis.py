"""
Column statistics, value paging and bulk corrections over a staging store.

All operations are set-based: they aggregate or update over a column's
effective value (correction, else raw, else empty) with single statements
instead of iterating rows in Python.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Sequence

from sqlalchemy import (
    Column,
    MetaData,
    Table,
    Text,
    and_,
    case,
    distinct,
    func,
    insert,
    literal,
    or_,
    select,
    union_all,
    update,
)

from .staging import BATCH_SIZE, MappedColumn, StagingQuery, StagingStore, batched, import_rows, json_path
from .validation import ValidationError

logger = logging.getLogger(__name__)

LIKE_ESCAPE = "\\"
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500

_temp_metadata = MetaData()

temp_value_errors = Table(
    "temp_value_errors",
    _temp_metadata,
    Column("value", Text, primary_key=True),
    Column("error", Text, nullable=False),
    prefixes=["TEMPORARY"],
)

Revalidator = Callable[[str], "ValidationError | None"]


class ValueFilter(str, enum.Enum):
    ALL = "all"
    MODIFIED = "modified"
    SKIPPED = "skipped"


class ValueSort(str, enum.Enum):
    COUNT = "count"
    VALUE = "value"


@dataclass(frozen=True)
class ColumnAnalysis:
    field_key: str
    column: str
    total_rows: int
    unique_values: int
    blank_count: int
    error_rows: int
    required: bool = False
    is_relationship: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "field_key": self.field_key,
            "column": self.column,
            "total_rows": self.total_rows,
            "unique_values": self.unique_values,
            "blank_count": self.blank_count,
            "error_rows": self.error_rows,
            "required": self.required,
            "is_relationship": self.is_relationship,
        }


@dataclass(frozen=True)
class ValueEntry:
    """One distinct raw value of a column with its correction and occurrence count."""

    raw_value: str
    correction: str | None
    count: int
    error: ValidationError | None = None

    @property
    def is_skipped(self) -> bool:
        return self.correction == ""

    @property
    def is_modified(self) -> bool:
        return bool(self.correction)

    @property
    def effective_value(self) -> str:
        return self.raw_value if self.correction is None else self.correction

    def as_dict(self) -> dict[str, Any]:
        return {
            "raw_value": self.raw_value,
            "correction": self.correction,
            "effective_value": self.effective_value,
            "count": self.count,
            "is_skipped": self.is_skipped,
            "is_modified": self.is_modified,
            "error": self.error.as_dict() if self.error else None,
        }


@dataclass(frozen=True)
class ValuePage:
    values: tuple[ValueEntry, ...]
    page: int
    page_size: int
    has_more: bool
    total: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "values": [entry.as_dict() for entry in self.values],
            "page": self.page,
            "page_size": self.page_size,
            "has_more": self.has_more,
            "total": self.total,
        }


@dataclass(frozen=True)
class FilterCounts:
    all: int
    modified: int
    skipped: int

    def as_dict(self) -> dict[str, int]:
        return {"all": self.all, "modified": self.modified, "skipped": self.skipped}


def escape_like(term: str) -> str:
    """Escape LIKE wildcards so user input only ever matches literally."""
    return (
        term.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", f"{LIKE_ESCAPE}%")
        .replace("_", f"{LIKE_ESCAPE}_")
    )


def _search_predicate(handle: StagingQuery, mapped: MappedColumn, search: str | None):
    term = (search or "").strip()
    if not term:
        return None
    pattern = f"%{escape_like(term.casefold())}%"
    return func.casefold(handle.raw_or_blank(mapped.column)).like(pattern, escape=LIKE_ESCAPE)


def _filter_predicate(handle: StagingQuery, mapped: MappedColumn, value_filter: ValueFilter):
    correction = handle.correction(mapped.field_key)
    if value_filter is ValueFilter.MODIFIED:
        return and_(correction.is_not(None), correction != "")
    if value_filter is ValueFilter.SKIPPED:
        return correction == ""
    return None


class ColumnAnalyzer:
    """Statistics and corrections for the mapped columns of one staging store."""

    def __init__(self, store: StagingStore) -> None:
        self.store = store

    def analyze_all_columns(
        self,
        mapping: Sequence[MappedColumn],
        *,
        required: Iterable[str] = (),
        relationships: Iterable[str] = (),
    ) -> list[ColumnAnalysis]:
        """Distinct and blank counts for every mapped column in one unioned query."""
        if not mapping:
            return []
        required_keys = set(required)
        relationship_keys = set(relationships)

        with self.store.query() as handle:
            selects = []
            for mapped in mapping:
                effective = handle.effective(mapped)
                validation = func.json_extract(import_rows.c.validation, json_path(mapped.field_key))
                selects.append(
                    select(
                        literal(mapped.field_key).label("field_key"),
                        func.count().label("total_rows"),
                        func.count(distinct(effective)).label("unique_values"),
                        func.coalesce(func.sum(case((effective == "", 1), else_=0)), 0).label("blank_count"),
                        func.coalesce(func.sum(case((validation.is_not(None), 1), else_=0)), 0).label("error_rows"),
                    ).select_from(import_rows)
                )
            statement = selects[0] if len(selects) == 1 else union_all(*selects)
            results = {row["field_key"]: row for row in handle.execute(statement).mappings()}

        analyses = []
        for mapped in mapping:
            row = results.get(mapped.field_key)
            analyses.append(
                ColumnAnalysis(
                    field_key=mapped.field_key,
                    column=mapped.column,
                    total_rows=int(row["total_rows"]) if row else 0,
                    unique_values=int(row["unique_values"]) if row else 0,
                    blank_count=int(row["blank_count"]) if row else 0,
                    error_rows=int(row["error_rows"]) if row else 0,
                    required=mapped.field_key in required_keys,
                    is_relationship=mapped.field_key in relationship_keys,
                )
            )
        return analyses

    def unique_values_paginated(
        self,
        mapped: MappedColumn,
        *,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        search: str | None = None,
        value_filter: ValueFilter | str = ValueFilter.ALL,
        sort: ValueSort | str = ValueSort.COUNT,
        errors_only: bool = False,
        include_total: bool = True,
    ) -> ValuePage:
        """
        Return one page of distinct ``(raw value, correction, count)`` tuples.

        ``page_size + 1`` rows are fetched to compute ``has_more``; the filter
        total is a separate count that callers may skip on later pages.
        """
        page = max(int(page), 1)
        page_size = min(max(int(page_size), 1), MAX_PAGE_SIZE)
        value_filter = ValueFilter(value_filter)
        sort = ValueSort(sort)

        with self.store.query() as handle:
            raw_value = handle.raw_or_blank(mapped.column).label("raw_value")
            correction = handle.correction(mapped.field_key).label("correction")
            error = func.max(func.json_extract(import_rows.c.validation, json_path(mapped.field_key)))
            occurrences = func.count().label("occurrences")

            conditions = [
                predicate
                for predicate in (
                    _search_predicate(handle, mapped, search),
                    _filter_predicate(handle, mapped, value_filter),
                    (
                        func.json_extract(import_rows.c.validation, json_path(mapped.field_key)).is_not(None)
                        if errors_only
                        else None
                    ),
                )
                if predicate is not None
            ]

            grouped = (
                select(raw_value, correction, occurrences, error.label("error"))
                .select_from(import_rows)
                .where(*conditions)
                .group_by(raw_value, correction)
            )
            if sort is ValueSort.VALUE:
                ordered = grouped.order_by(raw_value.asc(), correction.asc())
            else:
                ordered = grouped.order_by(occurrences.desc(), raw_value.asc(), correction.asc())

            rows = handle.execute(ordered.limit(page_size + 1).offset((page - 1) * page_size)).mappings().all()

            total = None
            if include_total:
                total = int(handle.scalar(select(func.count()).select_from(grouped.subquery())) or 0)

        entries = tuple(
            ValueEntry(
                raw_value=row["raw_value"],
                correction=row["correction"],
                count=int(row["occurrences"]),
                error=ValidationError.from_storage(row["error"]),
            )
            for row in rows[:page_size]
        )
        return ValuePage(values=entries, page=page, page_size=page_size, has_more=len(rows) > page_size, total=total)

    def filter_counts(self, mapped: MappedColumn, *, search: str | None = None) -> FilterCounts:
        """Distinct-value counts for the all/modified/skipped buckets in one query."""
        with self.store.query() as handle:
            raw_value = handle.raw_or_blank(mapped.column)
            correction = handle.correction(mapped.field_key)
            statement = select(
                func.count(distinct(raw_value)).label("all"),
                func.count(
                    distinct(case((and_(correction.is_not(None), correction != ""), raw_value), else_=None))
                ).label("modified"),
                func.count(distinct(case((correction == "", raw_value), else_=None))).label("skipped"),
            ).select_from(import_rows)
            predicate = _search_predicate(handle, mapped, search)
            if predicate is not None:
                statement = statement.where(predicate)
            row = handle.execute(statement).mappings().one()
        return FilterCounts(all=int(row["all"]), modified=int(row["modified"]), skipped=int(row["skipped"]))

    def apply_correction(
        self,
        mapped: MappedColumn,
        old_value: str | None,
        new_value: str | None,
        *,
        revalidate: Revalidator | None = None,
    ) -> int:
        """
        Override every occurrence of ``old_value`` in the column with ``new_value``.

        A correction equal to the trimmed original removes the overlay instead
        (restore). ``revalidate`` recomputes the validation result for the new
        effective value in the same statement. Returns the rows affected.
        """
        old_value = "" if old_value is None else str(old_value)
        new_value = "" if new_value is None else str(new_value).strip()
        restore = new_value == old_value.strip()

        correction_path = json_path(mapped.field_key)
        with self.store.query() as handle:
            raw_value = handle.raw_or_blank(mapped.column)
            correction = handle.correction(mapped.field_key)
            statement = update(import_rows).where(raw_value == old_value)

            if restore:
                statement = statement.where(correction.is_not(None)).values(
                    corrections=func.json_remove(import_rows.c.corrections, correction_path)
                )
                effective = old_value
            else:
                statement = statement.where(or_(correction.is_(None), correction != new_value)).values(
                    corrections=func.json_set(func.coalesce(import_rows.c.corrections, "{}"), correction_path, new_value)
                )
                effective = new_value

            if revalidate is not None:
                statement = statement.values(validation=_validation_expression(mapped, revalidate(effective)))

            affected = int(handle.execute(statement).rowcount or 0)

        logger.info(
            "Applied import correction",
            extra={
                "importer_session_id": self.store.session_id,
                "importer_field": mapped.field_key,
                "importer_restore": restore,
                "importer_rows_affected": affected,
            },
        )
        return affected

    def skip_value(self, mapped: MappedColumn, value: str | None, *, revalidate: Revalidator | None = None) -> int:
        return self.apply_correction(mapped, value, "", revalidate=revalidate)

    def validate_column(
        self,
        mapped: MappedColumn,
        validator: Revalidator,
        *,
        batch_size: int = BATCH_SIZE,
    ) -> int:
        """
        Recompute validation results for one column.

        Each distinct effective value is validated once; failures are staged in
        a temporary table and joined back onto the rows. Returns the number of
        rows carrying an error afterwards.
        """
        path = json_path(mapped.field_key)
        with self.store.query() as handle:
            effective = handle.effective(mapped)
            values = [row[0] for row in handle.execute(select(distinct(effective)))]
            failures = {}
            for value in values:
                error = validator(value)
                if error is not None:
                    failures[value] = error.to_storage()

            handle.execute(
                update(import_rows)
                .where(func.json_extract(import_rows.c.validation, path).is_not(None))
                .values(validation=func.json_remove(import_rows.c.validation, path))
            )
            if not failures:
                return 0

            temp_value_errors.create(handle.connection, checkfirst=True)
            try:
                for chunk in batched(failures.items(), batch_size):
                    handle.execute(insert(temp_value_errors), [{"value": value, "error": error} for value, error in chunk])
                error_for_row = (
                    select(temp_value_errors.c.error).where(temp_value_errors.c.value == effective).scalar_subquery()
                )
                flagged = handle.execute(
                    update(import_rows)
                    .where(effective.in_(select(temp_value_errors.c.value)))
                    .values(
                        validation=func.json_set(
                            func.coalesce(import_rows.c.validation, "{}"),
                            path,
                            func.json(error_for_row),
                        )
                    )
                ).rowcount
            finally:
                temp_value_errors.drop(handle.connection, checkfirst=True)

        logger.debug(
            "Validated import column",
            extra={
                "importer_session_id": self.store.session_id,
                "importer_field": mapped.field_key,
                "importer_distinct_values": len(values),
                "importer_error_rows": flagged,
            },
        )
        return int(flagged or 0)

    def clear_field(self, field_key: str) -> int:
        """Drop the corrections and validation results recorded for ``field_key``."""
        path = json_path(field_key)
        with self.store.query() as handle:
            statement = (
                update(import_rows)
                .where(
                    or_(
                        handle.correction(field_key).is_not(None),
                        func.json_extract(import_rows.c.validation, path).is_not(None),
                    )
                )
                .values(
                    corrections=func.json_remove(func.coalesce(import_rows.c.corrections, "{}"), path),
                    validation=func.json_remove(func.coalesce(import_rows.c.validation, "{}"), path),
                )
            )
            return int(handle.execute(statement).rowcount or 0)


def _validation_expression(mapped: MappedColumn, error: ValidationError | None):
    path = json_path(mapped.field_key)
    if error is None:
        return func.json_remove(func.coalesce(import_rows.c.validation, "{}"), path)
    return func.json_set(func.coalesce(import_rows.c.validation, "{}"), path, func.json(error.to_storage()))


def mapped_columns(mapping: Mapping[str, str]) -> list[MappedColumn]:
    """Turn a ``{field key: source column}`` mapping into ordered pairs."""
    return [MappedColumn(field_key=field_key, column=column) for field_key, column in mapping.items() if column]
