"""
Entity matching for staged import rows.

:class:`EntityMatcher` classifies one candidate (name plus lookup keys such as
email addresses or domains) against the existing records of a team:

* a blank name is always ``new``;
* lookup keys resolving to exactly one record give a ``domain``/``email`` match,
  even when the name points at a different record;
* lookup keys resolving to several records are ``ambiguous``;
* otherwise an exact, case-sensitive name match decides between ``new``,
  ``name`` and ``ambiguous``.

Entity types that are not matchable (tasks, notes) are always ``new``.

:class:`MatchResolver` applies the same rules to a whole staging store with a
handful of batched queries and records the outcome on the staged rows.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from sqlalchemy import distinct, func, select

from .entities import EntityStore
from .normalize import coerce_str, normalize_domain, normalize_email, split_tokens
from .staging import MATCH_ACTION_UPDATE, MappedColumn, StagingStore, import_rows

logger = logging.getLogger(__name__)

NAME_FIELD = "name"

MATCH_ACTION_CREATE = "create"
MATCH_ACTION_AMBIGUOUS = "ambiguous"


class MatchType(str, enum.Enum):
    NEW = "new"
    NAME = "name"
    DOMAIN = "domain"
    EMAIL = "email"
    AMBIGUOUS = "ambiguous"

    @classmethod
    def for_lookup_kind(cls, kind: str | None) -> "MatchType":
        return cls.EMAIL if kind == "email" else cls.DOMAIN


@dataclass(frozen=True)
class MatchResult:
    """Classification of one candidate; ``entity_id`` is set only for unambiguous matches."""

    name: str
    match_type: MatchType
    match_count: int = 0
    entity_id: int | None = None

    @property
    def is_new(self) -> bool:
        return self.match_type is MatchType.NEW

    @property
    def is_ambiguous(self) -> bool:
        return self.match_type is MatchType.AMBIGUOUS

    @property
    def is_match(self) -> bool:
        return self.entity_id is not None

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "match_type": self.match_type.value,
            "match_count": self.match_count,
            "entity_id": self.entity_id,
        }


def normalize_lookup_key(kind: str | None, value: object | None) -> str | None:
    if kind == "email":
        return normalize_email(value)
    if kind == "domain":
        return normalize_domain(value)
    return None


class EntityMatcher:
    """
    Match candidates of one entity type within one team.

    Lookups are memoized; :meth:`prime` loads many keys and names with batched
    queries so that matching a whole file costs a few round trips. Cached
    results reflect the records that existed when they were loaded.
    """

    def __init__(
        self,
        entity_store: EntityStore,
        entity_type: str,
        lookup_kind: str | None = None,
        *,
        excluded_keys: Iterable[str] = (),
        matchable: bool = True,
    ) -> None:
        self.entity_store = entity_store
        self.entity_type = entity_type
        self.lookup_kind = lookup_kind if matchable else None
        self.matchable = matchable
        self.excluded_keys = frozenset(key.lower() for key in excluded_keys)
        self._lookup_cache: dict[str, frozenset[int]] = {}
        self._name_cache: dict[str, tuple[int, ...]] = {}

    def __repr__(self) -> str:
        return f"<EntityMatcher {self.entity_type} team={self.entity_store.team_id}>"

    def normalize_keys(self, values: Iterable[object | None]) -> list[str]:
        """Normalize lookup values, dropping malformed and excluded keys; order preserved."""
        keys: list[str] = []
        for value in values:
            key = normalize_lookup_key(self.lookup_kind, value)
            if key is None or key in self.excluded_keys or key in keys:
                continue
            keys.append(key)
        return keys

    def prime(self, *, names: Iterable[str] = (), keys: Iterable[str] = ()) -> None:
        """Load uncached names and already-normalized keys in batches."""
        if not self.matchable:
            return
        missing_names = {name for name in names if name and name not in self._name_cache}
        missing_keys = {key for key in keys if key and key not in self._lookup_cache} if self.lookup_kind else set()
        if not missing_names and not missing_keys:
            return
        candidates = self.entity_store.resolve(
            self.entity_type,
            self.lookup_kind,
            names=missing_names,
            keys=missing_keys,
        )
        self._name_cache.update(candidates.by_name)
        self._lookup_cache.update(candidates.by_lookup)

    def lookup_ids(self, keys: Iterable[str]) -> frozenset[int]:
        keys = list(keys)
        self.prime(keys=keys)
        ids: set[int] = set()
        for key in keys:
            ids.update(self._lookup_cache.get(key, ()))
        return frozenset(ids)

    def name_ids(self, name: str) -> tuple[int, ...]:
        self.prime(names=[name])
        return self._name_cache.get(name, ())

    def match(self, name: object | None, lookup_values: Iterable[object | None] = ()) -> MatchResult:
        candidate = coerce_str(name)
        if not candidate or not self.matchable:
            return MatchResult(name=candidate, match_type=MatchType.NEW)

        if self.lookup_kind:
            ids = self.lookup_ids(self.normalize_keys(lookup_values))
            if len(ids) == 1:
                return MatchResult(
                    name=candidate,
                    match_type=MatchType.for_lookup_kind(self.lookup_kind),
                    match_count=1,
                    entity_id=next(iter(ids)),
                )
            if len(ids) > 1:
                return MatchResult(name=candidate, match_type=MatchType.AMBIGUOUS, match_count=len(ids))

        by_name = self.name_ids(candidate)
        if not by_name:
            return MatchResult(name=candidate, match_type=MatchType.NEW)
        if len(by_name) == 1:
            return MatchResult(name=candidate, match_type=MatchType.NAME, match_count=1, entity_id=by_name[0])
        return MatchResult(name=candidate, match_type=MatchType.AMBIGUOUS, match_count=len(by_name))

    def from_stored(
        self,
        name: object | None,
        action: str,
        entity_id: int | None,
        lookup_values: Iterable[object | None] = (),
    ) -> MatchResult:
        """
        Rebuild the result :class:`MatchResolver` recorded for a staged row.

        The stored action decides the outcome; the cache only supplies the
        match type and count shown to the user.
        """
        candidate = coerce_str(name)
        if action == MATCH_ACTION_UPDATE and entity_id is not None:
            match_type = MatchType.NAME
            if self.lookup_kind and entity_id in self.lookup_ids(self.normalize_keys(lookup_values)):
                match_type = MatchType.for_lookup_kind(self.lookup_kind)
            return MatchResult(name=candidate, match_type=match_type, match_count=1, entity_id=entity_id)
        if action == MATCH_ACTION_AMBIGUOUS:
            count = len(self.lookup_ids(self.normalize_keys(lookup_values))) if self.lookup_kind else 0
            if count < 2 and candidate:
                count = len(self.name_ids(candidate))
            return MatchResult(name=candidate, match_type=MatchType.AMBIGUOUS, match_count=count)
        return MatchResult(name=candidate, match_type=MatchType.NEW)


@dataclass(frozen=True)
class MatchSummary:
    create: int = 0
    update: int = 0
    ambiguous: int = 0
    unresolved: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "create": self.create,
            "update": self.update,
            "ambiguous": self.ambiguous,
            "unresolved": self.unresolved,
        }


class MatchResolver:
    """
    Record match outcomes on every staged row of a session.

    Distinct effective names and lookup values are resolved once through the
    matcher, then written back with :meth:`StagingStore.bulk_apply_matches`.
    Rules are applied in matcher order: blank names first, then lookup keys,
    then names.
    """

    def __init__(
        self,
        store: StagingStore,
        matcher: EntityMatcher,
        mapping: Mapping[str, str],
        *,
        lookup_field: str | None = None,
        name_field: str = NAME_FIELD,
    ) -> None:
        self.store = store
        self.matcher = matcher
        self.name_column = MappedColumn(name_field, mapping[name_field]) if mapping.get(name_field) else None
        self.lookup_column = (
            MappedColumn(lookup_field, mapping[lookup_field])
            if lookup_field and mapping.get(lookup_field) and matcher.lookup_kind
            else None
        )

    def _distinct_values(self, mapped: MappedColumn) -> list[str]:
        with self.store.query() as handle:
            effective = handle.effective(mapped)
            return [row[0] for row in handle.execute(select(distinct(effective)))]

    def resolve(self) -> MatchSummary:
        self.store.reset_matches()
        if not self.matcher.matchable:
            self.store.fill_matches(MATCH_ACTION_CREATE)
            return self.summary()
        if self.name_column is None:
            return self.summary()

        raw_names = self._distinct_values(self.name_column)
        names = [value.strip() for value in raw_names]
        lookup_values = self._distinct_values(self.lookup_column) if self.lookup_column else []
        keys_by_value = {
            value: self.matcher.normalize_keys(split_tokens(value)) for value in lookup_values if value.strip()
        }
        self.matcher.prime(
            names=[name for name in names if name],
            keys=[key for keys in keys_by_value.values() for key in keys],
        )

        blank_names = {value: None for value in raw_names if not value.strip()}
        self.store.bulk_apply_matches(self.name_column, blank_names, MATCH_ACTION_CREATE)

        if self.lookup_column is not None:
            by_lookup: dict[str, int | None] = {}
            for value, keys in keys_by_value.items():
                ids = self.matcher.lookup_ids(keys)
                if len(ids) == 1:
                    by_lookup[value] = next(iter(ids))
                elif len(ids) > 1:
                    by_lookup[value] = None
            self.store.bulk_apply_matches(self.lookup_column, by_lookup, MATCH_ACTION_AMBIGUOUS)

        matched_names: dict[str, int | None] = {}
        new_names: dict[str, int | None] = {}
        for value in raw_names:
            name = value.strip()
            if not name:
                continue
            ids = self.matcher.name_ids(name)
            if len(ids) == 1:
                matched_names[value] = ids[0]
            elif len(ids) > 1:
                matched_names[value] = None
            else:
                new_names[value] = None
        self.store.bulk_apply_matches(self.name_column, matched_names, MATCH_ACTION_AMBIGUOUS)
        self.store.bulk_apply_matches(self.name_column, new_names, MATCH_ACTION_CREATE)

        summary = self.summary()
        logger.info(
            "Resolved import matches",
            extra={"importer_session_id": self.store.session_id, "importer_match_summary": summary.as_dict()},
        )
        return summary

    def summary(self) -> MatchSummary:
        with self.store.query() as handle:
            rows = handle.execute(
                select(import_rows.c.match_action, func.count()).group_by(import_rows.c.match_action)
            ).all()
        counts = {action: int(count) for action, count in rows}
        return MatchSummary(
            create=counts.get(MATCH_ACTION_CREATE, 0),
            update=counts.get(MATCH_ACTION_UPDATE, 0),
            ambiguous=counts.get(MATCH_ACTION_AMBIGUOUS, 0),
            unresolved=counts.get(None, 0),
        )
