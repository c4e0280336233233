"""
Dry-run of an import commit.

The preview walks staged rows through :class:`RowResolver`, the same path
commit uses, and counts what would be created or updated. Nothing is written
to the CRM tables. Rows that fail to resolve are left out of the counts; the
commit records them as failed rows. ``matches`` carries the per-action totals
recorded on the staged rows before the walk, so the two can be compared.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from crm_app.importer.errors import RowCommitError

from .matching import MatchSummary
from .resolution import RowAction, RowResolver, decide_action
from .staging import BATCH_SIZE, StagingStore, batched

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_SIZE = 50


@dataclass(frozen=True)
class PreviewRow:
    row_number: int
    name: str
    is_new: bool
    action: RowAction
    match_type: str
    matched_id: int | None
    values: dict[str, Any]
    relationships: dict[str, Any]

    def as_dict(self) -> dict[str, Any]:
        return {
            "row_number": self.row_number,
            "name": self.name,
            "is_new": self.is_new,
            "action": self.action.value,
            "match_type": self.match_type,
            "matched_id": self.matched_id,
            "values": self.values,
            "relationships": self.relationships,
        }


@dataclass(frozen=True)
class PreviewResult:
    total_rows: int
    create_count: int
    update_count: int
    skip_count: int
    excluded_count: int
    sample: tuple[PreviewRow, ...]
    matches: MatchSummary | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_rows": self.total_rows,
            "create_count": self.create_count,
            "update_count": self.update_count,
            "skip_count": self.skip_count,
            "excluded_count": self.excluded_count,
            "sample": [row.as_dict() for row in self.sample],
            "matches": self.matches.as_dict() if self.matches is not None else None,
        }


class PreviewEngine:
    """Count creates and updates for a session without persisting anything."""

    def __init__(
        self,
        store: StagingStore,
        resolver: RowResolver,
        *,
        ambiguous_policy: str,
        sample_size: int = DEFAULT_SAMPLE_SIZE,
        batch_size: int = BATCH_SIZE,
        matches: MatchSummary | None = None,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.ambiguous_policy = ambiguous_policy
        self.sample_size = max(int(sample_size), 0)
        self.batch_size = batch_size
        self.matches = matches

    def run(self) -> PreviewResult:
        counts = {RowAction.CREATE: 0, RowAction.UPDATE: 0, RowAction.SKIP: 0}
        excluded = 0
        total = 0
        sample: list[PreviewRow] = []

        with self.store.query() as handle:
            for chunk in batched(handle.iter_rows(batch_size=self.batch_size), self.batch_size):
                self.resolver.prime(chunk)
                for row in chunk:
                    total += 1
                    try:
                        resolved = self.resolver.resolve(row)
                    except RowCommitError as exc:
                        excluded += 1
                        logger.debug(
                            "Preview excluded row",
                            extra={
                                "importer_session_id": self.store.session_id,
                                "importer_row_number": row.row_number,
                                "importer_reason": exc.reason,
                            },
                        )
                        continue

                    action = decide_action(resolved.match, self.ambiguous_policy)
                    counts[action] += 1
                    if len(sample) < self.sample_size:
                        payload = resolved.as_dict()
                        sample.append(
                            PreviewRow(
                                row_number=row.row_number,
                                name=resolved.name,
                                is_new=action is RowAction.CREATE,
                                action=action,
                                match_type=resolved.match.match_type.value,
                                matched_id=resolved.match.entity_id if action is RowAction.UPDATE else None,
                                values=payload["attributes"],
                                relationships=payload["relationships"],
                            )
                        )

        result = PreviewResult(
            total_rows=total,
            create_count=counts[RowAction.CREATE],
            update_count=counts[RowAction.UPDATE],
            skip_count=counts[RowAction.SKIP],
            excluded_count=excluded,
            sample=tuple(sample),
            matches=self.matches,
        )
        logger.info(
            "Import preview computed",
            extra={
                "importer_session_id": self.store.session_id,
                "importer_create_count": result.create_count,
                "importer_update_count": result.update_count,
                "importer_excluded_count": result.excluded_count,
            },
        )
        return result
