"""
Commit staged rows into the CRM tables.

The orchestrator is glue: every row goes through the shared
:class:`RowResolver`, the configured ambiguous policy decides skip or create,
and :class:`EntityStore` performs the write. A row the store rejects is kept
as an :class:`ImportFailedRow` and the run continues with the next row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from crm_app.importer.errors import RowCommitError
from crm_app.models import ImportFailedRow, ImportRun, db

from .entities import EntityStore
from .resolution import RowAction, RowResolver, decide_action, relationship_targets
from .staging import BATCH_SIZE, StagedRow, StagingStore, batched

logger = logging.getLogger(__name__)

MAX_ERROR_SUMMARY_ITEMS = 5


@dataclass
class CommitSummary:
    total_rows: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def has_failures(self) -> bool:
        return self.failed > 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_rows": self.total_rows,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
        }


class CommitOrchestrator:
    """Walk a session's staged rows in row order and write them for one team."""

    def __init__(
        self,
        store: StagingStore,
        resolver: RowResolver,
        entity_store: EntityStore,
        run: ImportRun,
        *,
        ambiguous_policy: str,
        batch_size: int = BATCH_SIZE,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.entity_store = entity_store
        self.run_id = run.id
        self.entity_type = run.entity_type
        self.ambiguous_policy = ambiguous_policy
        self.batch_size = batch_size
        self.failure_samples: list[str] = []

    def execute(self) -> CommitSummary:
        summary = CommitSummary()
        with self.store.query() as handle:
            for chunk in batched(handle.iter_rows(batch_size=self.batch_size), self.batch_size):
                self.resolver.prime(chunk)
                for row in chunk:
                    summary.total_rows += 1
                    self._commit_row(row, summary)

        logger.info(
            "Import commit finished",
            extra={
                "importer_run_id": self.run_id,
                "importer_session_id": self.store.session_id,
                **{f"importer_{key}": value for key, value in summary.as_dict().items()},
            },
        )
        return summary

    def _commit_row(self, row: StagedRow, summary: CommitSummary) -> None:
        try:
            resolved = self.resolver.resolve(row)
            action = decide_action(resolved.match, self.ambiguous_policy)
            if action is RowAction.SKIP:
                summary.skipped += 1
                return
            existing, to_create = relationship_targets(resolved)
            outcome = self.entity_store.create_or_update(
                self.entity_type,
                resolved.match.entity_id if action is RowAction.UPDATE else None,
                resolved.attributes,
                related_ids=existing,
                new_related=to_create,
                row_number=row.row_number,
            )
            self.entity_store.commit(row_number=row.row_number)
        except RowCommitError as exc:
            summary.failed += 1
            self._record_failure(row, exc.reason)
            return

        if outcome.created:
            summary.created += 1
        else:
            summary.updated += 1

    def _record_failure(self, row: StagedRow, reason: str) -> None:
        if len(self.failure_samples) < MAX_ERROR_SUMMARY_ITEMS:
            self.failure_samples.append(f"Row {row.row_number}: {reason}")
        db.session.add(
            ImportFailedRow(
                run_id=self.run_id,
                row_number=row.row_number,
                raw_data=dict(row.raw),
                error_message=reason,
            )
        )
        db.session.commit()
        logger.warning(
            "Import row failed",
            extra={
                "importer_run_id": self.run_id,
                "importer_row_number": row.row_number,
                "importer_reason": reason,
            },
        )

    def error_summary(self) -> str | None:
        if not self.failure_samples:
            return None
        return "\n".join(self.failure_samples)
