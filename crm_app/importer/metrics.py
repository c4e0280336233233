"""Prometheus metrics helpers for the importer."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Histogram

_sessions_counter = Counter(
    "importer_sessions_total",
    "Import sessions started by entity type and outcome.",
    ["entity_type", "outcome"],
)
_corrections_counter = Counter(
    "importer_corrections_total",
    "Value corrections applied by kind.",
    ["kind"],
)
_rows_committed_counter = Counter(
    "importer_rows_committed_total",
    "Staged rows processed during commit by outcome.",
    ["entity_type", "outcome"],
)
_previews_counter = Counter(
    "importer_previews_total",
    "Import previews computed by entity type.",
    ["entity_type"],
)
_commit_duration = Histogram(
    "importer_commit_duration_seconds",
    "Duration of import commits in seconds.",
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 900),
)


def record_session_started(entity_type: str, outcome: Literal["success", "failure"]) -> None:
    """Count an upload that did (or did not) become a staged session."""

    _sessions_counter.labels(entity_type=entity_type, outcome=outcome).inc()


def record_correction(kind: Literal["correction", "skip", "restore"], rows: int) -> None:
    """Count a correction call; ``rows`` is not tracked separately."""

    _ = rows
    _corrections_counter.labels(kind=kind).inc()


def record_preview(entity_type: str) -> None:
    _previews_counter.labels(entity_type=entity_type).inc()


def record_commit(
    *,
    entity_type: str,
    created: int,
    updated: int,
    skipped: int,
    failed: int,
    duration_seconds: float,
) -> None:
    """Capture row outcome counters and duration for one commit."""

    for outcome, count in (("created", created), ("updated", updated), ("skipped", skipped), ("failed", failed)):
        if count:
            _rows_committed_counter.labels(entity_type=entity_type, outcome=outcome).inc(count)
    _commit_duration.observe(duration_seconds)
