"""
Import session lifecycle: upload, mapping, review, preview, commit, cleanup.

An import session is a staging store directory plus its ``meta.json``. The
service is the single place that opens stores for a team, enforces the
status transitions and wires analyzers, matchers and resolvers together for
the HTTP views, the CLI and the Celery task.
"""

from __future__ import annotations

import csv
import enum
import logging
import shutil
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from io import StringIO
from pathlib import Path
from typing import Any, Iterator, Mapping

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from crm_app.importer import metrics
from crm_app.importer.adapters import open_spreadsheet
from crm_app.importer.celery_app import get_celery_app
from crm_app.importer.contracts import EntitySchema, FieldSchemaError, get_entity_schema, guess_mapping
from crm_app.importer.errors import (
    FileIngestError,
    InvalidSessionError,
    MappingError,
    SessionStateError,
    StorageError,
)
from crm_app.importer.utils import resolve_storage_directory
from crm_app.models import ImportRun, ImportRunStatus, db
from crm_app.utils.importer import get_ambiguous_policy, get_public_email_domains, is_worker_enabled

from .analysis import ColumnAnalysis, ColumnAnalyzer, FilterCounts, ValuePage, mapped_columns
from .commit import CommitOrchestrator, CommitSummary
from .entities import EntityStore
from .matching import EntityMatcher, MatchResolver, MatchSummary
from .preview import PreviewEngine, PreviewResult
from .resolution import RowResolver
from .staging import (
    TOMBSTONE_PREFIX,
    MappedColumn,
    StagingStore,
    destroy_session_directory,
    is_valid_session_id,
    new_session_id,
)
from .validation import ColumnFormat, validate_value

logger = logging.getLogger(__name__)

EXECUTE_IMPORT_TASK = "importer.pipeline.execute_import"
LEADING_FORMULA_CHARACTERS = ("=", "+", "-", "@")


class ImportStatus(str, enum.Enum):
    UPLOADING = "uploading"
    MAPPING = "mapping"
    REVIEWING = "reviewing"
    IMPORTING = "importing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_editable(self) -> bool:
        return self in (ImportStatus.MAPPING, ImportStatus.REVIEWING)


def _sanitize_csv(value: object) -> str:
    if value is None:
        return ""
    text = str(value)
    if text and text[0] in LEADING_FORMULA_CHARACTERS:
        return f"'{text}"
    return text


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if value:
        parsed = datetime.fromisoformat(str(value))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return _utcnow()


@dataclass
class ImportSession:
    """Metadata of one import session as kept in ``meta.json``."""

    session_id: str
    team_id: int
    user_id: int | None
    entity_type: str
    original_filename: str
    status: ImportStatus = ImportStatus.UPLOADING
    headers: list[str] = field(default_factory=list)
    row_count: int = 0
    mapping: dict[str, str] = field(default_factory=dict)
    formats: dict[str, dict[str, Any]] = field(default_factory=dict)
    run_id: int | None = None
    results: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def column_format(self, field_key: str) -> ColumnFormat:
        return ColumnFormat.coerce(self.formats.get(field_key))

    def column_formats(self) -> dict[str, ColumnFormat]:
        return {field_key: self.column_format(field_key) for field_key in self.mapping}

    def mapped(self, field_key: str) -> MappedColumn:
        column = self.mapping.get(field_key)
        if not column:
            raise MappingError(f"Field '{field_key}' is not mapped to a column.")
        return MappedColumn(field_key=field_key, column=column)

    def as_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "team_id": self.team_id,
            "user_id": self.user_id,
            "entity_type": self.entity_type,
            "original_filename": self.original_filename,
            "status": self.status.value,
            "headers": list(self.headers),
            "row_count": self.row_count,
            "mapping": dict(self.mapping),
            "formats": dict(self.formats),
            "run_id": self.run_id,
            "results": dict(self.results),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ImportSession":
        return cls(
            session_id=str(payload["session_id"]),
            team_id=int(payload["team_id"]),
            user_id=payload.get("user_id"),
            entity_type=str(payload["entity_type"]),
            original_filename=str(payload.get("original_filename") or ""),
            status=ImportStatus(payload.get("status", ImportStatus.UPLOADING.value)),
            headers=list(payload.get("headers") or []),
            row_count=int(payload.get("row_count") or 0),
            mapping=dict(payload.get("mapping") or {}),
            formats=dict(payload.get("formats") or {}),
            run_id=payload.get("run_id"),
            results=dict(payload.get("results") or {}),
            created_at=_parse_timestamp(payload.get("created_at")),
            updated_at=_parse_timestamp(payload.get("updated_at")),
        )


@dataclass(frozen=True)
class ImporterSettings:
    """Importer configuration resolved from the Flask config."""

    storage_root: Path
    max_rows: int = 10000
    batch_size: int = 500
    session_ttl: timedelta = timedelta(hours=24)
    failed_ttl: timedelta = timedelta(hours=2)
    importing_ttl: timedelta = timedelta(hours=1)
    preview_sample_size: int = 50
    values_page_size: int = 50
    allow_two_digit_years: bool = True
    ambiguous_policy: str = "skip"
    public_email_domains: frozenset[str] = frozenset()
    worker_enabled: bool = False

    @classmethod
    def from_app(cls, app=None) -> "ImporterSettings":
        app = app or current_app._get_current_object()
        config = app.config
        return cls(
            storage_root=resolve_storage_directory(app),
            max_rows=int(config.get("IMPORTER_MAX_ROWS", 10000)),
            batch_size=int(config.get("IMPORTER_BATCH_SIZE", 500)),
            session_ttl=timedelta(hours=int(config.get("IMPORTER_SESSION_TTL_HOURS", 24))),
            failed_ttl=timedelta(hours=int(config.get("IMPORTER_COMPLETED_TTL_HOURS", 2))),
            importing_ttl=2 * timedelta(seconds=int(config.get("IMPORTER_TASK_TIME_LIMIT", 30 * 60))),
            preview_sample_size=int(config.get("IMPORTER_PREVIEW_SAMPLE_SIZE", 50)),
            values_page_size=int(config.get("IMPORTER_VALUES_PAGE_SIZE", 50)),
            allow_two_digit_years=bool(config.get("IMPORTER_ALLOW_TWO_DIGIT_YEARS", True)),
            ambiguous_policy=get_ambiguous_policy(app),
            public_email_domains=get_public_email_domains(app),
            worker_enabled=is_worker_enabled(app),
        )


class ImportSessionService:
    """Team-scoped operations on import sessions."""

    def __init__(self, settings: ImporterSettings) -> None:
        self.settings = settings

    @classmethod
    def from_app(cls, app=None) -> "ImportSessionService":
        return cls(ImporterSettings.from_app(app))

    @property
    def storage_root(self) -> Path:
        return self.settings.storage_root

    # ------------------------------------------------------------------
    # Store access
    # ------------------------------------------------------------------
    @contextmanager
    def _open(self, session_id: str, team_id: int | None) -> Iterator[tuple[StagingStore, ImportSession]]:
        store = StagingStore.load(self.storage_root, session_id)
        if store is None:
            raise InvalidSessionError(session_id)
        try:
            payload = store.read_metadata()
            if not payload:
                raise InvalidSessionError(session_id)
            session = ImportSession.from_dict(payload)
            if team_id is not None and session.team_id != team_id:
                raise InvalidSessionError(session_id)
            yield store, session
        finally:
            store.close()

    def _save(self, store: StagingStore, session: ImportSession, **changes: Any) -> ImportSession:
        updated = replace(session, updated_at=_utcnow(), **changes)
        store.write_metadata(updated.as_dict())
        return updated

    def _require_editable(self, store: StagingStore, session: ImportSession) -> None:
        status = session.status
        if status.is_editable and store.is_commit_claimed():
            status = ImportStatus.IMPORTING
        if not status.is_editable:
            raise SessionStateError(
                f"Import is {status.value} and can no longer be changed.",
                status=status.value,
            )

    def _schema(self, entity_type: str) -> EntitySchema:
        try:
            return get_entity_schema(entity_type)
        except FieldSchemaError as exc:
            raise MappingError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Upload and mapping
    # ------------------------------------------------------------------
    def start_session(
        self,
        *,
        team_id: int,
        user_id: int | None,
        entity_type: str,
        upload_path: str | Path,
        original_filename: str,
    ) -> ImportSession:
        """Parse an uploaded file into a new staging store and auto-map its headers."""
        schema = self._schema(entity_type)
        session_id = new_session_id()
        store = StagingStore.create(self.storage_root, session_id)
        try:
            session = ImportSession(
                session_id=session_id,
                team_id=team_id,
                user_id=user_id,
                entity_type=schema.entity_type,
                original_filename=original_filename,
            )
            store.write_metadata(session.as_dict())

            with open_spreadsheet(upload_path, work_dir=store.directory, max_rows=self.settings.max_rows) as reader:
                headers = list(reader.headers)
                row_count = store.bulk_insert(reader.iter_rows(), batch_size=self.settings.batch_size)
            if row_count == 0:
                raise FileIngestError("The uploaded file contains a header row but no data rows.")

            mapping = guess_mapping(schema, headers)
            formats = {
                field_key: ColumnFormat(allow_two_digit_years=self.settings.allow_two_digit_years).as_dict()
                for field_key in mapping
            }
            session = self._save(
                store,
                session,
                headers=headers,
                row_count=row_count,
                mapping=mapping,
                formats=formats,
                status=ImportStatus.MAPPING,
            )
            self._validate_columns(store, session, schema)
        except Exception:
            metrics.record_session_started(entity_type, "failure")
            store.destroy()
            raise
        finally:
            store.close()

        metrics.record_session_started(schema.entity_type, "success")
        logger.info(
            "Import session started",
            extra={
                "importer_session_id": session.session_id,
                "importer_team_id": team_id,
                "importer_entity_type": schema.entity_type,
                "importer_row_count": session.row_count,
            },
        )
        return session

    def load_session(self, session_id: str, team_id: int | None) -> ImportSession:
        with self._open(session_id, team_id) as (_, session):
            return session

    def set_mapping(
        self,
        session_id: str,
        team_id: int | None,
        mapping: Mapping[str, str | None],
        formats: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> ImportSession:
        """
        Replace the field -> column mapping and revalidate every mapped column.

        Corrections recorded for a field are dropped when its source column
        changes, since they refer to the old column's values.
        """
        with self._open(session_id, team_id) as (store, session):
            self._require_editable(store, session)
            schema = self._schema(session.entity_type)
            cleaned = self._clean_mapping(schema, session, mapping)

            merged_formats: dict[str, dict[str, Any]] = {}
            for field_key in cleaned:
                payload = (formats or {}).get(field_key) or session.formats.get(field_key)
                try:
                    column_format = (
                        ColumnFormat.coerce(payload)
                        if payload
                        else ColumnFormat(allow_two_digit_years=self.settings.allow_two_digit_years)
                    )
                except ValueError as exc:
                    raise MappingError(f"Invalid format for field '{field_key}': {exc}") from exc
                merged_formats[field_key] = column_format.as_dict()

            analyzer = ColumnAnalyzer(store)
            for field_key in set(session.mapping) | set(cleaned):
                if session.mapping.get(field_key) != cleaned.get(field_key):
                    analyzer.clear_field(field_key)

            session = self._save(store, session, mapping=cleaned, formats=merged_formats, status=ImportStatus.REVIEWING)
            self._validate_columns(store, session, schema)
            return session

    def set_column_format(
        self,
        session_id: str,
        team_id: int | None,
        field_key: str,
        column_format: Mapping[str, Any],
    ) -> ImportSession:
        with self._open(session_id, team_id) as (store, session):
            self._require_editable(store, session)
            schema = self._schema(session.entity_type)
            spec = schema.get(field_key)
            if spec is None:
                raise MappingError(f"Unknown field '{field_key}'.")
            mapped = session.mapped(field_key)
            try:
                parsed = ColumnFormat.coerce(column_format)
            except ValueError as exc:
                raise MappingError(f"Invalid format for field '{field_key}': {exc}") from exc
            formats = dict(session.formats)
            formats[field_key] = parsed.as_dict()
            session = self._save(store, session, formats=formats)
            ColumnAnalyzer(store).validate_column(mapped, lambda value: validate_value(spec, value, parsed))
            return session

    def _clean_mapping(
        self,
        schema: EntitySchema,
        session: ImportSession,
        mapping: Mapping[str, str | None],
    ) -> dict[str, str]:
        cleaned: dict[str, str] = {}
        headers = set(session.headers)
        for field_key, column in mapping.items():
            if not column:
                continue
            if schema.get(field_key) is None:
                raise MappingError(f"Unknown field '{field_key}' for {schema.label}.")
            if column not in headers:
                raise MappingError(f"Column '{column}' is not present in the uploaded file.")
            cleaned[field_key] = column
        missing = [spec.label for spec in schema.required_fields if spec.key not in cleaned]
        if missing:
            raise MappingError(f"Required fields are not mapped: {', '.join(missing)}.")
        return cleaned

    def _validate_columns(self, store: StagingStore, session: ImportSession, schema: EntitySchema) -> None:
        analyzer = ColumnAnalyzer(store)
        for field_key, column in session.mapping.items():
            spec = schema.get(field_key)
            if spec is None or spec.is_relationship:
                continue
            column_format = session.column_format(field_key)
            analyzer.validate_column(
                MappedColumn(field_key, column),
                lambda value, spec=spec, column_format=column_format: validate_value(spec, value, column_format),
            )

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------
    def analyze(self, session_id: str, team_id: int | None) -> list[ColumnAnalysis]:
        with self._open(session_id, team_id) as (store, session):
            schema = self._schema(session.entity_type)
            return ColumnAnalyzer(store).analyze_all_columns(
                mapped_columns(session.mapping),
                required=[spec.key for spec in schema.required_fields],
                relationships=[spec.key for spec in schema.fields if spec.is_relationship],
            )

    def fetch_values(
        self,
        session_id: str,
        team_id: int | None,
        field_key: str,
        *,
        page: int = 1,
        page_size: int | None = None,
        search: str | None = None,
        value_filter: str = "all",
        sort: str = "count",
        errors_only: bool = False,
    ) -> ValuePage:
        with self._open(session_id, team_id) as (store, session):
            return ColumnAnalyzer(store).unique_values_paginated(
                session.mapped(field_key),
                page=page,
                page_size=page_size or self.settings.values_page_size,
                search=search,
                value_filter=value_filter,
                sort=sort,
                errors_only=errors_only,
                include_total=page == 1,
            )

    def value_counts(
        self,
        session_id: str,
        team_id: int | None,
        field_key: str,
        *,
        search: str | None = None,
    ) -> FilterCounts:
        with self._open(session_id, team_id) as (store, session):
            return ColumnAnalyzer(store).filter_counts(session.mapped(field_key), search=search)

    def store_correction(
        self,
        session_id: str,
        team_id: int | None,
        field_key: str,
        old_value: str | None,
        new_value: str | None,
    ) -> int:
        """Override every occurrence of ``old_value`` for ``field_key``; returns rows affected."""
        with self._open(session_id, team_id) as (store, session):
            self._require_editable(store, session)
            schema = self._schema(session.entity_type)
            spec = schema.get(field_key)
            if spec is None:
                raise MappingError(f"Unknown field '{field_key}'.")
            column_format = session.column_format(field_key)
            revalidate = None
            if not spec.is_relationship:
                revalidate = lambda value: validate_value(spec, value, column_format)  # noqa: E731
            affected = ColumnAnalyzer(store).apply_correction(
                session.mapped(field_key), old_value, new_value, revalidate=revalidate
            )

        normalized_new = "" if new_value is None else str(new_value).strip()
        if normalized_new == ("" if old_value is None else str(old_value).strip()):
            kind = "restore"
        elif normalized_new == "":
            kind = "skip"
        else:
            kind = "correction"
        metrics.record_correction(kind, affected)
        return affected

    def remove_correction(self, session_id: str, team_id: int | None, field_key: str, old_value: str | None) -> int:
        return self.store_correction(session_id, team_id, field_key, old_value, old_value)

    def skip_value(self, session_id: str, team_id: int | None, field_key: str, value: str | None) -> int:
        return self.store_correction(session_id, team_id, field_key, value, "")

    # ------------------------------------------------------------------
    # Preview and commit
    # ------------------------------------------------------------------
    def build_resolver(self, session: ImportSession, entity_store: EntityStore) -> RowResolver:
        schema = self._schema(session.entity_type)
        excluded = self.settings.public_email_domains
        matcher = EntityMatcher(
            entity_store,
            schema.entity_type,
            schema.lookup_kind,
            excluded_keys=excluded if schema.lookup_kind == "domain" else (),
            matchable=schema.matchable,
        )
        relationship_matchers: dict[str, EntityMatcher] = {}
        for spec in schema.fields:
            if spec.is_relationship and session.mapping.get(spec.key) and spec.relationship:
                target = self._schema(spec.relationship)
                relationship_matchers[spec.key] = EntityMatcher(
                    entity_store,
                    target.entity_type,
                    target.lookup_kind,
                    excluded_keys=excluded if target.lookup_kind == "domain" else (),
                )
        return RowResolver(
            schema,
            session.mapping,
            matcher,
            formats=session.column_formats(),
            relationship_matchers=relationship_matchers,
            excluded_domains=excluded,
        )

    def _resolve_matches(self, store: StagingStore, session: ImportSession, resolver: RowResolver) -> MatchSummary:
        return MatchResolver(
            store,
            resolver.matcher,
            session.mapping,
            lookup_field=resolver.schema.lookup_field,
            name_field=resolver.schema.name_field,
        ).resolve()

    def preview(self, session_id: str, team_id: int | None) -> PreviewResult:
        with self._open(session_id, team_id) as (store, session):
            if not session.mapping:
                raise MappingError("Map the file's columns before previewing the import.")
            resolver = self.build_resolver(session, EntityStore(session.team_id))
            matches = self._resolve_matches(store, session, resolver)
            result = PreviewEngine(
                store,
                resolver,
                ambiguous_policy=self.settings.ambiguous_policy,
                sample_size=self.settings.preview_sample_size,
                batch_size=self.settings.batch_size,
                matches=matches,
            ).run()
        metrics.record_preview(session.entity_type)
        return result

    def request_commit(self, session_id: str, team_id: int | None, *, user_id: int | None = None) -> ImportRun:
        """
        Create the import run and execute it inline or enqueue it for the worker.

        The session's commit claim makes this safe against concurrent calls:
        only the caller that takes the claim creates a run.
        """
        with self._open(session_id, team_id) as (store, session):
            self._require_editable(store, session)
            if not session.mapping:
                raise MappingError("Map the file's columns before importing.")
            if not store.claim_commit(owner=str(user_id if user_id is not None else session.user_id)):
                raise SessionStateError(
                    "Import is already being committed.",
                    status=ImportStatus.IMPORTING.value,
                )
            try:
                run = ImportRun(
                    session_id=session.session_id,
                    team_id=session.team_id,
                    user_id=user_id if user_id is not None else session.user_id,
                    entity_type=session.entity_type,
                    original_filename=session.original_filename,
                    status=ImportRunStatus.PENDING,
                    ambiguous_policy=self.settings.ambiguous_policy,
                    total_rows=session.row_count,
                    headers_json=list(session.headers),
                )
                db.session.add(run)
                db.session.commit()
                self._save(store, session, status=ImportStatus.IMPORTING, run_id=run.id)
            except Exception:
                db.session.rollback()
                store.release_commit_claim()
                raise

        if self.settings.worker_enabled:
            celery_app = get_celery_app(current_app)
            if celery_app is None:
                raise SessionStateError("Importer worker is not configured.", status=ImportStatus.IMPORTING.value)
            async_result = celery_app.send_task(EXECUTE_IMPORT_TASK, kwargs={"run_id": run.id})
            logger.info(
                "Import commit queued",
                extra={
                    "importer_run_id": run.id,
                    "importer_task_id": async_result.id,
                    "importer_session_id": session_id,
                },
            )
        else:
            self.execute_run(run.id)
            db.session.refresh(run)
        return run

    def _start_run(self, run: ImportRun) -> bool:
        """Move ``run`` from pending to running; ``False`` when another worker got there first."""
        claimed = (
            ImportRun.query.filter(ImportRun.id == run.id, ImportRun.status == ImportRunStatus.PENDING)
            .update(
                {ImportRun.status: ImportRunStatus.RUNNING, ImportRun.started_at: _utcnow()},
                synchronize_session=False,
            )
        )
        db.session.commit()
        db.session.refresh(run)
        return bool(claimed)

    def execute_run(self, run_id: int) -> CommitSummary:
        """
        Commit the staged rows of ``run_id``; used inline and by the Celery task.

        Only a pending run is executed. Any failure marks the run and the
        session failed before the exception propagates.
        """
        run = db.session.get(ImportRun, run_id)
        if run is None:
            raise ValueError(f"Import run {run_id} not found.")
        if not self._start_run(run):
            raise SessionStateError(
                f"Import run {run_id} is already {run.status.value}.",
                status=run.status.value,
            )

        store = StagingStore.load(self.storage_root, run.session_id)
        if store is None:
            self._finish_run(run, ImportRunStatus.FAILED, error="Import session not found.")
            raise InvalidSessionError(run.session_id)

        started = time.monotonic()
        try:
            session = ImportSession.from_dict(store.read_metadata())
            entity_store = EntityStore(session.team_id)
            resolver = self.build_resolver(session, entity_store)
            self._resolve_matches(store, session, resolver)
            orchestrator = CommitOrchestrator(
                store,
                resolver,
                entity_store,
                run,
                ambiguous_policy=run.ambiguous_policy,
                batch_size=self.settings.batch_size,
            )
            summary = orchestrator.execute()
        except Exception as exc:
            self._abort_run(run_id, run, store, exc)
            raise

        status = ImportRunStatus.PARTIALLY_FAILED if summary.has_failures else ImportRunStatus.SUCCEEDED
        self._finish_run(run, status, summary=summary, error=orchestrator.error_summary())
        metrics.record_commit(
            entity_type=run.entity_type,
            created=summary.created,
            updated=summary.updated,
            skipped=summary.skipped,
            failed=summary.failed,
            duration_seconds=time.monotonic() - started,
        )
        store.destroy()
        return summary

    def _abort_run(self, run_id: int, run: ImportRun, store: StagingStore, exc: Exception) -> None:
        reason = str(exc) or exc.__class__.__name__
        logger.exception(
            "Import commit aborted",
            extra={"importer_run_id": run_id, "importer_session_id": store.session_id},
        )
        db.session.rollback()
        try:
            self._finish_run(run, ImportRunStatus.FAILED, error=reason)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Could not record import run failure", extra={"importer_run_id": run_id})
        self._mark_session(store, ImportStatus.FAILED, {"error": reason})
        store.close()

    def _finish_run(
        self,
        run: ImportRun,
        status: ImportRunStatus,
        *,
        summary: CommitSummary | None = None,
        error: str | None = None,
    ) -> None:
        run.status = status
        run.finished_at = _utcnow()
        run.error_summary = error
        if summary is not None:
            run.total_rows = summary.total_rows
            run.rows_created = summary.created
            run.rows_updated = summary.updated
            run.rows_skipped = summary.skipped
            run.rows_failed = summary.failed
            run.counts_json = summary.as_dict()
        db.session.commit()

    def _mark_session(self, store: StagingStore, status: ImportStatus, results: dict[str, Any]) -> None:
        try:
            session = ImportSession.from_dict(store.read_metadata())
            self._save(store, session, status=status, results=results)
        except (StorageError, InvalidSessionError, KeyError) as exc:
            logger.warning("Could not update import session status: %s", exc)

    def find_run(self, session_id: str, team_id: int | None) -> ImportRun | None:
        if not is_valid_session_id(session_id):
            return None
        query = ImportRun.query.filter(ImportRun.session_id == session_id)
        if team_id is not None:
            query = query.filter(ImportRun.team_id == team_id)
        return query.order_by(ImportRun.id.desc()).first()

    def list_runs(
        self,
        team_id: int,
        *,
        limit: int = 50,
        offset: int = 0,
        entity_type: str | None = None,
    ) -> tuple[list[ImportRun], int]:
        """Import history of a team, newest first, with the total for pagination."""
        query = ImportRun.query.filter(ImportRun.team_id == team_id)
        if entity_type:
            query = query.filter(ImportRun.entity_type == entity_type)
        total = query.count()
        runs = query.order_by(ImportRun.id.desc()).offset(max(offset, 0)).limit(max(min(limit, 200), 1)).all()
        return runs, total

    def failed_rows_csv(self, run: ImportRun) -> tuple[str, str]:
        """Return ``(filename, csv_text)`` with the original columns of every failed row."""
        headers = list(run.headers_json or [])
        buffer = StringIO()
        writer = csv.writer(buffer)
        writer.writerow(["row_number", *headers, "error"])
        for failed in run.failed_rows:
            raw = failed.raw_data or {}
            writer.writerow(
                [
                    failed.row_number,
                    *(_sanitize_csv(raw.get(header)) for header in headers),
                    _sanitize_csv(failed.error_message),
                ]
            )
        return f"import-{run.session_id}-failed-rows.csv", buffer.getvalue()

    # ------------------------------------------------------------------
    # Cancellation and cleanup
    # ------------------------------------------------------------------
    def cancel(self, session_id: str, team_id: int | None) -> None:
        with self._open(session_id, team_id) as (store, _):
            store.destroy()
        logger.info("Import session cancelled", extra={"importer_session_id": session_id})

    def cleanup_expired(self, now: datetime | None = None) -> int:
        """
        Destroy sessions past their TTL; returns the number removed.

        A session stuck in ``importing`` past ``importing_ttl`` lost its worker;
        its run is marked failed before the store is removed.
        """
        now = now or _utcnow()
        removed = 0
        if not self.storage_root.exists():
            return 0
        for entry in sorted(self.storage_root.iterdir()):
            if not entry.is_dir():
                continue
            if entry.name.startswith(TOMBSTONE_PREFIX):
                shutil.rmtree(entry, ignore_errors=True)
                continue
            if not is_valid_session_id(entry.name):
                continue
            status, updated_at, run_id = self._session_state(entry)
            if updated_at + self._ttl_for(status) > now:
                continue
            if status is ImportStatus.IMPORTING and run_id is not None:
                self._abandon_run(run_id)
            if destroy_session_directory(entry):
                removed += 1
                logger.info("Expired import session removed", extra={"importer_session_id": entry.name})
        return removed

    def _ttl_for(self, status: ImportStatus | None) -> timedelta:
        if status is ImportStatus.IMPORTING:
            return self.settings.importing_ttl
        if status is ImportStatus.FAILED:
            return self.settings.failed_ttl
        return self.settings.session_ttl

    def _session_state(self, directory: Path) -> tuple[ImportStatus | None, datetime, int | None]:
        updated_at = datetime.fromtimestamp(directory.stat().st_mtime, tz=timezone.utc)
        store = StagingStore.load(self.storage_root, directory.name)
        if store is None:
            return None, updated_at, None
        try:
            payload = store.read_metadata()
        except StorageError as exc:
            logger.warning("Unreadable import metadata in %s: %s", directory.name, exc)
            payload = {}
        finally:
            store.close()
        if payload.get("updated_at"):
            updated_at = _parse_timestamp(payload["updated_at"])
        status = ImportStatus(payload["status"]) if payload.get("status") else None
        return status, updated_at, payload.get("run_id")

    def _abandon_run(self, run_id: int) -> None:
        run = db.session.get(ImportRun, run_id)
        if run is None or run.status not in (ImportRunStatus.PENDING, ImportRunStatus.RUNNING):
            return
        self._finish_run(run, ImportRunStatus.FAILED, error="Import did not finish before its session expired.")
        logger.warning("Abandoned import run marked failed", extra={"importer_run_id": run_id})
