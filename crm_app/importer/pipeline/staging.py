"""
Per-session staging store for uploaded import rows.

Each import session owns one directory ``<storage root>/<session id>/`` holding
``meta.json`` (session metadata) and ``data.sqlite`` (the staged rows). Rows
keep their raw values as an immutable JSON object; corrections, validation
results and match outcomes live in sibling JSON/scalar columns so that every
bulk operation can be expressed as a single set-based statement.
"""

from __future__ import annotations

import json
import logging
import os
import re
import secrets
import shutil
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from itertools import islice
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping
from urllib.parse import quote

from sqlalchemy import (
    DDL,
    Column,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    case,
    create_engine,
    event,
    func,
    insert,
    literal,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.pool import NullPool
from sqlalchemy.sql.elements import ColumnElement

from crm_app.importer.errors import InvalidSessionError, StorageError, StorageInitError

logger = logging.getLogger(__name__)

BATCH_SIZE = 500
SCHEMA_VERSION = 1
DATA_FILENAME = "data.sqlite"
META_FILENAME = "meta.json"
COMMIT_CLAIM_FILENAME = "commit.claim"
TOMBSTONE_PREFIX = ".deleting-"
SESSION_ID_BYTES = 16
SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{22}$")

MATCH_ACTION_UPDATE = "update"

metadata = MetaData()

import_rows = Table(
    "import_rows",
    metadata,
    Column("row_number", Integer, primary_key=True, autoincrement=False),
    Column("raw_data", Text, nullable=False),
    Column("validation", Text, nullable=True),
    Column("corrections", Text, nullable=True),
    Column("match_action", Text, nullable=True),
    Column("matched_id", Integer, nullable=True),
)
Index("idx_import_rows_validation", import_rows.c.validation)
Index("idx_import_rows_match_action", import_rows.c.match_action)

event.listen(
    import_rows,
    "after_create",
    DDL(
        "CREATE TRIGGER IF NOT EXISTS import_rows_reject_empty_raw "
        "BEFORE INSERT ON import_rows "
        "WHEN NEW.raw_data IS NULL OR trim(NEW.raw_data) IN ('', '{}', '[]') "
        "BEGIN SELECT RAISE(ABORT, 'staged row raw_data must not be empty'); END"
    ),
)

_temp_metadata = MetaData()

temp_match_lookup = Table(
    "temp_match_lookup",
    _temp_metadata,
    Column("lookup_value", Text, primary_key=True),
    Column("entity_id", Integer, nullable=True),
    prefixes=["TEMPORARY"],
)

_EXPECTED_COLUMNS = frozenset(column.name for column in import_rows.columns)


def new_session_id() -> str:
    """Return a fresh 128-bit, URL-safe session identifier."""
    return secrets.token_urlsafe(SESSION_ID_BYTES)


def is_valid_session_id(value: object) -> bool:
    return isinstance(value, str) and SESSION_ID_RE.fullmatch(value) is not None


def json_path(key: str) -> str:
    """Build a SQLite JSON path addressing the object member ``key``."""
    if '"' in key:
        raise ValueError(f"JSON keys may not contain double quotes: {key!r}")
    return f'$."{key}"'


def batched(iterable: Iterable[Any], size: int) -> Iterator[list[Any]]:
    iterator = iter(iterable)
    while True:
        chunk = list(islice(iterator, size))
        if not chunk:
            return
        yield chunk


@dataclass(frozen=True)
class MappedColumn:
    """A (target field, source column) pair; corrections are keyed by the field."""

    field_key: str
    column: str

    @property
    def raw_path(self) -> str:
        return json_path(self.column)

    @property
    def correction_path(self) -> str:
        return json_path(self.field_key)


@dataclass(frozen=True)
class StagedRow:
    """One staged row as read back from the store."""

    row_number: int
    raw: Mapping[str, Any]
    corrections: Mapping[str, str] = field(default_factory=dict)
    validation: Mapping[str, Any] = field(default_factory=dict)
    match_action: str | None = None
    matched_id: int | None = None

    def raw_value(self, column: str) -> str:
        value = self.raw.get(column)
        return "" if value is None else str(value)

    def effective_value(self, mapped: MappedColumn) -> str:
        """Correction if present (``""`` means skipped), else raw, else empty."""
        if mapped.field_key in self.corrections:
            return self.corrections[mapped.field_key]
        return self.raw_value(mapped.column)

    def is_skipped(self, mapped: MappedColumn) -> bool:
        return self.corrections.get(mapped.field_key) == ""


def _loads(payload: str | None) -> dict[str, Any]:
    if not payload:
        return {}
    return json.loads(payload)


def _row_from_mapping(row: Mapping[str, Any]) -> StagedRow:
    return StagedRow(
        row_number=row["row_number"],
        raw=_loads(row["raw_data"]),
        corrections=_loads(row["corrections"]),
        validation=_loads(row["validation"]),
        match_action=row["match_action"],
        matched_id=row["matched_id"],
    )


def _casefold(value):
    return value.casefold() if isinstance(value, str) else value


def _configure_sqlite_connection(dbapi_connection, connection_record):  # pragma: no cover - instrumentation
    # SQLite's lower() only folds ASCII
    dbapi_connection.create_function("casefold", 1, _casefold, deterministic=True)
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def _build_engine(data_path: Path, *, create: bool = False) -> Engine:
    """
    Return an engine bound to one session file.

    The file is opened in URI mode so that a destroyed session is never
    silently recreated by a late connection (``mode=rw`` refuses missing files).
    """
    mode = "rwc" if create else "rw"
    uri = f"file:{quote(data_path.as_posix())}?mode={mode}"

    def _connect():
        return sqlite3.connect(uri, uri=True, timeout=5, check_same_thread=False)

    engine = create_engine("sqlite://", creator=_connect, poolclass=NullPool)
    event.listen(engine, "connect", _configure_sqlite_connection)
    return engine


class StagingQuery:
    """
    Handle for ad-hoc filtering and aggregation over one session's rows.

    Obtained from :meth:`StagingStore.query`; all statements run inside a single
    transaction that commits when the ``with`` block exits cleanly.
    """

    table = import_rows

    def __init__(self, connection: Connection) -> None:
        self.connection = connection

    def raw(self, column: str) -> ColumnElement:
        return func.json_extract(import_rows.c.raw_data, json_path(column))

    def correction(self, field_key: str) -> ColumnElement:
        return func.json_extract(import_rows.c.corrections, json_path(field_key))

    def effective(self, mapped: MappedColumn) -> ColumnElement:
        return func.coalesce(self.correction(mapped.field_key), self.raw(mapped.column), "")

    def raw_or_blank(self, column: str) -> ColumnElement:
        return func.coalesce(self.raw(column), "")

    def execute(self, statement, parameters=None):
        return self.connection.execute(statement, parameters)

    def scalar(self, statement, parameters=None):
        return self.connection.execute(statement, parameters).scalar()

    def count(self) -> int:
        return int(self.scalar(select(func.count()).select_from(import_rows)) or 0)

    def iter_rows(self, *, batch_size: int = BATCH_SIZE, where=None) -> Iterator[StagedRow]:
        """Yield rows in row-number order, fetching ``batch_size`` rows per round trip."""
        last_row_number = 0
        while True:
            statement = (
                select(import_rows)
                .where(import_rows.c.row_number > last_row_number)
                .order_by(import_rows.c.row_number)
                .limit(batch_size)
            )
            if where is not None:
                statement = statement.where(where)
            rows = self.connection.execute(statement).mappings().all()
            if not rows:
                return
            for row in rows:
                yield _row_from_mapping(row)
            last_row_number = rows[-1]["row_number"]

    def get_row(self, row_number: int) -> StagedRow | None:
        row = (
            self.connection.execute(select(import_rows).where(import_rows.c.row_number == row_number))
            .mappings()
            .first()
        )
        return _row_from_mapping(row) if row is not None else None


class StagingStore:
    """
    Owned handle on one session's embedded store.

    Use :meth:`create` or :meth:`load` to obtain an instance and close it (or
    use it as a context manager) when done.
    """

    def __init__(self, session_id: str, directory: Path, engine: Engine) -> None:
        self.session_id = session_id
        self.directory = directory
        self._engine = engine
        self._closed = False

    def __repr__(self) -> str:
        return f"<StagingStore {self.session_id}>"

    def __enter__(self) -> "StagingStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def data_path(self) -> Path:
        return self.directory / DATA_FILENAME

    @property
    def meta_path(self) -> Path:
        return self.directory / META_FILENAME

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @classmethod
    def create(cls, root: str | Path, session_id: str) -> "StagingStore":
        """
        Allocate an empty store for ``session_id``.

        Raises:
            InvalidSessionError: the id does not match the session id format.
            StorageInitError: the directory cannot be created, or a store with
                an incompatible schema (or existing rows) is already on disk.
        """
        if not is_valid_session_id(session_id):
            raise InvalidSessionError(session_id)

        directory = Path(root) / session_id
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageInitError(session_id, str(exc)) from exc

        data_path = directory / DATA_FILENAME
        existed = data_path.exists()
        engine = _build_engine(data_path, create=True)
        try:
            with engine.begin() as connection:
                if existed:
                    _check_existing_schema(connection, session_id)
                else:
                    metadata.create_all(connection)
                    connection.exec_driver_sql(f"PRAGMA user_version = {SCHEMA_VERSION}")
        except StorageInitError:
            engine.dispose()
            raise
        except SQLAlchemyError as exc:
            engine.dispose()
            raise StorageInitError(session_id, str(exc)) from exc

        logger.info("Import store created", extra={"importer_session_id": session_id})
        return cls(session_id, directory, engine)

    @classmethod
    def load(cls, root: str | Path, session_id: object) -> "StagingStore | None":
        """Reopen an existing store; ``None`` when the id is malformed or unknown."""
        if not is_valid_session_id(session_id):
            return None
        directory = Path(root) / str(session_id)
        data_path = directory / DATA_FILENAME
        if not data_path.is_file():
            return None
        return cls(str(session_id), directory, _build_engine(data_path))

    def close(self) -> None:
        if not self._closed:
            self._engine.dispose()
            self._closed = True

    def destroy(self) -> None:
        """Delete all storage for this session. Safe to call repeatedly."""
        self.close()
        destroy_session_directory(self.directory)
        logger.info("Import store destroyed", extra={"importer_session_id": self.session_id})

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------
    @contextmanager
    def _transaction(self) -> Iterator[Connection]:
        if self._closed:
            raise StorageError(f"Import store {self.session_id} is closed.")
        if not self.data_path.exists():
            raise InvalidSessionError(self.session_id)
        try:
            with self._engine.begin() as connection:
                yield connection
        except OperationalError as exc:
            if not self.data_path.exists():
                raise InvalidSessionError(self.session_id) from exc
            raise StorageError(f"Import store {self.session_id} operation failed: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            raise StorageError(f"Import store {self.session_id} operation failed: {exc}") from exc

    @contextmanager
    def query(self) -> Iterator[StagingQuery]:
        """Open a transaction-scoped query handle over this session's rows."""
        with self._transaction() as connection:
            yield StagingQuery(connection)

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------
    def bulk_insert(
        self,
        rows: Iterable[tuple[int, Mapping[str, Any]]],
        *,
        batch_size: int = BATCH_SIZE,
    ) -> int:
        """
        Insert ``(row_number, raw values)`` pairs in batches.

        All batches share one transaction: if any row is rejected (for example
        by the empty-raw-data trigger) nothing is staged.
        """
        inserted = 0
        with self._transaction() as connection:
            for chunk in batched(rows, batch_size):
                payload = [
                    {
                        "row_number": int(row_number),
                        "raw_data": json.dumps(dict(values), ensure_ascii=False),
                    }
                    for row_number, values in chunk
                ]
                connection.execute(insert(import_rows), payload)
                inserted += len(payload)
        logger.info(
            "Staged import rows",
            extra={"importer_session_id": self.session_id, "importer_rows_staged": inserted},
        )
        return inserted

    def reset_matches(self) -> None:
        with self._transaction() as connection:
            connection.execute(update(import_rows).values(match_action=None, matched_id=None))

    def fill_matches(self, action: str) -> int:
        """Record ``action`` on every row that has no match outcome yet."""
        with self._transaction() as connection:
            result = connection.execute(
                update(import_rows).where(import_rows.c.match_action.is_(None)).values(match_action=action)
            )
        return result.rowcount

    def bulk_apply_matches(
        self,
        lookup: MappedColumn,
        resolved: Mapping[str, int | None],
        unmatched_action: str,
        *,
        batch_size: int = BATCH_SIZE,
    ) -> int:
        """
        Record match outcomes for every unmatched row whose lookup value is in ``resolved``.

        ``resolved`` maps an effective lookup value to an existing entity id,
        or to ``None`` when it did not resolve; those rows receive
        ``unmatched_action``. Pairs are staged into a temporary table and
        applied with one joined UPDATE. Returns the number of rows updated.
        """
        if not resolved:
            return 0
        with self._transaction() as connection:
            temp_match_lookup.create(connection, checkfirst=True)
            try:
                for chunk in batched(resolved.items(), batch_size):
                    connection.execute(
                        insert(temp_match_lookup),
                        [{"lookup_value": value, "entity_id": entity_id} for value, entity_id in chunk],
                    )
                handle = StagingQuery(connection)
                effective = handle.effective(lookup)
                entity_id = (
                    select(temp_match_lookup.c.entity_id)
                    .where(temp_match_lookup.c.lookup_value == effective)
                    .scalar_subquery()
                )
                statement = (
                    update(import_rows)
                    .where(import_rows.c.match_action.is_(None))
                    .where(effective.in_(select(temp_match_lookup.c.lookup_value)))
                    .values(
                        matched_id=entity_id,
                        match_action=case(
                            (entity_id.is_not(None), literal(MATCH_ACTION_UPDATE)),
                            else_=literal(unmatched_action),
                        ),
                    )
                )
                updated = connection.execute(statement).rowcount
            finally:
                temp_match_lookup.drop(connection, checkfirst=True)
        logger.debug(
            "Applied staged match outcomes",
            extra={
                "importer_session_id": self.session_id,
                "importer_lookup_field": lookup.field_key,
                "importer_rows_matched": updated,
            },
        )
        return int(updated or 0)

    # ------------------------------------------------------------------
    # Commit claim
    # ------------------------------------------------------------------
    @property
    def claim_path(self) -> Path:
        return self.directory / COMMIT_CLAIM_FILENAME

    def claim_commit(self, owner: str) -> bool:
        """
        Mark the session as being committed; ``False`` when another caller holds the claim.

        The claim file is created with ``O_EXCL``, so of two concurrent callers
        exactly one succeeds.
        """
        try:
            with self.claim_path.open("x", encoding="utf-8") as handle:
                handle.write(owner)
        except FileExistsError:
            return False
        except FileNotFoundError as exc:
            raise InvalidSessionError(self.session_id) from exc
        except OSError as exc:
            raise StorageError(f"Cannot claim import {self.session_id} for commit: {exc}") from exc
        return True

    def release_commit_claim(self) -> None:
        try:
            self.claim_path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot release commit claim of import {self.session_id}: {exc}") from exc

    def is_commit_claimed(self) -> bool:
        return self.claim_path.exists()

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------
    def read_metadata(self) -> dict[str, Any]:
        if not self.directory.exists():
            raise InvalidSessionError(self.session_id)
        try:
            return json.loads(self.meta_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Cannot read metadata for import {self.session_id}: {exc}") from exc

    def write_metadata(self, payload: Mapping[str, Any]) -> None:
        """Atomically replace ``meta.json``."""
        if not self.directory.exists():
            raise InvalidSessionError(self.session_id)
        temp_path = self.meta_path.with_suffix(".json.tmp")
        try:
            temp_path.write_text(json.dumps(dict(payload), indent=2, sort_keys=True), encoding="utf-8")
            os.replace(temp_path, self.meta_path)
        except OSError as exc:
            raise StorageError(f"Cannot write metadata for import {self.session_id}: {exc}") from exc


def _check_existing_schema(connection: Connection, session_id: str) -> None:
    version = connection.exec_driver_sql("PRAGMA user_version").scalar()
    columns = {row[1] for row in connection.exec_driver_sql("PRAGMA table_info(import_rows)")}
    if version != SCHEMA_VERSION or not _EXPECTED_COLUMNS.issubset(columns):
        raise StorageInitError(session_id, f"existing store has incompatible schema (version {version}).")
    existing_rows = connection.execute(select(func.count()).select_from(import_rows)).scalar()
    if existing_rows:
        raise StorageInitError(session_id, "a store with this id already holds staged rows.")


def destroy_session_directory(directory: Path) -> bool:
    """
    Remove a session directory; returns False when it was already gone.

    The directory is renamed to a tombstone first so new operations stop
    finding the session before the files are actually deleted.
    """
    tombstone = directory.with_name(f"{TOMBSTONE_PREFIX}{directory.name}-{secrets.token_hex(4)}")
    try:
        os.replace(directory, tombstone)
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise StorageError(f"Cannot remove import store {directory.name}: {exc}") from exc
    try:
        shutil.rmtree(tombstone)
    except OSError as exc:  # pragma: no cover - tombstones are swept by cleanup
        logger.warning("Failed to remove import store tombstone %s: %s", tombstone, exc)
    return True
