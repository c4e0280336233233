"""Exception hierarchy shared by the import pipeline."""

from __future__ import annotations


class ImporterError(Exception):
    """Base exception for import pipeline failures."""

    retryable = False


class StorageError(ImporterError):
    """The staging store could not complete an operation (disk, corruption, locking)."""

    retryable = True


class StorageInitError(StorageError):
    """A session store could not be allocated."""

    def __init__(self, session_id: str, message: str) -> None:
        super().__init__(f"Cannot initialise import store {session_id}: {message}")
        self.session_id = session_id


class InvalidSessionError(ImporterError):
    """The session id is malformed or refers to no existing import."""

    def __init__(self, session_id: object) -> None:
        super().__init__("Import session not found.")
        self.session_id = session_id


class RowCommitError(ImporterError):
    """The entity store rejected one staged row during commit."""

    def __init__(self, message: str, *, row_number: int | None = None) -> None:
        prefix = f"Row {row_number}: " if row_number is not None else ""
        super().__init__(f"{prefix}{message}")
        self.row_number = row_number
        self.reason = message


class FileIngestError(ImporterError):
    """The uploaded file cannot be turned into delimited rows."""


class MappingError(ImporterError):
    """A column mapping references unknown fields or columns."""


class SessionStateError(ImporterError):
    """The requested operation is not allowed in the session's current status."""

    def __init__(self, message: str, *, status: str | None = None) -> None:
        super().__init__(message)
        self.status = status
