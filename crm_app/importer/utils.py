"""
Filesystem helpers for the importer: upload spooling and storage locations.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable
from uuid import uuid4

from flask import current_app
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from .adapters import SUPPORTED_EXTENSIONS

UPLOAD_DIR_KEY = "IMPORTER_UPLOAD_DIR"
STORAGE_DIR_KEY = "IMPORTER_STORAGE_DIR"
_DEFAULT_SUBDIRS = {UPLOAD_DIR_KEY: "import_uploads", STORAGE_DIR_KEY: "imports"}

UPLOAD_EXTENSIONS: tuple[str, ...] = tuple(sorted(ext.lstrip(".") for ext in SUPPORTED_EXTENSIONS))


def _configured_directory(app, config_key: str) -> Path:
    """
    Resolve ``config_key`` against the instance folder and create the directory.

    Relative settings are taken relative to ``app.instance_path``; an unset
    value falls back to the importer's default subdirectory.
    """
    configured = app.config.get(config_key) or _DEFAULT_SUBDIRS[config_key]
    directory = Path(configured)
    if not directory.is_absolute():
        directory = Path(app.instance_path) / directory
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def resolve_upload_directory(app) -> Path:
    return _configured_directory(app, UPLOAD_DIR_KEY)


def resolve_storage_directory(app) -> Path:
    """Root directory holding one subdirectory per import session."""
    return _configured_directory(app, STORAGE_DIR_KEY)


def allowed_file(filename: str, allowed_extensions: Iterable[str] = UPLOAD_EXTENSIONS) -> bool:
    suffix = Path(filename or "").suffix.lower().lstrip(".")
    return bool(suffix) and suffix in {ext.lower() for ext in allowed_extensions}


def persist_upload(file_storage: FileStorage, app) -> Path:
    """
    Spool an uploaded file to the upload directory under a random name.

    The sanitized original extension is kept because the spreadsheet reader
    picks its parser from it; uploads without one are treated as CSV.
    """
    suffix = Path(secure_filename(file_storage.filename or "")).suffix.lower() or ".csv"
    target = resolve_upload_directory(app) / f"{uuid4().hex}{suffix}"
    file_storage.save(target)
    current_app.logger.debug("Importer upload spooled to %s", target)
    return target


def cleanup_upload(path: Path) -> None:
    """Delete a spooled upload; failures are logged, never raised."""
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as exc:
        current_app.logger.warning("Could not remove importer upload %s: %s", path, exc)
