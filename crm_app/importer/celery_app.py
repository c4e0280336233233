"""
Celery wiring for the import commit worker.

Commits only go through Celery when ``IMPORTER_WORKER_ENABLED`` is set; the
web process otherwise runs them inline. Broker and result backend fall back
to one SQLite file in the instance folder, so a local worker needs no Redis.
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping

from celery import Celery
from flask import Flask
from kombu import Queue

DEFAULT_QUEUE_NAME = "imports"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"
CLEANUP_TASK_NAME = "importer.maintenance.cleanup_sessions"
CLEANUP_INTERVAL = timedelta(hours=1)


def _transport_database(app: Flask) -> Path:
    """Path of the SQLite file shared by the fallback broker and result backend."""
    location = Path(app.config.get("CELERY_SQLITE_PATH") or DEFAULT_SQLITE_FILENAME)
    if not location.is_absolute():
        location = Path(app.instance_path) / location
    location.parent.mkdir(parents=True, exist_ok=True)
    return location


def resolve_transport(app: Flask) -> tuple[str, str]:
    """Return ``(broker_url, result_backend)`` for ``app``."""
    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")
    if not (broker_url and result_backend):
        database = _transport_database(app).as_posix()
        broker_url = broker_url or f"sqla+sqlite:///{database}"
        result_backend = result_backend or f"db+sqlite:///{database}"
    return broker_url, result_backend


def _overrides(app: Flask) -> Mapping[str, Any]:
    raw = app.config.get("CELERY_CONFIG")
    if not raw:
        return {}
    if isinstance(raw, Mapping):
        return raw
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        app.logger.warning("Ignoring CELERY_CONFIG: value is not valid JSON.", exc_info=True)
        return {}
    if not isinstance(parsed, dict):
        app.logger.warning("Ignoring CELERY_CONFIG: expected a JSON object.")
        return {}
    return parsed


def _worker_settings(app: Flask) -> dict[str, Any]:
    queue = Queue(DEFAULT_QUEUE_NAME)
    return {
        "task_default_queue": queue.name,
        "task_default_exchange": queue.name,
        "task_default_routing_key": queue.name,
        "task_queues": [queue],
        # one import per worker process at a time
        "worker_prefetch_multiplier": 1,
        "task_acks_late": True,
        "task_track_started": True,
        "result_extended": True,
        "broker_connection_retry_on_startup": True,
        "task_time_limit": app.config.get("IMPORTER_TASK_TIME_LIMIT", 30 * 60),
        "task_soft_time_limit": app.config.get("IMPORTER_TASK_SOFT_TIME_LIMIT", 25 * 60),
        "beat_schedule": {
            "importer-cleanup-sessions": {"task": CLEANUP_TASK_NAME, "schedule": CLEANUP_INTERVAL},
        },
        "worker_hijack_root_logger": False,
        "worker_log_format": "[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
        "worker_task_log_format": (
            "[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s"
        ),
    }


def create_celery_app(app: Flask) -> Celery:
    """
    Build the Celery instance for ``app``.

    Every task body runs inside ``app.app_context()`` so the service layer can
    use ``db.session`` and read the importer settings from ``current_app``.
    """
    broker_url, result_backend = resolve_transport(app)
    celery_app = Celery(
        app.import_name,
        broker=broker_url,
        backend=result_backend,
        include=("crm_app.importer.tasks",),
    )
    celery_app.conf.update(_worker_settings(app))
    celery_app.conf.update(_overrides(app))

    class AppContextTask(celery_app.Task):  # type: ignore[misc]
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = AppContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()

    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery.worker.strategy").setLevel(logging.WARNING)
    app.logger.info(
        "Importer worker transport configured",
        extra={
            "importer_celery_broker_url": broker_url,
            "importer_celery_result_backend": result_backend,
            "importer_worker_enabled": bool(app.config.get("IMPORTER_WORKER_ENABLED")),
        },
    )
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    """Create the Celery app on first use and cache it in the importer extension state."""
    if state.get("celery_app") is None:
        state["celery_app"] = create_celery_app(app)
    return state["celery_app"]


def get_celery_app(app: Flask) -> Celery | None:
    """Return the importer's Celery app, or ``None`` when the importer is not mounted."""
    state = app.extensions.get("importer")
    if not state or not state.get("enabled"):
        return state.get("celery_app") if state else None
    return ensure_celery_app(app, state)
