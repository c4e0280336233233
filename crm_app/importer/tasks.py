"""
Importer Celery tasks.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from crm_app.importer.errors import SessionStateError
from crm_app.importer.pipeline import ImportSessionService


@shared_task(name="importer.healthcheck", bind=True)
def importer_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by ``flask importer worker ping``."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name="importer.pipeline.execute_import", bind=True)
def execute_import(self, *, run_id: int) -> dict[str, Any]:
    """
    Commit the staged rows of an import run queued by the web process.

    A redelivered message for a run that already started is acknowledged
    without running the import again.
    """
    service = ImportSessionService.from_app(current_app)
    try:
        summary = service.execute_run(run_id)
    except SessionStateError as exc:
        current_app.logger.warning(
            "Importer run skipped", extra={"importer_run_id": run_id, "importer_reason": str(exc)}
        )
        return {"run_id": run_id, "skipped": True, "reason": str(exc)}
    except Exception:
        current_app.logger.exception("Importer run failed", extra={"importer_run_id": run_id})
        raise

    current_app.logger.info(
        "Importer run completed",
        extra={"importer_run_id": run_id, **{f"importer_{key}": value for key, value in summary.as_dict().items()}},
    )
    return {"run_id": run_id, **summary.as_dict()}


@shared_task(name="importer.maintenance.cleanup_sessions", bind=True)
def cleanup_sessions(self) -> dict[str, Any]:
    """Remove expired import sessions from the staging directory."""
    removed = ImportSessionService.from_app(current_app).cleanup_expired()
    return {"removed": removed}
