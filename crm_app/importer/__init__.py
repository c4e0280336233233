"""
Staged CSV/Excel import for companies, people and opportunities.

``init_importer(app)`` reads ``IMPORTER_ENABLED`` and, when it is on, mounts
the ``/importer`` blueprint, the ``flask importer`` command group and the
Celery app used for queued commits. Disabled apps still get a ``flask
importer`` group that explains why nothing is available.
"""

from __future__ import annotations

from typing import Any

from flask import Flask

from crm_app.utils.importer import is_importer_enabled, is_worker_enabled

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_importer_group, importer_cli
from .pipeline import ImportSessionService
from .views import importer_blueprint

IMPORTER_EXTENSION_KEY = "importer"

__all__ = [
    "IMPORTER_EXTENSION_KEY",
    "ImportSessionService",
    "get_celery_app",
    "init_importer",
]


def _extension_state(app: Flask) -> dict[str, Any]:
    state = app.extensions.setdefault(IMPORTER_EXTENSION_KEY, {"celery_app": None})
    state["enabled"] = is_importer_enabled(app)
    state["worker_enabled"] = is_worker_enabled(app)
    return state


def _install_cli(app: Flask, group) -> None:
    app.cli.commands.pop(group.name, None)
    app.cli.add_command(group)


def init_importer(app: Flask) -> None:
    """Mount or stub out the importer for ``app``; safe to call more than once."""
    state = _extension_state(app)
    if not state["enabled"]:
        _install_cli(app, get_disabled_importer_group())
        app.logger.info("Importer disabled via IMPORTER_ENABLED; blueprint and worker not registered.")
        return

    ensure_celery_app(app, state)
    if importer_blueprint.name not in app.blueprints:
        if getattr(app, "_got_first_request", False):
            app.logger.warning("Importer blueprint not registered: the app has already served a request.")
        else:
            app.register_blueprint(importer_blueprint)
    _install_cli(app, importer_cli)
    app.logger.info("Importer enabled (worker %s)", "on" if state["worker_enabled"] else "off")
