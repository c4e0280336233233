"""
Utility helpers for importer feature flag checks.
"""

from __future__ import annotations

from flask import current_app


def _get_config(app=None):
    if app is not None:
        return app.config
    return current_app.config


def is_importer_enabled(app=None) -> bool:
    """Return True when the importer feature flag is enabled."""
    config = _get_config(app)
    return bool(config.get("IMPORTER_ENABLED", False))


def is_worker_enabled(app=None) -> bool:
    """Return True when commits should be queued to the Celery worker."""
    config = _get_config(app)
    return bool(config.get("IMPORTER_WORKER_ENABLED", False))


def get_ambiguous_policy(app=None) -> str:
    """Return the configured policy for ambiguous matches (``skip`` or ``create``)."""
    config = _get_config(app)
    return str(config.get("IMPORTER_AMBIGUOUS_POLICY", "skip")).strip().lower()


def get_public_email_domains(app=None) -> frozenset[str]:
    """Return the public mailbox domains excluded from company matching, if filtering is on."""
    config = _get_config(app)
    if not config.get("IMPORTER_PUBLIC_EMAIL_DOMAINS_ENABLED", True):
        return frozenset()
    return frozenset(domain.lower() for domain in config.get("IMPORTER_PUBLIC_EMAIL_DOMAINS", ()))
