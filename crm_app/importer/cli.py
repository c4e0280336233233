"""
Click commands for the importer: worker management, cleanup and file imports.
"""

from __future__ import annotations

import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from crm_app.importer.celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from crm_app.importer.contracts import get_entity_schema, get_entity_types
from crm_app.importer.errors import ImporterError
from crm_app.importer.pipeline import ImportSession, ImportSessionService
from crm_app.importer.utils import cleanup_upload, resolve_upload_directory
from crm_app.models import ImportRun, Team, db
from crm_app.utils.importer import is_importer_enabled


@click.group(name="importer", invoke_without_command=True)
@click.pass_context
def importer_cli(ctx):
    """
    Importer management commands.

    Lists the importable entity types when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_importer_enabled(app):
        raise click.ClickException(
            "Importer is disabled via IMPORTER_ENABLED=false. Enable it to run importer CLI commands."
        )
    if ctx.invoked_subcommand is None:
        click.echo("Importable entity types:")
        for entity_type in get_entity_types():
            schema = get_entity_schema(entity_type)
            if schema.matchable:
                click.echo(f"  - {entity_type} ({schema.label}; matched by {schema.lookup_field or 'name only'})")
            else:
                click.echo(f"  - {entity_type} ({schema.label}; always created)")


def get_disabled_importer_group() -> click.Group:
    """Return a command group that tells the operator the importer is disabled."""

    @click.group(name="importer", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Importer commands are unavailable because IMPORTER_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Optional[Celery]:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Importer Celery app is unavailable. Ensure IMPORTER_ENABLED=true and the "
            "importer package initialises before running worker commands."
        )
    return celery_app


@importer_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the importer background worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not app.config.get("IMPORTER_WORKER_ENABLED"):
        click.echo(
            "Warning: IMPORTER_WORKER_ENABLED is false. The web process commits inline "
            "and will not queue work for this worker.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list to consume.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """Start the Celery worker in the current process."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting importer worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Check worker connectivity by running the heartbeat task."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("importer.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'importer.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc

    click.echo(json.dumps(payload, indent=2))


@importer_cli.command("cleanup")
@click.option(
    "--max-upload-age-hours",
    default=72,
    show_default=True,
    type=int,
    help="Also remove raw uploads older than this many hours.",
)
@click.pass_context
def importer_cleanup(ctx, max_upload_age_hours: int):
    """Remove expired import sessions and stale upload files."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()

    removed_sessions = ImportSessionService.from_app(app).cleanup_expired()

    uploads_dir = resolve_upload_directory(app)
    cutoff = datetime.now(timezone.utc) - timedelta(hours=max_upload_age_hours)
    removed_uploads = 0
    for path in uploads_dir.iterdir():
        if not path.is_file():
            continue
        try:
            modified = datetime.fromtimestamp(path.stat().st_mtime, timezone.utc)
        except FileNotFoundError:  # pragma: no cover - race condition
            continue
        if modified < cutoff:
            cleanup_upload(path)
            removed_uploads += 1

    click.echo(f"Removed {removed_sessions} expired import session(s) and {removed_uploads} upload file(s).")


def _parse_mapping_overrides(values: tuple[str, ...]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for value in values:
        field_key, separator, column = value.partition("=")
        if not separator or not field_key.strip():
            raise click.BadParameter(f"Expected FIELD=COLUMN, got '{value}'.", param_hint="--map")
        overrides[field_key.strip()] = column.strip()
    return overrides


def _format_session(session: ImportSession) -> str:
    mapping = ", ".join(f"{field}<-{column}" for field, column in sorted(session.mapping.items())) or "none"
    return (
        f"Session {session.session_id} ({session.entity_type}, {session.row_count} rows)\n"
        f"  mapping: {mapping}"
    )


def _format_run(run: ImportRun) -> str:
    status_value = run.status.value if hasattr(run.status, "value") else str(run.status)
    lines = [
        f"Run {run.id} finished with status {status_value}.",
        f"  total_rows : {run.total_rows}",
        f"  created    : {run.rows_created}",
        f"  updated    : {run.rows_updated}",
        f"  skipped    : {run.rows_skipped}",
        f"  failed     : {run.rows_failed}",
    ]
    if run.error_summary:
        lines.append("  errors     :")
        lines.extend(f"    {line}" for line in run.error_summary.splitlines())
    return "\n".join(lines)


@importer_cli.command("run")
@click.argument("file_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option("--entity", "entity_type", required=True, help="Entity type to import (company, people, opportunity, task, note).")
@click.option("--team", "team_id", required=True, type=int, help="Team that owns the imported records.")
@click.option("--user", "user_id", type=int, help="User id recorded on the import run.")
@click.option("--map", "mapping_overrides", multiple=True, help="Override the auto-mapping with FIELD=COLUMN.")
@click.option("--dry-run", is_flag=True, help="Print the preview counts and discard the session.")
@click.option(
    "--inline/--no-inline",
    default=True,
    help="Commit inside the CLI process instead of queueing the commit for the worker.",
)
@click.option("--summary-json", is_flag=True, help="Emit a machine-readable summary after completion.")
@click.pass_context
def importer_run(
    ctx,
    file_path: Path,
    entity_type: str,
    team_id: int,
    user_id: Optional[int],
    mapping_overrides: tuple[str, ...],
    dry_run: bool,
    inline: bool,
    summary_json: bool,
):
    """Import FILE_PATH for a team without going through the HTTP wizard."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()

    if db.session.get(Team, team_id) is None:
        raise click.ClickException(f"Team {team_id} does not exist.")
    overrides = _parse_mapping_overrides(mapping_overrides)

    service = ImportSessionService.from_app(app)
    service = ImportSessionService(replace(service.settings, worker_enabled=not inline))
    try:
        session = service.start_session(
            team_id=team_id,
            user_id=user_id,
            entity_type=entity_type,
            upload_path=file_path,
            original_filename=file_path.name,
        )
        try:
            session = service.set_mapping(session.session_id, team_id, {**session.mapping, **overrides})
        except ImporterError:
            service.cancel(session.session_id, team_id)
            raise
        click.echo(_format_session(session))

        if dry_run:
            preview = service.preview(session.session_id, team_id)
            service.cancel(session.session_id, team_id)
            click.echo(
                f"Dry run: {preview.create_count} to create, {preview.update_count} to update, "
                f"{preview.skip_count} to skip, {preview.excluded_count} invalid."
            )
            if summary_json:
                payload = preview.as_dict()
                payload.pop("sample", None)
                click.echo(json.dumps({"session_id": session.session_id, "dry_run": True, **payload}, sort_keys=True))
            return

        run = service.request_commit(session.session_id, team_id, user_id=user_id)
    except ImporterError as exc:
        raise click.ClickException(str(exc)) from exc

    if not inline:
        click.echo(json.dumps({"session_id": session.session_id, "run_id": run.id, "status": "queued"}))
        return

    click.echo(_format_run(run))
    if summary_json:
        click.echo(json.dumps(run.as_dict(), indent=2, sort_keys=True))


@importer_cli.command("history")
@click.option("--team", "team_id", required=True, type=int, help="Team whose import runs are listed.")
@click.option("--entity", "entity_type", help="Only list runs of this entity type.")
@click.option("--limit", default=20, show_default=True, type=click.IntRange(1, 200))
@click.pass_context
def importer_history(ctx, team_id: int, entity_type: Optional[str], limit: int):
    """List a team's import runs, newest first."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()

    runs, total = ImportSessionService.from_app(app).list_runs(team_id, limit=limit, entity_type=entity_type)
    if not runs:
        click.echo(f"No imports recorded for team {team_id}.")
        return
    click.echo(f"Showing {len(runs)} of {total} import run(s):")
    for run in runs:
        click.echo(
            f"  #{run.id} {run.entity_type} {run.status.value} "
            f"created={run.rows_created} updated={run.rows_updated} skipped={run.rows_skipped} "
            f"failed={run.rows_failed} file={run.original_filename or '-'}"
        )
