"""
Importer blueprint: the upload → mapping → review → preview → commit wizard API.

Tenant and user come from the request context resolved by the tenant
middleware; every session lookup is scoped to the current team.
"""

from __future__ import annotations

import time
from http import HTTPStatus

from flask import Blueprint, current_app, jsonify, make_response, request

from crm_app.importer.contracts import FieldSchemaError, get_entity_schema, get_entity_types
from crm_app.importer.errors import (
    FileIngestError,
    InvalidSessionError,
    MappingError,
    SessionStateError,
    StorageError,
)
from crm_app.importer.pipeline import ImportSessionService
from crm_app.middleware.tenant_context import get_current_team, get_current_user_id
from crm_app.utils.importer import is_importer_enabled

from .utils import allowed_file, cleanup_upload, persist_upload

importer_blueprint = Blueprint("importer", __name__, url_prefix="/importer")


def _json_error(message: str, status: HTTPStatus, /, **extra):
    return jsonify({"error": message, **extra}), status


def _service() -> ImportSessionService:
    return ImportSessionService.from_app(current_app)


def _ensure_importer_enabled_api():
    if not is_importer_enabled(current_app):
        return _json_error("Importer is disabled.", HTTPStatus.NOT_FOUND)
    return None


def _current_team_id():
    team = get_current_team()
    return team.id if team is not None else None


@importer_blueprint.before_request
def _require_team():
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response
    if request.endpoint == "importer.importer_healthcheck":
        return None
    if get_current_team() is None:
        return _json_error("A valid team is required.", HTTPStatus.UNAUTHORIZED)
    return None


@importer_blueprint.errorhandler(InvalidSessionError)
def _handle_invalid_session(exc: InvalidSessionError):
    return _json_error(str(exc), HTTPStatus.NOT_FOUND)


@importer_blueprint.errorhandler(SessionStateError)
def _handle_session_state(exc: SessionStateError):
    return _json_error(str(exc), HTTPStatus.CONFLICT, status=exc.status)


@importer_blueprint.errorhandler(MappingError)
@importer_blueprint.errorhandler(FileIngestError)
@importer_blueprint.errorhandler(FieldSchemaError)
def _handle_bad_request(exc: Exception):
    return _json_error(str(exc), HTTPStatus.BAD_REQUEST)


@importer_blueprint.errorhandler(StorageError)
def _handle_storage_error(exc: StorageError):
    current_app.logger.exception("Importer storage operation failed.", exc_info=exc)
    return _json_error("The import store is temporarily unavailable. Please retry.", HTTPStatus.SERVICE_UNAVAILABLE)


def _int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise MappingError(f"Query parameter '{name}' must be an integer.") from exc


def _bool_arg(name: str) -> bool:
    return str(request.args.get(name, "")).lower() in ("1", "true", "on", "yes")


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise MappingError("Request body must be a JSON object.")
    return payload


def _required_field(payload: dict) -> str:
    field_key = payload.get("field") or request.args.get("field")
    if not field_key:
        raise MappingError("The 'field' parameter is required.")
    return str(field_key)


def _max_upload_bytes() -> int:
    return int(current_app.config.get("IMPORTER_MAX_UPLOAD_MB", 25)) * 1024 * 1024


def _validate_upload(file_storage) -> None:
    if file_storage is None or file_storage.filename == "":
        raise ValueError("No file uploaded.")
    if not allowed_file(file_storage.filename):
        raise ValueError("Unsupported file type; upload a .csv, .txt or .xlsx file.")

    max_bytes = _max_upload_bytes()
    content_length = request.content_length
    if content_length and content_length > max_bytes:
        raise OverflowError("Upload exceeds maximum size limit.")
    if not content_length:
        position = file_storage.stream.tell()
        file_storage.stream.seek(0, 2)
        size_bytes = file_storage.stream.tell()
        file_storage.stream.seek(position)
        if size_bytes > max_bytes:
            raise OverflowError("Upload exceeds maximum size limit.")


@importer_blueprint.get("/health")
def importer_healthcheck():
    importer_state = current_app.extensions.get("importer", {})
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": importer_state.get("enabled", False),
                "worker_enabled": importer_state.get("worker_enabled", False),
                "entity_types": list(get_entity_types()),
            }
        ),
        HTTPStatus.OK,
    )


@importer_blueprint.get("/entities/<entity_type>")
def importer_entity_schema(entity_type: str):
    try:
        schema = get_entity_schema(entity_type)
    except FieldSchemaError as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    return jsonify(schema.as_dict()), HTTPStatus.OK


@importer_blueprint.post("/sessions")
def importer_create_session():
    file_storage = request.files.get("file")
    try:
        _validate_upload(file_storage)
    except OverflowError as exc:
        return _json_error(str(exc), HTTPStatus.REQUEST_ENTITY_TOO_LARGE)
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    entity_type = (request.form.get("entity_type") or "").strip()
    if not entity_type:
        return _json_error("The 'entity_type' form field is required.", HTTPStatus.BAD_REQUEST)

    stored_path = persist_upload(file_storage, current_app)
    try:
        session = _service().start_session(
            team_id=_current_team_id(),
            user_id=get_current_user_id(),
            entity_type=entity_type,
            upload_path=stored_path,
            original_filename=file_storage.filename,
        )
    finally:
        cleanup_upload(stored_path)

    current_app.logger.info(
        "Import session created via API",
        extra={
            "importer_session_id": session.session_id,
            "importer_entity_type": session.entity_type,
            "importer_row_count": session.row_count,
            "user_id": get_current_user_id(),
        },
    )
    return jsonify(session.as_dict()), HTTPStatus.CREATED


@importer_blueprint.get("/sessions/<session_id>")
def importer_session_detail(session_id: str):
    service = _service()
    team_id = _current_team_id()
    try:
        session = service.load_session(session_id, team_id)
    except InvalidSessionError:
        run = service.find_run(session_id, team_id)
        if run is None:
            raise
        return jsonify({"session_id": session_id, "status": "completed", "run": run.as_dict()}), HTTPStatus.OK

    payload = session.as_dict()
    if session.run_id is not None:
        run = service.find_run(session_id, team_id)
        payload["run"] = run.as_dict() if run is not None else None
    return jsonify(payload), HTTPStatus.OK


@importer_blueprint.put("/sessions/<session_id>/mapping")
def importer_set_mapping(session_id: str):
    payload = _json_body()
    mapping = payload.get("mapping")
    if not isinstance(mapping, dict):
        raise MappingError("The 'mapping' object is required.")
    formats = payload.get("formats")
    if formats is not None and not isinstance(formats, dict):
        raise MappingError("The 'formats' value must be an object.")
    session = _service().set_mapping(session_id, _current_team_id(), mapping, formats)
    return jsonify(session.as_dict()), HTTPStatus.OK


@importer_blueprint.put("/sessions/<session_id>/formats/<field_key>")
def importer_set_column_format(session_id: str, field_key: str):
    session = _service().set_column_format(session_id, _current_team_id(), field_key, _json_body())
    return jsonify(session.as_dict()), HTTPStatus.OK


@importer_blueprint.get("/sessions/<session_id>/analysis")
def importer_session_analysis(session_id: str):
    start_time = time.perf_counter()
    try:
        columns = _service().analyze(session_id, _current_team_id())
    except StorageError as exc:
        current_app.logger.warning(
            "Import analysis degraded",
            extra={"importer_session_id": session_id, "importer_error": str(exc)},
        )
        return jsonify({"columns": [], "degraded": True}), HTTPStatus.OK

    current_app.logger.debug(
        "Import analysis computed",
        extra={
            "importer_session_id": session_id,
            "importer_response_time_ms": round((time.perf_counter() - start_time) * 1000, 2),
        },
    )
    return jsonify({"columns": [column.as_dict() for column in columns], "degraded": False}), HTTPStatus.OK


@importer_blueprint.get("/sessions/<session_id>/values")
def importer_session_values(session_id: str):
    field_key = _required_field({})
    try:
        page = _service().fetch_values(
            session_id,
            _current_team_id(),
            field_key,
            page=_int_arg("page", 1),
            page_size=_int_arg("page_size", 0) or None,
            search=request.args.get("search"),
            value_filter=request.args.get("filter", "all"),
            sort=request.args.get("sort", "count"),
            errors_only=_bool_arg("errors_only"),
        )
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    return jsonify({"field": field_key, **page.as_dict()}), HTTPStatus.OK


@importer_blueprint.get("/sessions/<session_id>/values/counts")
def importer_session_value_counts(session_id: str):
    field_key = _required_field({})
    counts = _service().value_counts(session_id, _current_team_id(), field_key, search=request.args.get("search"))
    return jsonify({"field": field_key, **counts.as_dict()}), HTTPStatus.OK


@importer_blueprint.post("/sessions/<session_id>/corrections")
def importer_store_correction(session_id: str):
    payload = _json_body()
    field_key = _required_field(payload)
    if "old_value" not in payload or "new_value" not in payload:
        raise MappingError("Both 'old_value' and 'new_value' are required.")
    affected = _service().store_correction(
        session_id,
        _current_team_id(),
        field_key,
        payload.get("old_value"),
        payload.get("new_value"),
    )
    return jsonify({"field": field_key, "rows_affected": affected}), HTTPStatus.OK


@importer_blueprint.delete("/sessions/<session_id>/corrections")
def importer_remove_correction(session_id: str):
    payload = _json_body()
    field_key = _required_field(payload)
    if "old_value" not in payload:
        raise MappingError("The 'old_value' parameter is required.")
    affected = _service().remove_correction(session_id, _current_team_id(), field_key, payload.get("old_value"))
    return jsonify({"field": field_key, "rows_affected": affected}), HTTPStatus.OK


@importer_blueprint.post("/sessions/<session_id>/skips")
def importer_skip_value(session_id: str):
    payload = _json_body()
    field_key = _required_field(payload)
    if "value" not in payload:
        raise MappingError("The 'value' parameter is required.")
    affected = _service().skip_value(session_id, _current_team_id(), field_key, payload.get("value"))
    return jsonify({"field": field_key, "rows_affected": affected}), HTTPStatus.OK


@importer_blueprint.get("/sessions/<session_id>/preview")
def importer_session_preview(session_id: str):
    result = _service().preview(session_id, _current_team_id())
    return jsonify(result.as_dict()), HTTPStatus.OK


@importer_blueprint.post("/sessions/<session_id>/commit")
def importer_session_commit(session_id: str):
    service = _service()
    run = service.request_commit(session_id, _current_team_id(), user_id=get_current_user_id())
    status = HTTPStatus.ACCEPTED if service.settings.worker_enabled else HTTPStatus.OK
    return jsonify({"session_id": session_id, "run": run.as_dict()}), status


@importer_blueprint.get("/runs")
def importer_run_history():
    limit = max(min(_int_arg("limit", 50), 200), 1)
    offset = max(_int_arg("offset", 0), 0)
    runs, total = _service().list_runs(
        _current_team_id(),
        limit=limit,
        offset=offset,
        entity_type=request.args.get("entity_type") or None,
    )
    return (
        jsonify({"runs": [run.as_dict() for run in runs], "total": total, "limit": limit, "offset": offset}),
        HTTPStatus.OK,
    )


@importer_blueprint.get("/sessions/<session_id>/failed-rows.csv")
def importer_failed_rows(session_id: str):
    service = _service()
    run = service.find_run(session_id, _current_team_id())
    if run is None:
        return _json_error("Import run not found.", HTTPStatus.NOT_FOUND)

    filename, csv_content = service.failed_rows_csv(run)
    response = make_response(csv_content)
    response.headers["Content-Type"] = "text/csv"
    response.headers["Content-Disposition"] = f'attachment; filename="{filename}"'
    return response


@importer_blueprint.delete("/sessions/<session_id>")
def importer_cancel_session(session_id: str):
    _service().cancel(session_id, _current_team_id())
    return "", HTTPStatus.NO_CONTENT
