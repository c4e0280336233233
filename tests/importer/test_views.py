from __future__ import annotations

import csv
import io
from dataclasses import replace
from unittest.mock import patch

from crm_app.importer.errors import StorageError
from crm_app.importer.pipeline import ImportSessionService
from crm_app.importer.utils import resolve_upload_directory
from crm_app.models import Company

COMPANIES = b"Company Name,Website,Employees\nAcme,acme.com,250\nGlobex,globex.com,40\nInitech,,abc\n"


def _upload(client, headers, content=COMPANIES, filename="companies.csv", entity_type="company"):
    return client.post(
        "/importer/sessions",
        data={"file": (io.BytesIO(content), filename), "entity_type": entity_type},
        content_type="multipart/form-data",
        headers=headers,
    )


def test_healthcheck_does_not_need_a_team(client):
    response = client.get("/importer/health")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["status"] == "ok"
    assert payload["enabled"] is True
    assert payload["entity_types"] == ["company", "note", "opportunity", "people", "task"]


def test_requests_without_team_are_rejected(client):
    response = _upload(client, {})

    assert response.status_code == 401
    assert response.get_json()["error"] == "A valid team is required."


def test_unknown_team_header_is_rejected(client):
    response = client.get("/importer/entities/company", headers={"X-Tenant-Id": "999"})

    assert response.status_code == 401


def test_entity_schema_endpoint(client, tenant_headers):
    response = client.get("/importer/entities/company", headers=tenant_headers)
    missing = client.get("/importer/entities/widgets", headers=tenant_headers)

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["entity_type"] == "company"
    assert "name" in [field["key"] for field in payload["fields"]]
    assert missing.status_code == 404


def test_upload_creates_session(client, tenant_headers, app):
    response = _upload(client, tenant_headers)

    assert response.status_code == 201
    payload = response.get_json()
    assert payload["status"] == "mapping"
    assert payload["row_count"] == 3
    assert payload["user_id"] == 7
    assert payload["mapping"]["name"] == "Company Name"
    assert list(resolve_upload_directory(app).iterdir()) == []


def test_upload_validation_errors(client, tenant_headers):
    unsupported = _upload(client, tenant_headers, filename="companies.pdf")
    missing_entity = _upload(client, tenant_headers, entity_type="")
    unknown_entity = _upload(client, tenant_headers, entity_type="widgets")
    header_only = _upload(client, tenant_headers, content=b"Company Name\n")

    assert unsupported.status_code == 400
    assert "Unsupported file type" in unsupported.get_json()["error"]
    assert missing_entity.status_code == 400
    assert unknown_entity.status_code == 400
    assert header_only.status_code == 400


def test_upload_size_limit(client, tenant_headers, app, monkeypatch):
    monkeypatch.setitem(app.config, "IMPORTER_MAX_UPLOAD_MB", 1)
    oversized = b"Company Name\n" + b"A" * (1024 * 1024 + 10) + b"\n"

    response = _upload(client, tenant_headers, content=oversized)

    assert response.status_code == 413


def test_sessions_are_scoped_to_their_team(client, tenant_headers, other_team):
    session_id = _upload(client, tenant_headers).get_json()["session_id"]
    other_headers = {"X-Tenant-Id": str(other_team.id)}

    assert client.get(f"/importer/sessions/{session_id}", headers=other_headers).status_code == 404
    assert client.get("/importer/sessions/not-a-real-session", headers=tenant_headers).status_code == 404
    assert client.get(f"/importer/sessions/{session_id}", headers=tenant_headers).status_code == 200


def test_full_wizard_flow(client, tenant_headers, team):
    session_id = _upload(client, tenant_headers).get_json()["session_id"]
    base = f"/importer/sessions/{session_id}"

    mapping = client.put(
        f"{base}/mapping",
        json={"mapping": {"name": "Company Name", "domains": "Website", "employee_count": "Employees"}},
        headers=tenant_headers,
    )
    assert mapping.status_code == 200
    assert mapping.get_json()["status"] == "reviewing"

    analysis = client.get(f"{base}/analysis", headers=tenant_headers).get_json()
    assert analysis["degraded"] is False
    employees = next(column for column in analysis["columns"] if column["field_key"] == "employee_count")
    assert employees["error_rows"] == 1

    values = client.get(f"{base}/values?field=employee_count&errors_only=true", headers=tenant_headers)
    assert values.status_code == 200
    assert [entry["raw_value"] for entry in values.get_json()["values"]] == ["abc"]

    corrected = client.post(
        f"{base}/corrections",
        json={"field": "employee_count", "old_value": "abc", "new_value": "12"},
        headers=tenant_headers,
    )
    assert corrected.get_json()["rows_affected"] == 1

    restored = client.delete(
        f"{base}/corrections",
        json={"field": "employee_count", "old_value": "abc"},
        headers=tenant_headers,
    )
    assert restored.get_json()["rows_affected"] == 1

    skipped = client.post(f"{base}/skips", json={"field": "name", "value": "Globex"}, headers=tenant_headers)
    assert skipped.get_json()["rows_affected"] == 1
    counts = client.get(f"{base}/values/counts?field=name", headers=tenant_headers).get_json()
    assert counts == {"field": "name", "all": 3, "modified": 0, "skipped": 1}

    preview = client.get(f"{base}/preview", headers=tenant_headers).get_json()
    assert (preview["create_count"], preview["excluded_count"]) == (1, 2)

    commit = client.post(f"{base}/commit", headers=tenant_headers)
    assert commit.status_code == 200
    run = commit.get_json()["run"]
    assert run["status"] == "partially_failed"
    assert (run["rows_created"], run["rows_failed"]) == (1, 2)
    assert Company.query.filter_by(team_id=team.id).count() == 1

    detail = client.get(base, headers=tenant_headers).get_json()
    assert detail["status"] == "completed"
    assert detail["run"]["id"] == run["id"]

    export = client.get(f"{base}/failed-rows.csv", headers=tenant_headers)
    assert export.status_code == 200
    assert export.headers["Content-Type"].startswith("text/csv")
    assert f"import-{session_id}-failed-rows.csv" in export.headers["Content-Disposition"]
    rows = list(csv.reader(io.StringIO(export.get_data(as_text=True))))
    assert [row[0] for row in rows[1:]] == ["2", "3"]

    assert client.post(f"{base}/commit", headers=tenant_headers).status_code == 404


def test_edits_after_commit_are_refused(client, tenant_headers, service, team):
    session_id = _upload(client, tenant_headers).get_json()["session_id"]
    queueing = ImportSessionService(replace(service.settings, worker_enabled=True))
    with patch("crm_app.importer.pipeline.session_service.get_celery_app"):
        queueing.request_commit(session_id, team.id)

    response = client.post(
        f"/importer/sessions/{session_id}/skips",
        json={"field": "name", "value": "Acme"},
        headers=tenant_headers,
    )

    assert response.status_code == 409
    assert response.get_json()["status"] == "importing"


def test_bad_requests(client, tenant_headers):
    session_id = _upload(client, tenant_headers).get_json()["session_id"]
    base = f"/importer/sessions/{session_id}"

    bad_filter = client.get(f"{base}/values?field=name&filter=bogus", headers=tenant_headers)
    missing_field = client.get(f"{base}/values", headers=tenant_headers)
    bad_page = client.get(f"{base}/values?field=name&page=two", headers=tenant_headers)
    bad_mapping = client.put(f"{base}/mapping", json={"mapping": {"domains": "Website"}}, headers=tenant_headers)
    not_json = client.post(f"{base}/corrections", data="nope", headers=tenant_headers)

    assert bad_filter.status_code == 400
    assert missing_field.status_code == 400
    assert bad_page.status_code == 400
    assert bad_mapping.status_code == 400
    assert "Required fields are not mapped" in bad_mapping.get_json()["error"]
    assert not_json.status_code == 400


def test_analysis_degrades_when_store_fails(client, tenant_headers):
    session_id = _upload(client, tenant_headers).get_json()["session_id"]

    with patch(
        "crm_app.importer.views.ImportSessionService.analyze",
        side_effect=StorageError("database is locked"),
    ):
        response = client.get(f"/importer/sessions/{session_id}/analysis", headers=tenant_headers)

    assert response.status_code == 200
    assert response.get_json() == {"columns": [], "degraded": True}


def test_storage_errors_map_to_service_unavailable(client, tenant_headers):
    session_id = _upload(client, tenant_headers).get_json()["session_id"]

    with patch(
        "crm_app.importer.views.ImportSessionService.preview",
        side_effect=StorageError("disk I/O error"),
    ):
        response = client.get(f"/importer/sessions/{session_id}/preview", headers=tenant_headers)

    assert response.status_code == 503


def test_cancel_session(client, tenant_headers):
    session_id = _upload(client, tenant_headers).get_json()["session_id"]

    assert client.delete(f"/importer/sessions/{session_id}", headers=tenant_headers).status_code == 204
    assert client.get(f"/importer/sessions/{session_id}", headers=tenant_headers).status_code == 404


def test_run_history_lists_the_team_imports(client, tenant_headers, other_team):
    first_id = _upload(client, tenant_headers).get_json()["session_id"]
    second_id = _upload(client, tenant_headers, filename="more.csv").get_json()["session_id"]
    client.post(f"/importer/sessions/{first_id}/commit", headers=tenant_headers)
    client.post(f"/importer/sessions/{second_id}/commit", headers=tenant_headers)

    response = client.get("/importer/runs?limit=1", headers=tenant_headers)
    other = client.get("/importer/runs", headers={"X-Tenant-Id": str(other_team.id)})
    bad = client.get("/importer/runs?limit=many", headers=tenant_headers)

    assert response.status_code == 200
    payload = response.get_json()
    assert (payload["total"], payload["limit"], payload["offset"]) == (2, 1, 0)
    assert [run["session_id"] for run in payload["runs"]] == [second_id]
    assert payload["runs"][0]["original_filename"] == "more.csv"
    assert payload["runs"][0]["user_id"] == 7
    assert other.get_json() == {"runs": [], "total": 0, "limit": 50, "offset": 0}
    assert bad.status_code == 400


def test_upload_with_unbalanced_brackets_is_staged(client, tenant_headers, app):
    response = _upload(client, tenant_headers, content=b"Company Name,Website\nGlobex,[globex.com\nAcme,http://[acme.com\n")

    assert response.status_code == 201
    session_id = response.get_json()["session_id"]
    analysis = client.get(f"/importer/sessions/{session_id}/analysis", headers=tenant_headers).get_json()
    domains = next(column for column in analysis["columns"] if column["field_key"] == "domains")
    assert domains["error_rows"] == 2
    assert list(resolve_upload_directory(app).iterdir()) == []
