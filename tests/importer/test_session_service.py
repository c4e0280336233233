from __future__ import annotations

import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest
from sqlalchemy.exc import OperationalError

from crm_app.importer.errors import FileIngestError, InvalidSessionError, MappingError, SessionStateError
from crm_app.importer.pipeline import ImportSessionService, ImportStatus
from crm_app.importer.pipeline.session_service import EXECUTE_IMPORT_TASK
from crm_app.importer.pipeline.entities import EntityStore
from crm_app.importer.pipeline.staging import StagingStore
from crm_app.models import Company, ImportRun, ImportRunStatus, db


def _start(service, team, write_upload, text, entity_type="company"):
    return service.start_session(
        team_id=team.id,
        user_id=7,
        entity_type=entity_type,
        upload_path=write_upload(text),
        original_filename="upload.csv",
    )


def _errors(service, session, team) -> dict[str, int]:
    return {column.field_key: column.error_rows for column in service.analyze(session.session_id, team.id)}


def _queueing_service(service) -> ImportSessionService:
    return ImportSessionService(replace(service.settings, worker_enabled=True))


def test_start_session_stages_rows_and_guesses_mapping(service, team, write_upload, company_csv):
    session = _start(service, team, write_upload, company_csv)

    assert session.status is ImportStatus.MAPPING
    assert session.row_count == 3
    assert session.headers == ["Company Name", "Website", "Employees"]
    assert session.mapping == {"name": "Company Name", "domains": "Website", "employee_count": "Employees"}
    assert session.formats["employee_count"]["number_format"] == "point"

    reloaded = service.load_session(session.session_id, team.id)
    assert reloaded.as_dict() == session.as_dict()

    columns = {column.field_key: column for column in service.analyze(session.session_id, team.id)}
    assert columns["employee_count"].error_rows == 1
    assert columns["domains"].blank_count == 1
    assert columns["name"].required is True


def test_start_session_rejects_header_only_files(service, team, write_upload):
    with pytest.raises(FileIngestError, match="no data rows"):
        _start(service, team, write_upload, "Company Name,Website\n")

    assert [entry for entry in service.storage_root.iterdir()] == []


def test_start_session_rejects_unknown_entity_types(service, team, write_upload, company_csv):
    with pytest.raises(MappingError, match="Unknown entity type"):
        _start(service, team, write_upload, company_csv, entity_type="widgets")


def test_sessions_are_invisible_to_other_teams(service, team, other_team, write_upload, company_csv):
    session = _start(service, team, write_upload, company_csv)

    with pytest.raises(InvalidSessionError):
        service.load_session(session.session_id, other_team.id)
    with pytest.raises(InvalidSessionError):
        service.store_correction(session.session_id, other_team.id, "name", "Acme", "Acme Corp")
    with pytest.raises(InvalidSessionError):
        service.load_session("not-a-session-id", team.id)


def test_set_mapping_validation(service, team, write_upload, company_csv):
    session = _start(service, team, write_upload, company_csv)

    with pytest.raises(MappingError, match="Required fields are not mapped: Name."):
        service.set_mapping(session.session_id, team.id, {"domains": "Website"})
    with pytest.raises(MappingError, match="Unknown field 'shoe_size'"):
        service.set_mapping(session.session_id, team.id, {"name": "Company Name", "shoe_size": "Website"})
    with pytest.raises(MappingError, match="Column 'Revenue' is not present"):
        service.set_mapping(session.session_id, team.id, {"name": "Company Name", "annual_revenue": "Revenue"})
    with pytest.raises(MappingError, match="Invalid format"):
        service.set_mapping(
            session.session_id,
            team.id,
            {"name": "Company Name"},
            {"name": {"date_format": "martian"}},
        )


def test_remapping_a_field_drops_its_corrections(service, team, write_upload):
    session = _start(service, team, write_upload, "Company Name,Legal Name\nAcme,Acme Incorporated\n")
    service.set_mapping(session.session_id, team.id, {"name": "Company Name"})
    service.store_correction(session.session_id, team.id, "name", "Acme", "Acme Corp")

    service.set_mapping(session.session_id, team.id, {"name": "Company Name"})
    page = service.fetch_values(session.session_id, team.id, "name")
    assert page.values[0].correction == "Acme Corp"

    updated = service.set_mapping(session.session_id, team.id, {"name": "Legal Name"})
    page = service.fetch_values(session.session_id, team.id, "name")

    assert updated.status is ImportStatus.REVIEWING
    assert page.values[0].raw_value == "Acme Incorporated"
    assert page.values[0].correction is None


def test_changing_a_column_format_revalidates(service, team, write_upload):
    session = _start(service, team, write_upload, "Company Name,Founded\nAcme,15/05/1999\n")

    assert _errors(service, session, team)["founded_on"] == 1

    updated = service.set_column_format(session.session_id, team.id, "founded_on", {"date_format": "european"})

    assert updated.formats["founded_on"]["date_format"] == "european"
    assert _errors(service, session, team)["founded_on"] == 0
    with pytest.raises(MappingError, match="Unknown field"):
        service.set_column_format(session.session_id, team.id, "shoe_size", {})


def test_value_counts_and_paging_use_configured_page_size(service, team, write_upload):
    rows = "".join(f"Company {index}\n" for index in range(6))
    session = _start(service, team, write_upload, f"Company Name\n{rows}")
    small_pages = ImportSessionService(replace(service.settings, values_page_size=4))

    first = small_pages.fetch_values(session.session_id, team.id, "name")
    second = small_pages.fetch_values(session.session_id, team.id, "name", page=2)

    assert (len(first.values), first.has_more, first.total) == (4, True, 6)
    assert (len(second.values), second.has_more, second.total) == (2, False, None)
    assert service.value_counts(session.session_id, team.id, "name").as_dict() == {
        "all": 6,
        "modified": 0,
        "skipped": 0,
    }
    with pytest.raises(MappingError, match="not mapped"):
        service.fetch_values(session.session_id, team.id, "industry")


def test_request_commit_queues_the_worker_task(service, team, write_upload, company_csv):
    session = _start(service, team, write_upload, company_csv)
    async_result = Mock()
    async_result.id = "celery-task-123"
    celery_app = Mock()
    celery_app.send_task.return_value = async_result
    queueing = _queueing_service(service)

    with patch("crm_app.importer.pipeline.session_service.get_celery_app", return_value=celery_app):
        run = queueing.request_commit(session.session_id, team.id, user_id=7)

    celery_app.send_task.assert_called_once_with(EXECUTE_IMPORT_TASK, kwargs={"run_id": run.id})
    assert run.status is ImportRunStatus.PENDING
    assert run.user_id == 7
    assert run.headers_json == ["Company Name", "Website", "Employees"]

    queued = service.load_session(session.session_id, team.id)
    assert queued.status is ImportStatus.IMPORTING
    assert queued.run_id == run.id
    with pytest.raises(SessionStateError, match="can no longer be changed"):
        service.store_correction(session.session_id, team.id, "name", "Acme", "Acme Corp")
    with pytest.raises(SessionStateError):
        service.request_commit(session.session_id, team.id)

    summary = service.execute_run(run.id)

    assert summary.as_dict() == {"total_rows": 3, "created": 2, "updated": 0, "skipped": 0, "failed": 1}
    db.session.refresh(run)
    assert run.status is ImportRunStatus.PARTIALLY_FAILED
    assert run.counts_json["created"] == 2
    assert run.started_at is not None and run.finished_at is not None
    assert Company.query.filter_by(team_id=team.id).count() == 2


def test_request_commit_without_worker_app_fails(service, team, write_upload, company_csv):
    session = _start(service, team, write_upload, company_csv)

    with patch("crm_app.importer.pipeline.session_service.get_celery_app", return_value=None):
        with pytest.raises(SessionStateError, match="worker is not configured"):
            _queueing_service(service).request_commit(session.session_id, team.id)


def test_execute_run_marks_run_failed_when_store_is_gone(service, team, write_upload, company_csv):
    session = _start(service, team, write_upload, company_csv)
    with patch("crm_app.importer.pipeline.session_service.get_celery_app", return_value=Mock()):
        run = _queueing_service(service).request_commit(session.session_id, team.id)
    StagingStore.load(service.storage_root, session.session_id).destroy()

    with pytest.raises(InvalidSessionError):
        service.execute_run(run.id)

    db.session.refresh(run)
    assert run.status is ImportRunStatus.FAILED
    assert run.error_summary == "Import session not found."


def test_cancel_destroys_the_session(service, team, write_upload, company_csv):
    session = _start(service, team, write_upload, company_csv)

    service.cancel(session.session_id, team.id)

    with pytest.raises(InvalidSessionError):
        service.load_session(session.session_id, team.id)
    with pytest.raises(InvalidSessionError):
        service.cancel(session.session_id, team.id)


def test_find_run_is_team_scoped(service, team, other_team, write_upload, company_csv):
    session = _start(service, team, write_upload, company_csv)
    run = service.request_commit(session.session_id, team.id)

    assert service.find_run(session.session_id, team.id).id == run.id
    assert service.find_run(session.session_id, other_team.id) is None
    assert service.find_run("bogus", team.id) is None
    assert ImportRun.query.count() == 1


def _age_session(service, session_id, *, status=None, hours=0):
    store = StagingStore.load(service.storage_root, session_id)
    payload = store.read_metadata()
    payload["updated_at"] = (datetime.now(timezone.utc) - timedelta(hours=hours)).isoformat()
    if status is not None:
        payload["status"] = status.value
    store.write_metadata(payload)
    store.close()


def test_cleanup_expired_sessions(service, team, write_upload, company_csv):
    stale = _start(service, team, write_upload, company_csv)
    fresh = _start(service, team, write_upload, company_csv)
    failed = _start(service, team, write_upload, company_csv)
    importing = _start(service, team, write_upload, company_csv)
    _age_session(service, stale.session_id, hours=30)
    _age_session(service, failed.session_id, status=ImportStatus.FAILED, hours=3)
    _age_session(service, importing.session_id, status=ImportStatus.IMPORTING, hours=0.5)
    (service.storage_root / ".deleting-leftover").mkdir()

    removed = service.cleanup_expired()

    assert removed == 2
    remaining = sorted(entry.name for entry in service.storage_root.iterdir())
    assert remaining == sorted([fresh.session_id, importing.session_id])


def test_session_metadata_is_plain_json(service, team, write_upload, company_csv):
    session = _start(service, team, write_upload, company_csv)

    payload = json.loads((service.storage_root / session.session_id / "meta.json").read_text(encoding="utf-8"))

    assert payload["status"] == "mapping"
    assert payload["team_id"] == team.id
    assert payload["entity_type"] == "company"


def test_unexpected_commit_error_fails_the_run_and_the_session(service, team, write_upload, company_csv):
    session = _start(service, team, write_upload, company_csv)
    locked = OperationalError("SELECT companies.name", {}, Exception("database is locked"))

    with patch.object(EntityStore, "find_by_names", side_effect=locked):
        with pytest.raises(OperationalError):
            service.request_commit(session.session_id, team.id)

    run = ImportRun.query.filter_by(session_id=session.session_id).one()
    assert run.status is ImportRunStatus.FAILED
    assert "database is locked" in run.error_summary
    assert run.finished_at is not None
    failed = service.load_session(session.session_id, team.id)
    assert failed.status is ImportStatus.FAILED
    assert "database is locked" in failed.results["error"]

    later = datetime.now(timezone.utc) + service.settings.failed_ttl + timedelta(minutes=1)
    assert service.cleanup_expired(now=later) == 1
    assert not (service.storage_root / session.session_id).exists()


def test_stuck_importing_session_expires_and_fails_its_run(service, team, write_upload, company_csv):
    session = _start(service, team, write_upload, company_csv)
    with patch("crm_app.importer.pipeline.session_service.get_celery_app", return_value=Mock()):
        run = _queueing_service(service).request_commit(session.session_id, team.id)

    assert service.cleanup_expired() == 0

    later = datetime.now(timezone.utc) + service.settings.importing_ttl + timedelta(minutes=1)
    assert service.cleanup_expired(now=later) == 1

    db.session.refresh(run)
    assert run.status is ImportRunStatus.FAILED
    assert run.error_summary == "Import did not finish before its session expired."
    with pytest.raises(InvalidSessionError):
        service.load_session(session.session_id, team.id)


def test_commit_claim_refuses_a_second_commit(service, team, write_upload, company_csv):
    session = _start(service, team, write_upload, company_csv)
    store = StagingStore.load(service.storage_root, session.session_id)
    assert store.claim_commit(owner="other-request") is True
    assert store.claim_commit(owner="this-request") is False
    store.close()

    with pytest.raises(SessionStateError) as excinfo:
        service.request_commit(session.session_id, team.id)
    with pytest.raises(SessionStateError):
        service.store_correction(session.session_id, team.id, "name", "Acme", "Acme Corp")

    assert excinfo.value.status == "importing"
    assert ImportRun.query.count() == 0

    store = StagingStore.load(service.storage_root, session.session_id)
    store.release_commit_claim()
    assert store.is_commit_claimed() is False
    store.close()
    assert service.request_commit(session.session_id, team.id).status is ImportRunStatus.PARTIALLY_FAILED


def test_execute_run_only_runs_pending_runs(service, team, write_upload, company_csv):
    session = _start(service, team, write_upload, company_csv)
    with patch("crm_app.importer.pipeline.session_service.get_celery_app", return_value=Mock()):
        run = _queueing_service(service).request_commit(session.session_id, team.id)
    run.status = ImportRunStatus.RUNNING
    db.session.commit()

    with pytest.raises(SessionStateError, match="already running"):
        service.execute_run(run.id)

    db.session.refresh(run)
    assert run.status is ImportRunStatus.RUNNING
    assert service.load_session(session.session_id, team.id).status is ImportStatus.IMPORTING
    assert Company.query.filter_by(team_id=team.id).count() == 0

    run.status = ImportRunStatus.PENDING
    db.session.commit()
    service.execute_run(run.id)
    with pytest.raises(SessionStateError, match="already partially_failed"):
        service.execute_run(run.id)
    assert Company.query.filter_by(team_id=team.id).count() == 2


def test_list_runs_is_team_scoped_and_newest_first(service, team, other_team, write_upload, company_csv):
    first = service.request_commit(_start(service, team, write_upload, company_csv).session_id, team.id)
    second = service.request_commit(_start(service, team, write_upload, "Name\nAda\n", "people").session_id, team.id)
    other_session = service.start_session(
        team_id=other_team.id,
        user_id=9,
        entity_type="company",
        upload_path=write_upload(company_csv, "other.csv"),
        original_filename="other.csv",
    )
    service.request_commit(other_session.session_id, other_team.id)

    runs, total = service.list_runs(team.id)
    assert total == 2
    assert [run.id for run in runs] == [second.id, first.id]

    people_runs, people_total = service.list_runs(team.id, entity_type="people")
    assert (people_total, [run.id for run in people_runs]) == (1, [second.id])

    page, _ = service.list_runs(team.id, limit=1, offset=1)
    assert [run.id for run in page] == [first.id]
