from __future__ import annotations

from pathlib import Path

import pytest

from crm_app.importer.pipeline import ImportSessionService
from crm_app.importer.pipeline.staging import StagingStore, new_session_id
from crm_app.models import Company, CompanyDomain, Person, PersonEmail, db

COMPANY_CSV = (
    "Company Name,Website,Employees\n"
    "Acme,acme.com,250\n"
    "Globex,globex.com,40\n"
    "Initech,,abc\n"
)


@pytest.fixture
def storage_root(tmp_path) -> Path:
    root = tmp_path / "stores"
    root.mkdir()
    return root


@pytest.fixture
def staging_store(storage_root):
    store = StagingStore.create(storage_root, new_session_id())
    yield store
    store.destroy()


@pytest.fixture
def service(app):
    return ImportSessionService.from_app(app)


@pytest.fixture
def write_upload(tmp_path):
    def _write(text: str, name: str = "upload.csv") -> Path:
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def company_factory(team):
    def _factory(name: str, *, domains=(), team_id: int | None = None, **attributes) -> Company:
        owner_id = team_id or team.id
        company = Company(team_id=owner_id, name=name, **attributes)
        for domain in domains:
            company.domains.append(CompanyDomain(team_id=owner_id, domain=domain))
        db.session.add(company)
        db.session.commit()
        return company

    return _factory


@pytest.fixture
def person_factory(team):
    def _factory(name: str, *, emails=(), team_id: int | None = None, **attributes) -> Person:
        owner_id = team_id or team.id
        person = Person(team_id=owner_id, name=name, **attributes)
        for email in emails:
            person.emails.append(PersonEmail(team_id=owner_id, email=email))
        db.session.add(person)
        db.session.commit()
        return person

    return _factory


@pytest.fixture
def start_import(service, team, write_upload):
    """Stage ``text`` as a new session for ``team`` and confirm the auto-mapping."""

    def _start(text: str, entity_type: str = "company", *, name: str = "upload.csv", mapping=None, formats=None):
        session = service.start_session(
            team_id=team.id,
            user_id=7,
            entity_type=entity_type,
            upload_path=write_upload(text, name),
            original_filename=name,
        )
        return service.set_mapping(session.session_id, team.id, mapping or session.mapping, formats)

    return _start


@pytest.fixture
def company_csv() -> str:
    return COMPANY_CSV
