"""
Tenant-scoped persistence for imported CRM records.

:class:`EntityStore` is the only component that touches the durable CRM
tables. Matching reads go through :meth:`EntityStore.resolve`, which batches
the name and lookup-key queries for many candidates; writes go through
:meth:`EntityStore.create_or_update`, which the commit step calls once per
staged row. Every query filters on the store's team id.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_app.importer.errors import RowCommitError
from crm_app.models import Company, CompanyDomain, Note, Opportunity, Person, PersonEmail, Task, db

from .staging import BATCH_SIZE, batched

logger = logging.getLogger(__name__)

ENTITY_MODELS = {
    "company": Company,
    "people": Person,
    "opportunity": Opportunity,
    "task": Task,
    "note": Note,
}

NAME_ATTRIBUTES = {
    "task": "title",
    "note": "title",
}

SCALAR_FIELDS = {
    "company": ("name", "industry", "employee_count", "annual_revenue", "founded_on", "linkedin_url"),
    "people": ("name", "job_title", "birthday", "lead_source"),
    "opportunity": ("name", "stage", "amount", "close_date", "next_step_at"),
    "task": ("title", "description", "status", "priority", "due_at"),
    "note": ("title", "body"),
}

LIST_FIELDS = {
    "company": ("tags",),
    "people": ("phones",),
    "opportunity": ("products",),
    "task": (),
    "note": (),
}

LOOKUP_KINDS = {
    "domain": (CompanyDomain, CompanyDomain.domain, CompanyDomain.company_id),
    "email": (PersonEmail, PersonEmail.email, PersonEmail.person_id),
}


@dataclass(frozen=True)
class ResolvedCandidates:
    """Existing record ids per name and per lookup key, before classification."""

    by_name: Mapping[str, tuple[int, ...]] = field(default_factory=dict)
    by_lookup: Mapping[str, frozenset[int]] = field(default_factory=dict)


@dataclass
class WriteOutcome:
    entity_id: int
    created: bool
    related_ids: dict[str, int] = field(default_factory=dict)


def _merge_lists(existing: Iterable[Any] | None, incoming: Iterable[Any]) -> list[Any]:
    merged = list(existing or [])
    for item in incoming:
        if item not in merged:
            merged.append(item)
    return merged


class EntityStore:
    """Reads and writes CRM records of one team."""

    def __init__(self, team_id: int, *, session: Session | None = None) -> None:
        self.team_id = team_id
        self.session = session or db.session
        self._created_companies: dict[str, int] = {}
        self._uncommitted: list[str] = []

    def __repr__(self) -> str:
        return f"<EntityStore team={self.team_id}>"

    @staticmethod
    def model_for(entity_type: str):
        try:
            return ENTITY_MODELS[entity_type]
        except KeyError as exc:
            raise ValueError(f"Unsupported entity type: {entity_type}") from exc

    @staticmethod
    def name_attribute(entity_type: str) -> str:
        return NAME_ATTRIBUTES.get(entity_type, "name")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def find_by_lookup(self, kind: str, keys: Iterable[str]) -> dict[str, frozenset[int]]:
        """Map each normalized lookup key to the ids of this team's records owning it."""
        try:
            model, key_column, owner_column = LOOKUP_KINDS[kind]
        except KeyError as exc:
            raise ValueError(f"Unsupported lookup kind: {kind}") from exc

        found: dict[str, set[int]] = {}
        unique_keys = sorted({key for key in keys if key})
        for chunk in batched(unique_keys, BATCH_SIZE):
            rows = (
                self.session.query(key_column, owner_column)
                .filter(model.team_id == self.team_id, key_column.in_(chunk))
                .all()
            )
            for key, owner_id in rows:
                found.setdefault(key, set()).add(owner_id)
        return {key: frozenset(found.get(key, ())) for key in unique_keys}

    def find_by_names(self, entity_type: str, names: Iterable[str]) -> dict[str, tuple[int, ...]]:
        """Exact, case-sensitive name lookup for many names at once."""
        model = self.model_for(entity_type)
        name_column = getattr(model, self.name_attribute(entity_type))
        found: dict[str, list[int]] = {}
        unique_names = sorted({name for name in names if name})
        for chunk in batched(unique_names, BATCH_SIZE):
            rows = (
                self.session.query(name_column, model.id)
                .filter(model.team_id == self.team_id, name_column.in_(chunk))
                .order_by(model.id)
                .all()
            )
            for name, entity_id in rows:
                found.setdefault(name, []).append(entity_id)
        return {name: tuple(found.get(name, ())) for name in unique_names}

    def resolve(
        self,
        entity_type: str,
        lookup_kind: str | None = None,
        *,
        names: Iterable[str] = (),
        keys: Iterable[str] = (),
    ) -> ResolvedCandidates:
        """Collect the candidate ids a matcher needs for many names and lookup keys."""
        names = [name for name in names if name]
        keys = [key for key in keys if key]
        return ResolvedCandidates(
            by_name=self.find_by_names(entity_type, names) if names else {},
            by_lookup=self.find_by_lookup(lookup_kind, keys) if lookup_kind and keys else {},
        )

    def get(self, entity_type: str, entity_id: int):
        model = self.model_for(entity_type)
        return self.session.query(model).filter(model.id == entity_id, model.team_id == self.team_id).one_or_none()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def create_or_update(
        self,
        entity_type: str,
        entity_id: int | None,
        attributes: Mapping[str, Any],
        *,
        related_ids: Mapping[str, int | None] | None = None,
        new_related: Mapping[str, tuple[str, list[str]]] | None = None,
        row_number: int | None = None,
    ) -> WriteOutcome:
        """
        Write one record and flush.

        ``entity_id`` selects the record to update; ``None`` creates one.
        ``related_ids`` links already-existing records through the
        ``<field>_id`` column, ``new_related`` names companies to create (``{field: (name, domains)}``). On failure
        the session is rolled back and :class:`RowCommitError` is raised.
        """
        model = self.model_for(entity_type)
        try:
            if entity_id is None:
                name_attribute = self.name_attribute(entity_type)
                if not attributes.get(name_attribute):
                    raise RowCommitError(
                        f"{name_attribute.capitalize()} is required to create a record.", row_number=row_number
                    )
                record = model(team_id=self.team_id, **{name_attribute: attributes[name_attribute]})
                self.session.add(record)
                created = True
            else:
                record = self.get(entity_type, entity_id)
                if record is None:
                    raise RowCommitError(
                        f"Matched {entity_type} record {entity_id} no longer exists.", row_number=row_number
                    )
                created = False

            self._apply_attributes(entity_type, record, attributes)
            outcome_related: dict[str, int] = {}
            for field_key, related_id in (related_ids or {}).items():
                if related_id is not None:
                    setattr(record, f"{field_key}_id", related_id)
                    outcome_related[field_key] = related_id
            for field_key, (name, domains) in (new_related or {}).items():
                company_id = self._create_related_company(name, domains)
                setattr(record, f"{field_key}_id", company_id)
                outcome_related[field_key] = company_id

            self.session.flush()
        except RowCommitError:
            self._rollback()
            raise
        except SQLAlchemyError as exc:
            self._rollback()
            reason = getattr(exc, "orig", None) or exc
            raise RowCommitError(f"Database rejected the record: {reason}", row_number=row_number) from exc

        return WriteOutcome(entity_id=record.id, created=created, related_ids=outcome_related)

    def commit(self, *, row_number: int | None = None) -> None:
        try:
            self.session.commit()
            self._uncommitted.clear()
        except SQLAlchemyError as exc:
            self._rollback()
            reason = getattr(exc, "orig", None) or exc
            raise RowCommitError(f"Database rejected the record: {reason}", row_number=row_number) from exc

    def _rollback(self) -> None:
        self.session.rollback()
        for name in self._uncommitted:
            self._created_companies.pop(name, None)
        self._uncommitted.clear()

    def _apply_attributes(self, entity_type: str, record, attributes: Mapping[str, Any]) -> None:
        for key in SCALAR_FIELDS[entity_type]:
            if attributes.get(key) is not None:
                setattr(record, key, attributes[key])
        for key in LIST_FIELDS[entity_type]:
            if attributes.get(key):
                setattr(record, key, _merge_lists(getattr(record, key), attributes[key]))
        if entity_type == "company" and attributes.get("domains"):
            self._attach_domains(record, attributes["domains"])
        if entity_type == "people" and attributes.get("emails"):
            self._attach_emails(record, attributes["emails"])

    def _attach_domains(self, company: Company, domains: Iterable[str]) -> None:
        existing = {item.domain for item in company.domains}
        for domain in domains:
            if domain not in existing:
                company.domains.append(CompanyDomain(team_id=self.team_id, domain=domain))
                existing.add(domain)

    def _attach_emails(self, person: Person, emails: Iterable[str]) -> None:
        existing = {item.email for item in person.emails}
        for email in emails:
            if email not in existing:
                person.emails.append(PersonEmail(team_id=self.team_id, email=email))
                existing.add(email)

    def _create_related_company(self, name: str, domains: Iterable[str]) -> int:
        """Create a company for a relationship value, once per name within this store."""
        if name in self._created_companies:
            return self._created_companies[name]
        company = Company(team_id=self.team_id, name=name)
        self.session.add(company)
        self._attach_domains(company, domains)
        self.session.flush()
        self._created_companies[name] = company.id
        self._uncommitted.append(name)
        logger.debug(
            "Created related company during import",
            extra={"importer_team_id": self.team_id, "importer_company_id": company.id},
        )
        return company.id
