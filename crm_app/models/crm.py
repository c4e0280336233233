# crm_app/models/crm.py

from sqlalchemy import Index

from .base import BaseModel, db


class Company(BaseModel):
    """Organisation record targeted by company imports and person links."""

    __tablename__ = "companies"

    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.Integer, db.ForeignKey("teams.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    industry = db.Column(db.String(100), nullable=True)
    employee_count = db.Column(db.Integer, nullable=True)
    annual_revenue = db.Column(db.Float, nullable=True)
    founded_on = db.Column(db.Date, nullable=True)
    linkedin_url = db.Column(db.String(500), nullable=True)
    tags = db.Column(db.JSON, nullable=True)

    domains = db.relationship("CompanyDomain", back_populates="company", cascade="all, delete-orphan")
    people = db.relationship("Person", back_populates="company")

    __table_args__ = (Index("idx_company_team_name", "team_id", "name"),)

    def __repr__(self):
        return f"<Company {self.name}>"


class CompanyDomain(BaseModel):
    """Normalised web/email domain owned by a company (match key)."""

    __tablename__ = "company_domains"

    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.Integer, db.ForeignKey("teams.id"), nullable=False)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    domain = db.Column(db.String(255), nullable=False)

    company = db.relationship("Company", back_populates="domains")

    __table_args__ = (
        Index("idx_company_domain_team_domain", "team_id", "domain"),
        db.UniqueConstraint("company_id", "domain", name="_company_domain_uc"),
    )

    def __repr__(self):
        return f"<CompanyDomain {self.domain}>"


class Person(BaseModel):
    """Contact record targeted by people imports."""

    __tablename__ = "people"

    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.Integer, db.ForeignKey("teams.id"), nullable=False, index=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=True)
    name = db.Column(db.String(255), nullable=False)
    job_title = db.Column(db.String(200), nullable=True)
    phones = db.Column(db.JSON, nullable=True)
    birthday = db.Column(db.Date, nullable=True)
    lead_source = db.Column(db.String(50), nullable=True)

    company = db.relationship("Company", back_populates="people")
    emails = db.relationship("PersonEmail", back_populates="person", cascade="all, delete-orphan")

    __table_args__ = (Index("idx_person_team_name", "team_id", "name"),)

    def __repr__(self):
        return f"<Person {self.name}>"


class PersonEmail(BaseModel):
    """Normalised email address of a person (match key)."""

    __tablename__ = "person_emails"

    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.Integer, db.ForeignKey("teams.id"), nullable=False)
    person_id = db.Column(db.Integer, db.ForeignKey("people.id", ondelete="CASCADE"), nullable=False)
    email = db.Column(db.String(255), nullable=False)

    person = db.relationship("Person", back_populates="emails")

    __table_args__ = (
        Index("idx_person_email_team_email", "team_id", "email"),
        db.UniqueConstraint("person_id", "email", name="_person_email_uc"),
    )

    def __repr__(self):
        return f"<PersonEmail {self.email}>"


class Opportunity(BaseModel):
    """Deal record targeted by opportunity imports."""

    __tablename__ = "opportunities"

    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.Integer, db.ForeignKey("teams.id"), nullable=False, index=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=True)
    name = db.Column(db.String(255), nullable=False)
    stage = db.Column(db.String(50), nullable=True)
    amount = db.Column(db.Float, nullable=True)
    close_date = db.Column(db.Date, nullable=True)
    products = db.Column(db.JSON, nullable=True)
    next_step_at = db.Column(db.DateTime(timezone=True), nullable=True)

    company = db.relationship("Company")

    __table_args__ = (Index("idx_opportunity_team_name", "team_id", "name"),)

    def __repr__(self):
        return f"<Opportunity {self.name}>"


class Task(BaseModel):
    """Follow-up task targeted by task imports; optionally linked to a company, person or deal."""

    __tablename__ = "tasks"

    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.Integer, db.ForeignKey("teams.id"), nullable=False, index=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=True)
    person_id = db.Column(db.Integer, db.ForeignKey("people.id"), nullable=True)
    opportunity_id = db.Column(db.Integer, db.ForeignKey("opportunities.id"), nullable=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(50), nullable=True)
    priority = db.Column(db.String(50), nullable=True)
    due_at = db.Column(db.DateTime(timezone=True), nullable=True)

    company = db.relationship("Company")
    person = db.relationship("Person")
    opportunity = db.relationship("Opportunity")

    def __repr__(self):
        return f"<Task {self.title}>"


class Note(BaseModel):
    """Free-text note targeted by note imports."""

    __tablename__ = "notes"

    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.Integer, db.ForeignKey("teams.id"), nullable=False, index=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=True)
    person_id = db.Column(db.Integer, db.ForeignKey("people.id"), nullable=True)
    opportunity_id = db.Column(db.Integer, db.ForeignKey("opportunities.id"), nullable=True)
    title = db.Column(db.String(255), nullable=False)
    body = db.Column(db.Text, nullable=True)

    company = db.relationship("Company")
    person = db.relationship("Person")
    opportunity = db.relationship("Opportunity")

    def __repr__(self):
        return f"<Note {self.title}>"
