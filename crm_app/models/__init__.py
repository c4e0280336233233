# crm_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .crm import Company, CompanyDomain, Note, Opportunity, Person, PersonEmail, Task
from .importer import ImportFailedRow, ImportRun, ImportRunStatus
from .tenant import Team

__all__ = [
    "db",
    "BaseModel",
    "Team",
    "Company",
    "CompanyDomain",
    "Person",
    "PersonEmail",
    "Opportunity",
    "Task",
    "Note",
    "ImportRun",
    "ImportRunStatus",
    "ImportFailedRow",
]
