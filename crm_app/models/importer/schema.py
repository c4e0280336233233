"""
SQLAlchemy models for durable import history.

Staged rows never touch these tables; they live in the per-session store until
the session is destroyed. Only the outcome of a commit (counts plus the rows
that failed) is kept here so users can download failures after the session
files are gone.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class ImportRunStatus(str, enum.Enum):
    """Lifecycle states for a committed import."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"


class ImportRun(BaseModel):
    """One commit of an import session into the CRM tables."""

    __tablename__ = "import_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    session_id: Mapped[str] = mapped_column(db.String(64), nullable=False, index=True)
    team_id: Mapped[int] = mapped_column(ForeignKey("teams.id"), nullable=False, index=True)
    user_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    original_filename: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    status: Mapped[ImportRunStatus] = mapped_column(
        Enum(ImportRunStatus, name="import_run_status_enum"),
        nullable=False,
        default=ImportRunStatus.PENDING,
        index=True,
    )
    ambiguous_policy: Mapped[str] = mapped_column(db.String(20), nullable=False, default="skip")
    total_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    rows_created: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    rows_updated: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    rows_skipped: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    rows_failed: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    headers_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    counts_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))

    failed_rows = relationship(
        "ImportFailedRow",
        back_populates="import_run",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ImportFailedRow.row_number",
    )

    def __repr__(self) -> str:
        return f"<ImportRun id={self.id} session={self.session_id} status={self.status}>"

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "entity_type": self.entity_type,
            "original_filename": self.original_filename,
            "user_id": self.user_id,
            "status": self.status.value if self.status else None,
            "ambiguous_policy": self.ambiguous_policy,
            "total_rows": self.total_rows,
            "rows_created": self.rows_created,
            "rows_updated": self.rows_updated,
            "rows_skipped": self.rows_skipped,
            "rows_failed": self.rows_failed,
            "error_summary": self.error_summary,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class ImportFailedRow(BaseModel):
    """A staged row the entity store rejected, kept with its original columns."""

    __tablename__ = "import_failed_rows"

    id: Mapped[int] = mapped_column(primary_key=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("import_runs.id", ondelete="CASCADE"), nullable=False)
    row_number: Mapped[int] = mapped_column(db.Integer, nullable=False)
    raw_data: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    error_message: Mapped[str] = mapped_column(db.Text, nullable=False)

    import_run = relationship("ImportRun", back_populates="failed_rows")

    __table_args__ = (Index("idx_import_failed_rows_run_row", "run_id", "row_number"),)

    def __repr__(self) -> str:
        return f"<ImportFailedRow run={self.run_id} row={self.row_number}>"
