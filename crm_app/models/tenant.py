# crm_app/models/tenant.py

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from .base import BaseModel, db


class Team(BaseModel):
    """Tenant boundary: every CRM record belongs to exactly one team."""

    __tablename__ = "teams"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False, index=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    def __repr__(self):
        return f"<Team {self.slug}>"

    @staticmethod
    def find_by_id(team_id):
        """Find team by ID with error handling"""
        try:
            return db.session.get(Team, team_id)
        except SQLAlchemyError as e:
            current_app.logger.error(f"Database error finding team by id {team_id}: {str(e)}")
            return None
