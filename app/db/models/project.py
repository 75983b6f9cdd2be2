"""
Project Model - owner of connectors, templates, API keys and messages
"""
from sqlalchemy import Column, String, DateTime

from app.db.database import Base, new_id, utcnow


class Project(Base):
    """A tenant. Every other row is scoped by project_id."""

    __tablename__ = "projects"

    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String(200), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
