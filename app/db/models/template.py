"""
Template Model - immutable message body with {{variable}} placeholders
"""
from sqlalchemy import Column, String, DateTime, Text, JSON, ForeignKey

from app.db.database import Base, new_id, utcnow


class Template(Base):
    __tablename__ = "templates"

    id = Column(String(32), primary_key=True, default=new_id)
    project_id = Column(
        String(32), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider_type = Column(String(30), nullable=False)
    name = Column(String(200), nullable=False)
    body = Column(Text, nullable=False)
    # declared placeholder names - informational only, rendering does not enforce them
    variables = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=utcnow, nullable=False)
