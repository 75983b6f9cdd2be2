"""
Dispatch Job Model - audit trail of finished dispatch jobs.

One row per job once it stops running (sent, skipped, or out of attempts).
Rows are purged by the retention task; the message row is the source of truth.
"""
from sqlalchemy import Column, String, Integer, DateTime, Text, Index

from app.db.database import Base, utcnow


class DispatchJobState:
    COMPLETED = "completed"
    FAILED = "failed"


class DispatchJob(Base):
    __tablename__ = "dispatch_jobs"

    id = Column(String(64), primary_key=True)  # celery task id
    message_id = Column(String(32), nullable=False, index=True)
    state = Column(String(20), nullable=False)
    outcome = Column(String(30), nullable=False)
    attempts = Column(Integer, nullable=False, default=1)
    error = Column(Text, nullable=True)
    finished_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_dispatch_jobs_state_finished", "state", "finished_at"),
    )
