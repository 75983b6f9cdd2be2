"""
Message Model - one outbound message and its delivery status
"""
import enum

from sqlalchemy import (
    Column,
    String,
    Integer,
    DateTime,
    Text,
    JSON,
    ForeignKey,
    Index,
    UniqueConstraint,
    Enum as SQLEnum,
)

from app.db.database import Base, new_id, utcnow


class MessageStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    UNDELIVERED = "UNDELIVERED"


class Message(Base):
    """Outbound message created by admission and updated by the worker and webhooks"""

    __tablename__ = "messages"

    id = Column(String(32), primary_key=True, default=new_id)
    project_id = Column(
        String(32), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    connector_id = Column(String(32), ForeignKey("connectors.id"), nullable=False)
    template_id = Column(String(32), ForeignKey("templates.id"), nullable=False)

    recipient = Column(String(100), nullable=False)
    variables = Column(JSON, nullable=False, default=dict)
    # named extra_metadata because "metadata" is reserved on declarative classes
    extra_metadata = Column("metadata", JSON, nullable=True)
    idempotency_key = Column(String(255), nullable=True)

    status = Column(
        SQLEnum(MessageStatus, name="message_status"),
        default=MessageStatus.QUEUED,
        nullable=False,
    )
    external_message_id = Column(String(255), nullable=True)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, default=0, nullable=False)
    # set once a dispatch job for the message reached the broker
    enqueued_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)

    __table_args__ = (
        # NULL keys never collide, so requests without a key are unaffected
        UniqueConstraint("project_id", "idempotency_key", name="uq_messages_project_idempotency_key"),
        Index("ix_messages_external_message_id", "external_message_id"),
        Index("ix_messages_project_created", "project_id", "created_at"),
        Index("ix_messages_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Message id={self.id} status={self.status} project={self.project_id}>"
