"""
Connector Model - provider configuration owned by a project
"""
import enum

from sqlalchemy import Column, String, DateTime, Text, ForeignKey

from app.db.database import Base, new_id, utcnow


class ProviderType(str, enum.Enum):
    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"
    TWILIO_SMS = "twilio_sms"


class Connector(Base):
    """
    Provider configuration.

    credentials_encrypted is a vault token; it is decrypted only inside the
    dispatch worker and never serialized by the API.
    """

    __tablename__ = "connectors"

    id = Column(String(32), primary_key=True, default=new_id)
    project_id = Column(
        String(32), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # plain string rather than SQLEnum: rows for a provider that was since
    # unregistered must still load so the worker can fail them cleanly
    type = Column(String(30), nullable=False)
    name = Column(String(200), nullable=True)
    credentials_encrypted = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Connector id={self.id} type={self.type} project={self.project_id}>"
