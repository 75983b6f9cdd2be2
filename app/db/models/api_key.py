"""
API Key Model

The full key handed to a client is ``<public_key>_sk_live_<secret>``. Only the
public part and a hash of the secret are stored.
"""
from sqlalchemy import Column, String, DateTime, ForeignKey

from app.db.database import Base, new_id, utcnow


class ApiKey(Base):
    """Project-scoped credential for the admission API"""

    __tablename__ = "api_keys"

    id = Column(String(32), primary_key=True, default=new_id)
    project_id = Column(
        String(32), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    public_key = Column(String(64), unique=True, nullable=False, index=True)
    secret_hash = Column(String(64), nullable=False)
    revoked_at = Column(DateTime, nullable=True)
    last_used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None
