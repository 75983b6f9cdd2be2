"""
Database Models
"""
from app.db.models.project import Project
from app.db.models.api_key import ApiKey
from app.db.models.connector import Connector, ProviderType
from app.db.models.template import Template
from app.db.models.message import Message, MessageStatus
from app.db.models.dispatch_job import DispatchJob, DispatchJobState

__all__ = [
    "Project",
    "ApiKey",
    "Connector",
    "ProviderType",
    "Template",
    "Message",
    "MessageStatus",
    "DispatchJob",
    "DispatchJobState",
]
