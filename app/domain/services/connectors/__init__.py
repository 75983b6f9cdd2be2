"""
Provider connectors.

Importing this package registers every built-in connector with the factory.
"""
from app.domain.services.connectors.base_connector import BaseConnector, SendResult
from app.domain.services.connectors.connector_factory import (
    ConnectorFactory,
    create,
    register_connector,
    supported_providers,
)
from app.domain.services.connectors import (  # noqa: F401  (registration side effect)
    telegram_connector,
    twilio_connector,
    whatsapp_connector,
)

__all__ = [
    "BaseConnector",
    "SendResult",
    "ConnectorFactory",
    "create",
    "register_connector",
    "supported_providers",
]
