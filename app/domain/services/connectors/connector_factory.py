"""
Connector Factory - יצירת Connector לפי provider type.

Registry: כל Connector נרשם עם @register_connector("type"), כך שהוספת
ספק חדש לא דורשת שינוי בקוד של ה-factory.
"""
from __future__ import annotations

import threading
from typing import Any, Callable, TypeVar

from app.core.exceptions import UnsupportedProviderError
from app.core.logging import get_logger
from app.domain.services.connectors.base_connector import BaseConnector

logger = get_logger(__name__)

C = TypeVar("C", bound=type[BaseConnector])

_registry: dict[str, type[BaseConnector]] = {}
_lock = threading.Lock()


def register_connector(provider_type: str) -> Callable[[C], C]:
    """Decorator שרושם מחלקת Connector תחת provider_type."""
    def decorator(cls: C) -> C:
        with _lock:
            existing = _registry.get(provider_type)
            if existing is not None and existing is not cls:
                raise ValueError(
                    f"provider type '{provider_type}' already registered to {existing.__name__}"
                )
            cls.provider_type = provider_type
            _registry[provider_type] = cls
        return cls
    return decorator


def supported_providers() -> list[str]:
    return sorted(_registry)


def get_connector_class(provider_type: str) -> type[BaseConnector]:
    try:
        return _registry[provider_type]
    except KeyError:
        raise UnsupportedProviderError(provider_type) from None


def create(
    provider_type: str,
    credentials: dict[str, Any],
    *,
    connector_id: str | None = None,
    timeout_seconds: float | None = None,
) -> BaseConnector:
    """
    יצירת Connector.

    Raises:
        UnsupportedProviderError: אין Connector רשום לסוג (fatal).
        ConnectorConfigurationError: credentials חסרים (fatal).
    """
    connector_cls = get_connector_class(provider_type)
    return connector_cls(
        credentials,
        connector_id=connector_id,
        timeout_seconds=timeout_seconds,
    )


class ConnectorFactory:
    """עטיפה מוזרקת ל-dispatcher - מאפשרת החלפה ב-fake בבדיקות."""

    def create(
        self,
        provider_type: str,
        credentials: dict[str, Any],
        *,
        connector_id: str | None = None,
    ) -> BaseConnector:
        return create(provider_type, credentials, connector_id=connector_id)
