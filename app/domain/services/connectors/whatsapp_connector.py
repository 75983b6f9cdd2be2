"""
WhatsApp Connector - Cloud API (Meta) דרך ספריית pywa.

credentials: accessToken, phoneNumberId.
"""
from __future__ import annotations

from typing import Any

from app.core.exceptions import ProviderResponseError
from app.domain.services.connectors.base_connector import BaseConnector
from app.domain.services.connectors.connector_factory import register_connector


def _error_message(exc: Exception) -> str:
    """הודעת שגיאה קריאה מ-pywa WhatsAppError (code + message) או כל חריגה"""
    code = getattr(exc, "error_code", None) or getattr(exc, "code", None)
    message = getattr(exc, "message", None) or str(exc)
    return f"({code}) {message}" if code else message


@register_connector("whatsapp")
class WhatsAppConnector(BaseConnector):
    """שליחת הודעות טקסט דרך WhatsApp Cloud API."""

    REQUIRED_CREDENTIALS = ("accessToken", "phoneNumberId")

    def __init__(self, credentials: dict[str, Any], **kwargs: Any) -> None:
        super().__init__(credentials, **kwargs)
        # אתחול עצלן - נטען רק כשנדרש
        self._client = None

    def _get_client(self):
        """אתחול עצלן של pywa client."""
        if self._client is None:
            from pywa_async import WhatsApp as PyWaClient

            self._client = PyWaClient(
                phone_id=str(self._credentials["phoneNumberId"]),
                token=self._credentials["accessToken"],
            )
        return self._client

    @staticmethod
    def _to_cloud_api_format(phone: str) -> str:
        # Cloud API מצפה ל-14155550123 ולא +14155550123
        return phone.lstrip("+")

    async def _send(self, to: str, body: str) -> str | None:
        client = self._get_client()
        try:
            sent = await client.send_message(
                to=self._to_cloud_api_format(to),
                text=body,
            )
        except Exception as exc:
            # pywa זורק WhatsAppError עם status_code של Graph API
            raise ProviderResponseError(
                "whatsapp",
                _error_message(exc),
                details={"status_code": getattr(exc, "status_code", None)},
            ) from exc
        # pywa 2.x מחזיר SentMessage, גרסאות ישנות מחזירות את ה-id כמחרוזת
        external_id = getattr(sent, "id", sent)
        return str(external_id) if external_id else None

    async def _probe(self) -> dict[str, Any]:
        client = self._get_client()
        phone = await client.get_business_phone_number()
        return {
            "display_phone_number": getattr(phone, "display_phone_number", None),
            "verified_name": getattr(phone, "verified_name", None),
        }
