"""
Telegram Connector - Bot API דרך httpx.

credentials: botToken.
"""
from __future__ import annotations

from typing import Any

import httpx

from app.core.config import settings
from app.core.exceptions import ProviderResponseError
from app.domain.services.connectors.base_connector import BaseConnector
from app.domain.services.connectors.connector_factory import register_connector


@register_connector("telegram")
class TelegramConnector(BaseConnector):
    """שליחת הודעות טקסט דרך Telegram Bot API."""

    REQUIRED_CREDENTIALS = ("botToken",)

    def _url(self, method: str) -> str:
        return f"{settings.TELEGRAM_API_BASE_URL}/bot{self._credentials['botToken']}/{method}"

    async def _call(self, method: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """קריאה ל-Bot API; מחזיר את שדה result או זורק ProviderResponseError"""
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(self._url(method), json=payload or {})

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code != 200 or not data.get("ok"):
            # description של טלגרם מסביר את השגיאה (chat not found וכו')
            description = data.get("description") if isinstance(data, dict) else None
            raise ProviderResponseError.from_response(
                "telegram",
                method,
                response,
                message=description or f"{method} returned status {response.status_code}",
            )
        return data.get("result") or {}

    async def _send(self, to: str, body: str) -> str | None:
        result = await self._call("sendMessage", {"chat_id": to, "text": body})
        message_id = result.get("message_id")
        return str(message_id) if message_id is not None else None

    async def _probe(self) -> dict[str, Any]:
        me = await self._call("getMe")
        return {"username": me.get("username"), "bot_id": me.get("id")}
