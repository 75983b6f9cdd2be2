"""
Twilio SMS Connector - Messages API דרך httpx.

credentials: accountSid, authToken, fromNumber.
"""
from __future__ import annotations

from typing import Any

import httpx

from app.core.config import settings
from app.core.exceptions import ProviderResponseError
from app.domain.services.connectors.base_connector import BaseConnector
from app.domain.services.connectors.connector_factory import register_connector


@register_connector("twilio_sms")
class TwilioSmsConnector(BaseConnector):
    """שליחת SMS דרך Twilio."""

    REQUIRED_CREDENTIALS = ("accountSid", "authToken", "fromNumber")

    @property
    def _account_url(self) -> str:
        return (
            f"{settings.TWILIO_API_BASE_URL}/2010-04-01/Accounts/"
            f"{self._credentials['accountSid']}"
        )

    @property
    def _auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(self._credentials["accountSid"], self._credentials["authToken"])

    @staticmethod
    def _raise_for_response(operation: str, response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code >= 400:
            message = data.get("message") if isinstance(data, dict) else None
            raise ProviderResponseError.from_response(
                "twilio_sms",
                operation,
                response,
                message=message or f"{operation} returned status {response.status_code}",
            )
        return data

    async def _send(self, to: str, body: str) -> str | None:
        form = {"To": to, "From": self._credentials["fromNumber"], "Body": body}
        if self._credentials.get("statusCallbackUrl"):
            form["StatusCallback"] = self._credentials["statusCallbackUrl"]

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(
                f"{self._account_url}/Messages.json",
                data=form,
                auth=self._auth,
            )
        data = self._raise_for_response("Messages.json", response)
        return data.get("sid")

    async def _probe(self) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.get(f"{self._account_url}.json", auth=self._auth)
        data = self._raise_for_response("Accounts", response)
        return {"friendly_name": data.get("friendly_name"), "status": data.get("status")}
