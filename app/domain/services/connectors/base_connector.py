"""
ממשק בסיסי ל-Connector - שליחת הודעה דרך ספק חיצוני אחד.

כל ספק (WhatsApp Cloud API, Telegram Bot API, Twilio SMS) מממש את _send.
ה-worker תלוי רק בממשק הזה ולא במימוש ספציפי.

חוזה:
- credentials חסרים → ConnectorConfigurationError כבר בבנייה (fatal, בלי retry).
- כשלון רגיל של הספק (רשת, timeout, 4xx/5xx, circuit פתוח) לא זורק -
  מוחזר SendResult(success=False, error=...).
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar

from app.core.circuit_breaker import get_connector_circuit_breaker
from app.core.config import settings
from app.core.exceptions import (
    CircuitBreakerOpenError,
    ConnectorConfigurationError,
    ProviderResponseError,
)
from app.core.logging import get_logger
from app.core.validation import mask_recipient

logger = get_logger(__name__)


@dataclass(frozen=True)
class SendResult:
    """תוצאה אחידה של ניסיון שליחה"""

    success: bool
    external_id: str | None = None
    error: str | None = None
    # False לשגיאות לקוח (4xx) - לא נספרות ב-circuit breaker
    transient: bool = True

    @classmethod
    def ok(cls, external_id: str | None) -> "SendResult":
        return cls(success=True, external_id=external_id)

    @classmethod
    def failed(cls, error: str, *, transient: bool = True) -> "SendResult":
        return cls(success=False, error=error, transient=transient)


class BaseConnector(ABC):
    """
    ממשק אחיד לשליחת הודעות דרך ספק.

    מחלקות יורשות מגדירות provider_type ו-REQUIRED_CREDENTIALS,
    ומממשות _send ו-_probe.
    """

    provider_type: ClassVar[str]
    REQUIRED_CREDENTIALS: ClassVar[tuple[str, ...]] = ()

    def __init__(
        self,
        credentials: dict[str, Any],
        *,
        connector_id: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        credentials = credentials or {}
        missing = [
            name for name in self.REQUIRED_CREDENTIALS
            if not str(credentials.get(name) or "").strip()
        ]
        if missing:
            raise ConnectorConfigurationError(self.provider_type, missing)

        self._credentials = dict(credentials)
        self.connector_id = connector_id or "default"
        self._timeout = timeout_seconds or settings.CONNECTOR_TIMEOUT_SECONDS
        self._circuit_breaker = get_connector_circuit_breaker(
            self.provider_type, self.connector_id
        )

    def __repr__(self) -> str:
        # לעולם לא להדפיס credentials
        return f"<{type(self).__name__} connector_id={self.connector_id}>"

    # ── ממשק ציבורי ──

    async def send_message(self, to: str, body: str) -> SendResult:
        """
        שליחת הודעת טקסט.

        Args:
            to: נמען בפורמט הספק (E.164 / chat id).
            body: טקסט מרונדר.

        Returns:
            SendResult - לעולם לא זורק על כשלון ספק.
        """
        async def _attempt() -> SendResult:
            try:
                external_id = await asyncio.wait_for(self._send(to, body), timeout=self._timeout)
            except ProviderResponseError as exc:
                status_code = exc.details.get("status_code")
                transient = not (isinstance(status_code, int) and 400 <= status_code < 500 and status_code != 429)
                return SendResult.failed(exc.message, transient=transient)
            return SendResult.ok(external_id)

        try:
            result = await self._circuit_breaker.execute(
                _attempt,
                is_failure=lambda r: not r.success and r.transient,
            )
        except CircuitBreakerOpenError as exc:
            result = SendResult.failed(exc.message)
        except asyncio.TimeoutError:
            result = SendResult.failed(
                f"{self.provider_type} request timed out after {self._timeout}s"
            )
        except Exception as exc:
            # רשת / SDK - הופך לכשלון רגיל, ה-queue אחראי על retry
            result = SendResult.failed(f"{self.provider_type} send failed: {type(exc).__name__}: {exc}")

        log_data = {
            "provider": self.provider_type,
            "connector_id": self.connector_id,
            "to": mask_recipient(to),
            "success": result.success,
        }
        if result.success:
            logger.info("Provider accepted message", extra_data={**log_data, "external_id": result.external_id})
        else:
            logger.warning("Provider send failed", extra_data={**log_data, "error": result.error})
        return result

    async def get_status(self) -> dict[str, Any]:
        """
        בדיקת קישוריות מול הספק (לא שולח הודעה).

        Returns:
            {"ok": bool, "details": {...}} - ללא credentials.
        """
        try:
            details = await asyncio.wait_for(self._probe(), timeout=self._timeout)
            return {"ok": True, "details": details}
        except asyncio.TimeoutError:
            return {"ok": False, "details": {"error": f"timed out after {self._timeout}s"}}
        except ProviderResponseError as exc:
            return {"ok": False, "details": {"error": exc.message}}
        except Exception as exc:
            logger.warning(
                "Connector status probe failed",
                extra_data={"provider": self.provider_type, "error": str(exc)},
            )
            return {"ok": False, "details": {"error": f"{type(exc).__name__}: {exc}"}}

    # ── מימוש לכל ספק ──

    @abstractmethod
    async def _send(self, to: str, body: str) -> str | None:
        """
        קריאת ה-API של הספק.

        Returns:
            מזהה ההודעה אצל הספק.

        Raises:
            ProviderResponseError: תשובה לא מוצלחת מהספק.
        """

    @abstractmethod
    async def _probe(self) -> dict[str, Any]:
        """קריאה קלה לספק לאימות credentials."""
