"""
Webhook Reconciler - applies provider status callbacks to message rows.

Each provider has a parser that validates the raw payload (pydantic models)
and yields ``StatusEvent``s with the status already mapped to ours. Events
are applied one by one through ``MessageStatusService``, so the conditional
updates keep every row monotonic even when callbacks arrive twice or out of
order.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Literal, Optional, List

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.core.logging import get_logger
from app.db.database import SessionFactory
from app.db.models.message import MessageStatus
from app.domain.services.message_status import MessageStatusService

logger = get_logger(__name__)


class MalformedPayloadError(ValueError):
    """Payload does not match the provider's callback shape"""


@dataclass(frozen=True)
class StatusEvent:
    external_id: str
    status: MessageStatus | None      # None - provider status we do not track
    provider_status: str
    occurred_at: datetime | None = None
    error: str | None = None


@dataclass
class ReconcileReport:
    processed: int = 0
    updated: int = 0
    ignored: int = 0
    unknown: int = 0
    malformed: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "updated": self.updated,
            "ignored": self.ignored,
            "unknown": self.unknown,
            "malformed": self.malformed,
        }


StatusParser = Callable[[Any], Iterator[StatusEvent]]

_parsers: dict[str, StatusParser] = {}


def register_parser(provider: str) -> Callable[[StatusParser], StatusParser]:
    def decorator(func: StatusParser) -> StatusParser:
        _parsers[provider] = func
        return func
    return decorator


def _from_unix(value: str | int | None) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


# ── WhatsApp Cloud API ──
# entry[] -> changes[] -> value.statuses[]


class WhatsAppStatusError(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: Optional[int] = None
    title: Optional[str] = None
    message: Optional[str] = None


class WhatsAppStatus(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    status: str
    timestamp: Optional[str] = None
    recipient_id: Optional[str] = None
    errors: List[WhatsAppStatusError] = Field(default_factory=list)


class WhatsAppChangeValue(BaseModel):
    model_config = ConfigDict(extra="ignore")

    messaging_product: Optional[str] = None
    statuses: List[WhatsAppStatus] = Field(default_factory=list)


class WhatsAppChange(BaseModel):
    model_config = ConfigDict(extra="ignore")

    field: str
    value: WhatsAppChangeValue


class WhatsAppEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    changes: List[WhatsAppChange] = Field(default_factory=list)


class WhatsAppWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: Literal["whatsapp_business_account"]
    entry: List[WhatsAppEntry] = Field(default_factory=list)


WHATSAPP_STATUS_MAP: dict[str, MessageStatus] = {
    "sent": MessageStatus.SENT,
    "delivered": MessageStatus.DELIVERED,
    "read": MessageStatus.DELIVERED,
    "failed": MessageStatus.FAILED,
}


@register_parser("whatsapp")
def parse_whatsapp(payload: Any) -> Iterator[StatusEvent]:
    try:
        parsed = WhatsAppWebhookPayload.model_validate(payload)
    except ValidationError as e:
        raise MalformedPayloadError(str(e)) from e

    for entry in parsed.entry:
        for change in entry.changes:
            # inbound messages arrive on the same field; only statuses matter here
            if change.field != "messages":
                continue
            for status in change.value.statuses:
                error = None
                if status.errors:
                    first = status.errors[0]
                    error = first.title or first.message or (f"error {first.code}" if first.code else None)
                yield StatusEvent(
                    external_id=status.id,
                    status=WHATSAPP_STATUS_MAP.get(status.status.lower()),
                    provider_status=status.status,
                    occurred_at=_from_unix(status.timestamp),
                    error=error,
                )


# ── Twilio ──
# form-encoded StatusCallback, one message per request


class TwilioStatusCallback(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    message_sid: str = Field(alias="MessageSid", min_length=1)
    message_status: str = Field(alias="MessageStatus", min_length=1)
    error_code: Optional[str] = Field(default=None, alias="ErrorCode")
    error_message: Optional[str] = Field(default=None, alias="ErrorMessage")


TWILIO_STATUS_MAP: dict[str, MessageStatus] = {
    "sent": MessageStatus.SENT,
    "delivered": MessageStatus.DELIVERED,
    "read": MessageStatus.DELIVERED,
    "failed": MessageStatus.FAILED,
    "undelivered": MessageStatus.UNDELIVERED,
}


@register_parser("twilio_sms")
def parse_twilio(payload: Any) -> Iterator[StatusEvent]:
    try:
        parsed = TwilioStatusCallback.model_validate(payload)
    except ValidationError as e:
        raise MalformedPayloadError(str(e)) from e

    error = None
    if parsed.error_message or parsed.error_code:
        error = parsed.error_message or f"Twilio error {parsed.error_code}"

    yield StatusEvent(
        external_id=parsed.message_sid,
        status=TWILIO_STATUS_MAP.get(parsed.message_status.lower()),
        provider_status=parsed.message_status,
        error=error,
    )


@dataclass
class WebhookReconciler:
    session_factory: SessionFactory
    parsers: dict[str, StatusParser] = field(default_factory=lambda: _parsers)

    async def handle(self, provider: str, payload: Any) -> ReconcileReport:
        report = ReconcileReport()

        parser = self.parsers.get(provider)
        if parser is None:
            logger.warning(
                "Webhook for unsupported provider",
                extra_data={"provider": provider, "supported": sorted(self.parsers)},
            )
            report.malformed = True
            return report

        try:
            events = list(parser(payload))
        except MalformedPayloadError as e:
            logger.warning(
                "Malformed webhook payload dropped",
                extra_data={"provider": provider, "error": str(e)[:500]},
            )
            report.malformed = True
            return report

        async with self.session_factory() as db:
            status_service = MessageStatusService(db)
            for event in events:
                report.processed += 1
                if event.status is None:
                    report.ignored += 1
                    continue

                updated = await status_service.apply_provider_status(
                    event.external_id,
                    event.status,
                    occurred_at=event.occurred_at,
                    error=event.error,
                )
                if updated:
                    report.updated += 1
                    continue

                if await status_service.exists_external_id(event.external_id):
                    # duplicate or out-of-order event; the row already moved on
                    report.ignored += 1
                else:
                    report.unknown += 1
                    logger.info(
                        "Webhook status for unknown message",
                        extra_data={"provider": provider, "external_id": event.external_id},
                    )
            await db.commit()

        logger.info(
            "Webhook reconciled",
            extra_data={"provider": provider, **report.as_dict()},
        )
        return report
