"""
Dispatch Service - the worker side of the message pipeline.

One call to ``MessageDispatcher.dispatch`` is one job attempt:
load -> guard -> decrypt -> render -> send -> record. Whether the job is
retried is decided by the caller (the Celery task) from the outcome.

No database session is held while the provider call is in flight.
"""
from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from sqlalchemy import select, update

from app.core.exceptions import DataIntegrityError, DispatchError
from app.core.logging import get_logger
from app.core.validation import mask_recipient
from app.core.vault import Vault
from app.db.database import SessionFactory, utcnow
from app.db.models.connector import Connector
from app.db.models.message import Message
from app.db.models.template import Template
from app.domain.services.connectors import ConnectorFactory
from app.domain.services.message_status import ALREADY_DISPATCHED, MessageStatusService
from app.domain.services.template_renderer import render_template

logger = get_logger(__name__)


def _calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    Calculate exponential backoff seconds with a hard upper bound.

        backoff = base_seconds * (2 ** retry_count)

    The result is capped at max_backoff_seconds and avoids computing huge
    powers when retry_count is unexpectedly large.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # 2**retry_count >= ceil(max/base) without computing 2**retry_count
    required_multiplier = (max_backoff_seconds + base_seconds - 1) // base_seconds
    is_power_of_two = (required_multiplier & (required_multiplier - 1)) == 0
    threshold = required_multiplier.bit_length() - 1
    if not is_power_of_two:
        threshold += 1

    if retry_count >= threshold:
        return max_backoff_seconds

    backoff = base_seconds * (1 << retry_count)
    return min(backoff, max_backoff_seconds)


class DispatchOutcome(str, enum.Enum):
    SENT = "sent"
    SKIPPED = "skipped"                      # already dispatched, redelivered job
    RETRYABLE_FAILURE = "retryable_failure"  # provider said no; queue may retry
    FATAL_FAILURE = "fatal_failure"          # configuration/integrity; never retry
    DROPPED = "dropped"                      # message row does not exist


@dataclass(frozen=True)
class DispatchResult:
    message_id: str
    outcome: DispatchOutcome
    external_id: str | None = None
    error: str | None = None

    @property
    def retryable(self) -> bool:
        return self.outcome == DispatchOutcome.RETRYABLE_FAILURE


@dataclass(frozen=True)
class _PreparedSend:
    """Everything the send step needs, detached from the session"""
    connector_id: str
    connector_type: str
    credentials_blob: str
    body: str
    variables: Mapping[str, Any]
    recipient: str
    project_id: str


class MessageDispatcher:
    """
    Executes one dispatch attempt for a message id.

    Collaborators are injected so tests can substitute an in-memory
    database, a fixed vault key and fake connectors.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        vault: Vault,
        connector_factory: ConnectorFactory | None = None,
        *,
        renderer: Callable[[str, Mapping[str, Any] | None], str] = render_template,
    ):
        self._session_factory = session_factory
        self._vault = vault
        self._connector_factory = connector_factory or ConnectorFactory()
        self._render = renderer

    async def dispatch(self, message_id: str) -> DispatchResult:
        prepared_or_result = await self._load(message_id)
        if isinstance(prepared_or_result, DispatchResult):
            return prepared_or_result
        prepared = prepared_or_result

        try:
            # Fernet is CPU-bound; keep the event loop free
            credentials = await asyncio.to_thread(self._vault.decrypt, prepared.credentials_blob)
            rendered = self._render(prepared.body, prepared.variables)
            connector = self._connector_factory.create(
                prepared.connector_type,
                credentials,
                connector_id=prepared.connector_id,
            )
        except DispatchError as exc:
            return await self._fail_fatal(message_id, exc)

        result = await connector.send_message(prepared.recipient, rendered)

        async with self._session_factory() as db:
            status_service = MessageStatusService(db)
            if result.success:
                updated = await status_service.mark_as_sent(message_id, result.external_id)
            else:
                updated = await status_service.mark_as_failed(message_id, result.error or "send failed")
            await db.commit()

        if not updated:
            # a concurrent writer moved the row; the conditional update kept it monotonic
            logger.warning(
                "Message status changed during dispatch, result not recorded",
                extra_data={"message_id": message_id, "success": result.success},
            )

        if result.success:
            return DispatchResult(message_id, DispatchOutcome.SENT, external_id=result.external_id)

        logger.warning(
            "Dispatch attempt failed",
            extra_data={
                "message_id": message_id,
                "provider": prepared.connector_type,
                "to": mask_recipient(prepared.recipient),
                "error": result.error,
            },
        )
        return DispatchResult(message_id, DispatchOutcome.RETRYABLE_FAILURE, error=result.error)

    async def _load(self, message_id: str) -> _PreparedSend | DispatchResult:
        async with self._session_factory() as db:
            message = await db.get(Message, message_id)
            if message is None:
                logger.error("Dispatch job references a missing message", extra_data={"message_id": message_id})
                return DispatchResult(message_id, DispatchOutcome.DROPPED, error="message not found")

            if message.status in ALREADY_DISPATCHED:
                logger.info(
                    "Message already dispatched, skipping provider call",
                    extra_data={"message_id": message_id, "status": message.status.value},
                )
                return DispatchResult(
                    message_id, DispatchOutcome.SKIPPED, external_id=message.external_message_id
                )

            await db.execute(
                update(Message)
                .where(Message.id == message_id)
                .values(attempts=Message.attempts + 1, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )

            connector = (await db.execute(
                select(Connector).where(
                    Connector.id == message.connector_id,
                    Connector.project_id == message.project_id,
                )
            )).scalar_one_or_none()
            template = (await db.execute(
                select(Template).where(
                    Template.id == message.template_id,
                    Template.project_id == message.project_id,
                )
            )).scalar_one_or_none()
            await db.commit()

            if connector is None:
                error = DataIntegrityError("Connector", message.connector_id, message_id)
            elif template is None:
                error = DataIntegrityError("Template", message.template_id, message_id)
            else:
                return _PreparedSend(
                    connector_id=connector.id,
                    connector_type=connector.type,
                    credentials_blob=connector.credentials_encrypted,
                    body=template.body,
                    variables=dict(message.variables or {}),
                    recipient=message.recipient,
                    project_id=message.project_id,
                )

        return await self._fail_fatal(message_id, error)

    async def _fail_fatal(self, message_id: str, exc: DispatchError) -> DispatchResult:
        log = logger.error if isinstance(exc, DataIntegrityError) else logger.warning
        log(
            "Dispatch failed permanently",
            extra_data={
                "message_id": message_id,
                "error_code": exc.error_code.value,
                "error": exc.message,
            },
        )
        async with self._session_factory() as db:
            await MessageStatusService(db).mark_as_failed(message_id, exc.message)
            await db.commit()
        return DispatchResult(message_id, DispatchOutcome.FATAL_FAILURE, error=exc.message)
