"""
Message status transitions.

Allowed transitions:

    QUEUED -> SENT | FAILED                      (worker)
    FAILED -> SENT | FAILED                      (worker, retried job)
    SENT   -> DELIVERED | FAILED | UNDELIVERED   (provider webhook)
    DELIVERED, UNDELIVERED                       terminal

Every write is an ``UPDATE ... WHERE status IN (<sources>)``, so the row is
never moved backwards even when the worker and a webhook race on it.
"""
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.message import Message, MessageStatus

logger = get_logger(__name__)


class TransitionActor(str, enum.Enum):
    WORKER = "worker"
    WEBHOOK = "webhook"


MESSAGE_TRANSITIONS: dict[MessageStatus, list[MessageStatus]] = {
    MessageStatus.QUEUED: [MessageStatus.SENT, MessageStatus.FAILED],
    MessageStatus.FAILED: [MessageStatus.SENT, MessageStatus.FAILED],
    MessageStatus.SENT: [
        MessageStatus.DELIVERED,
        MessageStatus.FAILED,
        MessageStatus.UNDELIVERED,
    ],
    MessageStatus.DELIVERED: [],
    MessageStatus.UNDELIVERED: [],
}

# the worker only moves messages it has not handed to a provider yet;
# webhooks only move messages a provider has accepted
_ACTOR_SOURCES: dict[TransitionActor, frozenset[MessageStatus]] = {
    TransitionActor.WORKER: frozenset({MessageStatus.QUEUED, MessageStatus.FAILED}),
    TransitionActor.WEBHOOK: frozenset({MessageStatus.SENT}),
}

# statuses where a redelivered job must not call the provider again
ALREADY_DISPATCHED = frozenset({
    MessageStatus.SENT,
    MessageStatus.DELIVERED,
    MessageStatus.UNDELIVERED,
})


def can_transition(current: MessageStatus, target: MessageStatus) -> bool:
    return target in MESSAGE_TRANSITIONS.get(current, [])


def allowed_sources(target: MessageStatus, actor: TransitionActor) -> list[MessageStatus]:
    """States from which ``actor`` may move a message to ``target``"""
    return [
        source
        for source in MESSAGE_TRANSITIONS
        if source in _ACTOR_SOURCES[actor] and can_transition(source, target)
    ]


class MessageStatusService:
    """Conditional status writes for the worker and the webhook reconciler"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _transition(self, where, target: MessageStatus, actor: TransitionActor, **values) -> int:
        sources = allowed_sources(target, actor)
        if not sources:
            return 0
        stmt = (
            update(Message)
            .where(*where, Message.status.in_(sources))
            .values(status=target, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount or 0

    async def mark_as_sent(
        self,
        message_id: str,
        external_id: str | None,
        *,
        sent_at: datetime | None = None,
    ) -> bool:
        """Provider accepted the message. external_message_id is write-once."""
        updated = await self._transition(
            (Message.id == message_id,),
            MessageStatus.SENT,
            TransitionActor.WORKER,
            external_message_id=func.coalesce(Message.external_message_id, external_id),
            sent_at=sent_at or utcnow(),
            error=None,
        )
        return updated > 0

    async def mark_as_failed(self, message_id: str, error: str) -> bool:
        """Worker-side failure; keeps the latest error"""
        updated = await self._transition(
            (Message.id == message_id,),
            MessageStatus.FAILED,
            TransitionActor.WORKER,
            error=(error or "unknown error")[:4000],
        )
        return updated > 0

    async def mark_enqueued(self, message_id: str) -> bool:
        """A dispatch job reached the broker; the orphan sweep skips the row from now on"""
        result = await self.db.execute(
            update(Message)
            .where(Message.id == message_id, Message.enqueued_at.is_(None))
            .values(enqueued_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) > 0

    async def apply_provider_status(
        self,
        external_id: str,
        target: MessageStatus,
        *,
        occurred_at: datetime | None = None,
        error: str | None = None,
    ) -> int:
        """
        Apply a webhook status to every message with this provider id.

        DELIVERED sets delivered_at once; a repeated event matches no row
        (DELIVERED is not a source state) and is a no-op.
        """
        values: dict = {}
        when = occurred_at or utcnow()
        if target == MessageStatus.SENT:
            # the worker already moved the row; only backfill the timestamp
            stmt = (
                update(Message)
                .where(
                    Message.external_message_id == external_id,
                    Message.status == MessageStatus.SENT,
                )
                .values(sent_at=func.coalesce(Message.sent_at, when))
                .execution_options(synchronize_session=False)
            )
            result = await self.db.execute(stmt)
            return result.rowcount or 0
        if target == MessageStatus.DELIVERED:
            values["delivered_at"] = func.coalesce(Message.delivered_at, when)
        elif target in (MessageStatus.FAILED, MessageStatus.UNDELIVERED):
            values["error"] = (error or f"provider reported {target.value.lower()}")[:4000]

        return await self._transition(
            (Message.external_message_id == external_id,),
            target,
            TransitionActor.WEBHOOK,
            **values,
        )

    async def exists_external_id(self, external_id: str) -> bool:
        result = await self.db.execute(
            select(Message.id).where(Message.external_message_id == external_id).limit(1)
        )
        return result.scalar_one_or_none() is not None
