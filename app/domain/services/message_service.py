"""
Message log queries - the read path used by the dashboard and SDK clients.
"""
from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.message import Message, MessageStatus

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def serialize_message(message: Message) -> dict[str, Any]:
    """Public representation of a message row (API field names)"""
    return {
        "id": message.id,
        "projectId": message.project_id,
        "connectorId": message.connector_id,
        "templateId": message.template_id,
        "recipient": message.recipient,
        "variables": message.variables or {},
        "metadata": message.extra_metadata,
        "idempotencyKey": message.idempotency_key,
        "status": message.status.value if message.status else None,
        "externalMessageId": message.external_message_id,
        "error": message.error,
        "attempts": message.attempts,
        "sentAt": message.sent_at.isoformat() if message.sent_at else None,
        "deliveredAt": message.delivered_at.isoformat() if message.delivered_at else None,
        "createdAt": message.created_at.isoformat() if message.created_at else None,
    }


class MessageService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_messages(
        self,
        project_id: str,
        *,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
        status: MessageStatus | None = None,
    ) -> tuple[list[Message], int]:
        """Newest first. Returns (page, total matching rows)."""
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)

        filters = [Message.project_id == project_id]
        if status is not None:
            filters.append(Message.status == status)

        total = (await self.db.execute(
            select(func.count()).select_from(Message).where(*filters)
        )).scalar_one()

        result = await self.db.execute(
            select(Message)
            .where(*filters)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total

    async def get_message(self, project_id: str, message_id: str) -> Message | None:
        result = await self.db.execute(
            select(Message).where(
                Message.id == message_id,
                Message.project_id == project_id,
            )
        )
        return result.scalar_one_or_none()
