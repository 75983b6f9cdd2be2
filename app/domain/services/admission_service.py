"""
Admission Service - validate, authorize and queue an outbound message.

The request path never talks to a provider: it persists a QUEUED message
and hands its id to the dispatch queue.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.core.exceptions import NotFoundException, ValidationException
from app.core.logging import get_logger
from app.core.validation import RecipientValidator, mask_recipient, validate_variables
from app.db.database import SessionFactory, new_id
from app.db.models.connector import Connector
from app.db.models.message import Message, MessageStatus
from app.db.models.template import Template
from app.domain.services.message_status import MessageStatusService

if TYPE_CHECKING:
    from app.workers.dispatch_queue import DispatchQueue

logger = get_logger(__name__)

MAX_IDEMPOTENCY_KEY_LENGTH = 255


@dataclass(frozen=True)
class AdmissionResult:
    message_id: str
    status: str = "queued"
    # True when an earlier request with the same idempotency key created the row
    duplicate: bool = False


class AdmissionService:
    """
    Admission path.

    Idempotency: a request carrying a known ``(project_id, idempotency_key)``
    returns the existing message without re-validating or re-enqueueing.
    The unique constraint on that pair is the authority when two requests
    race past the initial lookup.
    """

    def __init__(self, session_factory: SessionFactory, dispatch_queue: "DispatchQueue"):
        self._session_factory = session_factory
        self._queue = dispatch_queue

    async def admit(
        self,
        *,
        project_id: str,
        connector_id: str,
        template_id: str,
        recipient: str,
        variables: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AdmissionResult:
        """
        Queue a message.

        Raises:
            ValidationException: malformed input (400)
            NotFoundException: connector or template missing in this project (404)
        """
        if idempotency_key is not None:
            idempotency_key = idempotency_key.strip() or None
        if idempotency_key and len(idempotency_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise ValidationException(
                f"Idempotency-Key must be at most {MAX_IDEMPOTENCY_KEY_LENGTH} characters",
                field="Idempotency-Key",
            )

        # 1. known key -> same answer, nothing else happens
        if idempotency_key:
            existing_id = await self._find_by_idempotency_key(project_id, idempotency_key)
            if existing_id is not None:
                logger.info(
                    "Idempotent replay, returning existing message",
                    extra_data={"project_id": project_id, "message_id": existing_id},
                )
                return AdmissionResult(message_id=existing_id, duplicate=True)

        try:
            variables = validate_variables(variables)
        except ValueError as exc:
            raise ValidationException(str(exc), field="variables") from exc

        # 2. both lookups are scoped by project - a foreign id looks missing
        connector, template = await asyncio.gather(
            self._load_connector(project_id, connector_id),
            self._load_template(project_id, template_id),
        )
        if connector is None:
            raise NotFoundException("Connector", connector_id)
        if template is None:
            raise NotFoundException("Template", template_id)

        ok, normalized = RecipientValidator.validate(connector.type, recipient)
        if not ok:
            raise ValidationException(normalized, field="to")

        # 3. insert
        message_id = new_id()
        async with self._session_factory() as db:
            db.add(Message(
                id=message_id,
                project_id=project_id,
                connector_id=connector.id,
                template_id=template.id,
                recipient=normalized,
                variables=variables,
                extra_metadata=metadata,
                idempotency_key=idempotency_key,
                status=MessageStatus.QUEUED,
            ))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                if not idempotency_key:
                    raise
                existing_id = await self._find_by_idempotency_key(project_id, idempotency_key)
                if existing_id is None:
                    raise
                logger.info(
                    "Idempotency key race resolved by re-read",
                    extra_data={"project_id": project_id, "message_id": existing_id},
                )
                return AdmissionResult(message_id=existing_id, duplicate=True)

        # 4. enqueue - a failure here leaves an orphan (enqueued_at NULL) for the sweep task
        try:
            await self._queue.enqueue(message_id)
        except Exception:
            logger.error(
                "Enqueue failed after insert, message left QUEUED",
                extra_data={"project_id": project_id, "message_id": message_id},
                exc_info=True,
            )
            raise

        await self._mark_enqueued(message_id)

        logger.info(
            "Message queued",
            extra_data={
                "project_id": project_id,
                "message_id": message_id,
                "connector_type": connector.type,
                "to": mask_recipient(normalized),
            },
        )
        return AdmissionResult(message_id=message_id)

    async def _mark_enqueued(self, message_id: str) -> None:
        # the job is already on the broker; a lost stamp only costs one extra sweep enqueue
        try:
            async with self._session_factory() as db:
                await MessageStatusService(db).mark_enqueued(message_id)
                await db.commit()
        except SQLAlchemyError:
            logger.warning(
                "Failed to stamp enqueued_at, the orphan sweep may re-enqueue the message",
                extra_data={"message_id": message_id},
                exc_info=True,
            )

    async def _find_by_idempotency_key(self, project_id: str, key: str) -> str | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Message.id).where(
                    Message.project_id == project_id,
                    Message.idempotency_key == key,
                )
            )
            return result.scalar_one_or_none()

    async def _load_connector(self, project_id: str, connector_id: str) -> Connector | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Connector).where(
                    Connector.id == connector_id,
                    Connector.project_id == project_id,
                )
            )
            return result.scalar_one_or_none()

    async def _load_template(self, project_id: str, template_id: str) -> Template | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Template).where(
                    Template.id == template_id,
                    Template.project_id == project_id,
                )
            )
            return result.scalar_one_or_none()
