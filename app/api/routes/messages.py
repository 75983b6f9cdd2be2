"""
Message API Routes - admission and the message log
"""
from typing import Any

from fastapi import APIRouter, Depends, Header, Query, status
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.api_key_auth import ApiKeyContext, require_api_key
from app.api.dependencies.services import get_admission_service
from app.core.exceptions import ForbiddenException, NotFoundException, ValidationException
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.message import MessageStatus
from app.domain.services.admission_service import AdmissionService
from app.domain.services.message_service import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    MessageService,
    serialize_message,
)

logger = get_logger(__name__)

router = APIRouter()


class SendMessageRequest(BaseModel):
    """
    Body of POST /messages.

    ``serviceId`` is accepted for ``connectorId`` and ``recipient`` for ``to``.
    """
    model_config = ConfigDict(populate_by_name=True)

    connector_id: str = Field(
        validation_alias=AliasChoices("connectorId", "serviceId", "connector_id"),
        min_length=1,
        max_length=64,
    )
    template_id: str = Field(
        validation_alias=AliasChoices("templateId", "template_id"),
        min_length=1,
        max_length=64,
    )
    to: str = Field(
        validation_alias=AliasChoices("to", "recipient"),
        min_length=1,
        max_length=64,
    )
    variables: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None

    @field_validator("connector_id", "template_id", "to")
    @classmethod
    def strip_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v


class SendMessageResponse(BaseModel):
    messageId: str
    status: str


class MessageListResponse(BaseModel):
    items: list[dict[str, Any]]
    total: int
    limit: int
    offset: int


def _parse_status(raw: str | None) -> MessageStatus | None:
    if raw is None or raw == "":
        return None
    try:
        return MessageStatus(raw.upper())
    except ValueError:
        raise ValidationException(
            f"Unknown status '{raw}'",
            field="status",
            details={"allowed": [s.value for s in MessageStatus]},
        ) from None


@router.post(
    "",
    response_model=SendMessageResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue a message",
    responses={
        400: {"description": "Invalid request"},
        401: {"description": "Missing or malformed API key"},
        403: {"description": "Unknown or revoked API key"},
        404: {"description": "Connector or template not found in this project"},
        429: {"description": "Rate limit exceeded"},
    },
)
async def send_message(
    body: SendMessageRequest,
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
    auth: ApiKeyContext = Depends(require_api_key),
    admission: AdmissionService = Depends(get_admission_service),
) -> SendMessageResponse:
    """Validate and queue a message; the provider call happens in the worker"""
    result = await admission.admit(
        project_id=auth.project_id,
        connector_id=body.connector_id,
        template_id=body.template_id,
        recipient=body.to,
        variables=body.variables,
        idempotency_key=idempotency_key,
        metadata=body.metadata,
    )
    return SendMessageResponse(messageId=result.message_id, status=result.status)


@router.get("", response_model=MessageListResponse, summary="List messages")
async def list_messages(
    project_id: str | None = Query(None, alias="projectId"),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    status_filter: str | None = Query(None, alias="status"),
    auth: ApiKeyContext = Depends(require_api_key),
    db: AsyncSession = Depends(get_db),
) -> MessageListResponse:
    """Paginated message log of the key's project, newest first"""
    if project_id is not None and project_id != auth.project_id:
        raise ForbiddenException("API key does not belong to this project")

    messages, total = await MessageService(db).list_messages(
        auth.project_id,
        limit=limit,
        offset=offset,
        status=_parse_status(status_filter),
    )
    return MessageListResponse(
        items=[serialize_message(m) for m in messages],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{message_id}", summary="Get a message")
async def get_message(
    message_id: str,
    auth: ApiKeyContext = Depends(require_api_key),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    message = await MessageService(db).get_message(auth.project_id, message_id)
    if message is None:
        raise NotFoundException("Message", message_id)
    return serialize_message(message)
