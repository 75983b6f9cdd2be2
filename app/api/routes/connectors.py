"""
Connector API Routes - connectivity probe
"""
from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.api_key_auth import ApiKeyContext, require_api_key
from app.core.exceptions import DispatchError, NotFoundException
from app.core.logging import get_logger
from app.core.vault import get_vault
from app.db.database import get_db
from app.db.models.connector import Connector
from app.domain.services.connectors import ConnectorFactory

logger = get_logger(__name__)

router = APIRouter()


@router.get("/{connector_id}/status", summary="Check provider connectivity")
async def connector_status(
    connector_id: str,
    auth: ApiKeyContext = Depends(require_api_key),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """
    Probe the provider with the connector's credentials.

    Credentials are decrypted in memory for the probe and never returned.
    """
    result = await db.execute(
        select(Connector).where(
            Connector.id == connector_id,
            Connector.project_id == auth.project_id,
        )
    )
    connector_row = result.scalar_one_or_none()
    if connector_row is None:
        raise NotFoundException("Connector", connector_id)

    try:
        credentials = get_vault().decrypt(connector_row.credentials_encrypted)
        connector = ConnectorFactory().create(
            connector_row.type,
            credentials,
            connector_id=connector_row.id,
        )
    except DispatchError as e:
        logger.warning(
            "Connector status check failed before probe",
            extra_data={"connector_id": connector_id, "error_code": e.error_code.value},
        )
        return {
            "connectorId": connector_row.id,
            "type": connector_row.type,
            "ok": False,
            "details": {"error": e.message, "code": e.error_code.value},
        }

    status = await connector.get_status()
    return {
        "connectorId": connector_row.id,
        "type": connector_row.type,
        "ok": status["ok"],
        "details": status["details"],
    }
