"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.messages import router as messages_router
from app.api.routes.connectors import router as connectors_router

router = APIRouter()

router.include_router(messages_router, prefix="/v1/messages", tags=["Messages"])
router.include_router(connectors_router, prefix="/v1/connectors", tags=["Connectors"])
