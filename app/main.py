"""
MessageJS Core - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.api.webhooks.providers import router as webhooks_router
from app.db.database import engine, Base, get_session_factory
from app.workers.dispatch_queue import CeleryDispatchQueue

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
    json_format=settings.LOG_JSON and not settings.DEBUG,
    app_name=settings.APP_NAME,
    service="api",
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {"name": "Messages", "description": "Queue outbound messages and read the message log."},
    {"name": "Connectors", "description": "Provider connectivity checks."},
    {"name": "Webhooks", "description": "Provider status callbacks and verification handshakes."},
    {"name": "Health", "description": "Liveness and readiness probes."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "Message dispatch API: idempotent admission, background delivery through "
        "WhatsApp, Telegram and Twilio SMS connectors, and webhook status reconciliation."
    ),
    openapi_tags=_OPENAPI_TAGS,
    openapi_url="/openapi.json",
)

# admission hands jobs to this queue; tests replace it with an in-memory one
app.state.dispatch_queue = CeleryDispatchQueue()

# Setup middleware (correlation ID, request logging)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

# Safe dev default to support local dashboard development without opening CORS in production.
if not allowed_origins and settings.DEBUG:
    allowed_origins = [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Idempotency-Key", "X-Correlation-ID"],
        expose_headers=[
            "X-Correlation-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
    )

app.include_router(api_router, prefix="/api")
app.include_router(webhooks_router, prefix="/webhooks", tags=["Webhooks"])


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    from app.core.redis_client import close_redis
    await close_redis()
    # release pooled connections so restarts do not exhaust the database
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="Liveness probe",
    description="The process is up and answering. External dependencies are not checked.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    """Liveness probe"""
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="Readiness probe",
    description=(
        "Checks the database, Redis (rate limiter) and the Celery broker. "
        "Returns status=healthy, or status=degraded with a 503."
    ),
    responses={
        200: {
            "description": "All dependencies are available",
            "content": {
                "application/json": {
                    "example": {"status": "healthy", "db": "ok", "redis": "ok", "broker": "ok"}
                }
            },
        },
        503: {
            "description": "At least one dependency is unavailable",
            "content": {
                "application/json": {
                    "example": {
                        "status": "degraded",
                        "db": "ok",
                        "redis": "error: redis_unavailable",
                        "broker": "ok",
                    }
                }
            },
        },
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    """Readiness probe"""
    from app.domain.services.health_service import check_readiness

    result = await check_readiness(get_session_factory())
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
