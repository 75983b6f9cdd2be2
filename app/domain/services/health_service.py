"""
שירות בדיקת בריאות - בדיקות תלויות (DB, Redis, Celery broker).

מספק שתי רמות בדיקה:
- liveness: האם התהליך חי (ללא בדיקת תלויות)
- readiness: בדיקה של כל התלויות שה-admission וה-worker צריכים
"""
from typing import Any

from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.core.logging import get_logger
from app.core import redis_client
from app.db.database import SessionFactory

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# הודעות שגיאה מסוננות - ללא חשיפת פרטי תשתית
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_BROKER = "error: broker_unavailable"


async def _check_db(session_factory: SessionFactory) -> str:
    """בדיקת חיבור למסד הנתונים באמצעות שאילתה קלה."""
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except (SQLAlchemyError, OSError) as e:
        logger.warning("DB health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    """בדיקת חיבור ל-Redis (rate limiter) באמצעות PING."""
    try:
        await redis_client.ping()
        return _CHECK_OK
    except (RedisError, OSError) as e:
        logger.warning("Redis health check failed", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def _check_broker() -> str:
    """בדיקת זמינות ה-broker של Celery - בלעדיו admission נכשל ב-enqueue."""
    try:
        await redis_client.ping(settings.CELERY_BROKER_URL)
        return _CHECK_OK
    except (RedisError, OSError) as e:
        logger.warning("Broker health check failed", extra_data={"error": str(e)})
        return _ERROR_BROKER


async def check_readiness(session_factory: SessionFactory) -> dict[str, Any]:
    """
    בדיקת מוכנות מקיפה.

    מחזיר dict עם סטטוס כללי ופירוט לכל תלות:
    - status: "healthy" אם הכל תקין, "degraded" אם יש בעיה באחת התלויות
    - db / redis / broker: "ok" או "error: ..."
    """
    checks = {
        "db": await _check_db(session_factory),
        "redis": await _check_redis(),
        "broker": await _check_broker(),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)

    return {"status": overall_status, **checks}
