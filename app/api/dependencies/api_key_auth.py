"""
FastAPI dependency for project API keys (SDK clients).

Usage:
    @router.post("/messages")
    async def send(auth: ApiKeyContext = Depends(require_api_key)):
        project_id = auth.project_id

Header: ``Authorization: Bearer pk_live_<id>_sk_live_<secret>``

- missing header / not Bearer / malformed key -> 401
- unknown public key, wrong secret, revoked key -> 403
- over API_RATE_LIMIT_MAX_REQUESTS per window -> 429
"""
import math
import time
from dataclasses import dataclass

from fastapi import Depends, Request, Response
from redis.exceptions import RedisError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.api_keys import split_api_key, verify_secret
from app.core.config import settings
from app.core.exceptions import (
    ErrorCode,
    ForbiddenException,
    RateLimitExceededError,
    UnauthorizedException,
)
from app.core.logging import get_logger
from app.core.redis_client import incr_fixed_window
from app.db.database import get_db, utcnow
from app.db.models.api_key import ApiKey

logger = get_logger(__name__)

_RATE_LIMIT_PREFIX = "ratelimit:api"


@dataclass(frozen=True)
class ApiKeyContext:
    api_key_id: str
    project_id: str
    public_key: str


def _parse_bearer(authorization: str | None) -> tuple[str, str]:
    if not authorization:
        raise UnauthorizedException(
            "Missing Authorization header",
            error_code=ErrorCode.AUTH_MISSING_HEADER,
        )
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise UnauthorizedException(
            "Authorization header must be 'Bearer <api key>'",
            error_code=ErrorCode.AUTH_INVALID_FORMAT,
        )
    try:
        return split_api_key(token.strip())
    except ValueError as e:
        raise UnauthorizedException(str(e), error_code=ErrorCode.AUTH_INVALID_FORMAT) from None


async def enforce_rate_limit(api_key_id: str, response: Response) -> None:
    """
    Fixed window per API key; the counter lives in Redis.

    Sets X-RateLimit-* headers on the response. An unreachable Redis admits
    the request uncounted.
    """
    limit = settings.API_RATE_LIMIT_MAX_REQUESTS
    window = settings.API_RATE_LIMIT_WINDOW_SECONDS
    now = time.time()
    window_index = int(now // window)
    reset_at = (window_index + 1) * window
    key = f"{_RATE_LIMIT_PREFIX}:{api_key_id}:{window_index}"

    try:
        count = await incr_fixed_window(key, window)
    except (RedisError, OSError) as e:
        # limiter unavailable: admit the request rather than fail the API
        logger.warning(
            "Rate limiter unavailable, request not counted",
            extra_data={"api_key_id": api_key_id, "error": str(e)},
        )
        return

    remaining = max(0, limit - count)
    headers = {
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Remaining": str(remaining),
        "X-RateLimit-Reset": str(reset_at),
    }

    if count > limit:
        retry_after = max(1, math.ceil(reset_at - now))
        logger.warning(
            "API key rate limit exceeded",
            extra_data={"api_key_id": api_key_id, "limit": limit, "window_seconds": window},
        )
        raise RateLimitExceededError(
            limit=limit,
            window_seconds=window,
            retry_after_seconds=retry_after,
            headers=headers,
        )

    response.headers.update(headers)


async def require_api_key(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
) -> ApiKeyContext:
    """Authenticate the caller's API key, apply the rate limit, return its project"""
    public_key, secret = _parse_bearer(request.headers.get("Authorization"))

    result = await db.execute(select(ApiKey).where(ApiKey.public_key == public_key))
    api_key = result.scalar_one_or_none()

    if api_key is None or not verify_secret(secret, api_key.secret_hash):
        logger.warning("Invalid API key", extra_data={"public_key": public_key})
        raise ForbiddenException("Invalid API key", error_code=ErrorCode.AUTH_INVALID_KEY)

    if not api_key.is_active:
        logger.warning(
            "Revoked API key used",
            extra_data={"api_key_id": api_key.id, "project_id": api_key.project_id},
        )
        raise ForbiddenException("API key has been revoked", error_code=ErrorCode.AUTH_INVALID_KEY)

    context = ApiKeyContext(
        api_key_id=api_key.id,
        project_id=api_key.project_id,
        public_key=api_key.public_key,
    )

    await enforce_rate_limit(context.api_key_id, response)

    await db.execute(
        update(ApiKey)
        .where(ApiKey.id == context.api_key_id)
        .values(last_used_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    request.state.project_id = context.project_id
    return context
