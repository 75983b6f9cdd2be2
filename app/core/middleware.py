"""
FastAPI Middleware and exception handlers

Request order (outermost first):

    SecurityHeaders -> CorrelationId -> RequestLogging -> WebhookRateLimit -> app

Every error response, including a 429 from the webhook limiter and the
generic 500, uses the ``{"error": {"code", "message", "details"}}`` envelope
and carries ``X-Correlation-ID``.
"""
import math
import re
import time
from collections import deque
from typing import Any, Callable

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.logging import (
    get_logger,
    set_correlation_id,
    get_correlation_id
)
from app.core.exceptions import AppException, ErrorCode, RateLimitExceededError
from app.core.validation import mask_recipient

logger = get_logger(__name__)

# phone numbers in a URL path (E.164 or local)
_PHONE_IN_PATH_RE = re.compile(r"(\+?\d{3})\d{4}(\d{3})")

# query params that carry a recipient address
_RECIPIENT_PARAMS = frozenset({"to", "recipient", "phone", "chat_id"})

# caller-supplied ids end up in every log line
_SAFE_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._\-]{1,64}$")

_PROBE_PATHS = frozenset({"/health", "/health/ready"})


def _mask_path_pii(path: str) -> str:
    """Mask the middle digits of phone numbers in a URL path"""
    return _PHONE_IN_PATH_RE.sub(r"\1****\2", path)


def _mask_query_params(request: Request) -> dict[str, str]:
    return {
        key: mask_recipient(value) if key.lower() in _RECIPIENT_PARAMS else value
        for key, value in request.query_params.items()
    }


def _error_response(
    status_code: int,
    body: dict[str, Any],
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=body,
        headers={"X-Correlation-ID": get_correlation_id(), **(headers or {})},
    )


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Takes ``X-Correlation-ID`` (or ``X-Request-ID``) from the caller when it is
    a short token, otherwise generates one, and echoes it on the response.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        incoming = request.headers.get("X-Correlation-ID") or request.headers.get("X-Request-ID")
        if incoming and not _SAFE_CORRELATION_ID_RE.match(incoming):
            incoming = None
        correlation_id = set_correlation_id(incoming)
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One line per finished request, with recipients masked.

    Health probes log at DEBUG; 4xx at WARNING; 5xx at ERROR. The project id
    is included once the API key dependency has resolved it.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        safe_path = _mask_path_pii(request.url.path)
        fields: dict[str, Any] = {
            "method": request.method,
            "path": safe_path,
            "query_params": _mask_query_params(request),
            "client_host": request.client.host if request.client else None,
        }

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {safe_path}",
                extra_data={
                    **fields,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                    "error": str(e),
                },
                exc_info=True,
            )
            raise

        fields["status_code"] = response.status_code
        fields["duration_ms"] = round((time.perf_counter() - started) * 1000, 1)
        project_id = getattr(request.state, "project_id", None)
        if project_id:
            fields["project_id"] = project_id

        if response.status_code >= 500:
            log = logger.error
        elif response.status_code >= 400:
            log = logger.warning
        elif request.url.path in _PROBE_PATHS:
            log = logger.debug
        else:
            log = logger.info
        log(f"{request.method} {safe_path} -> {response.status_code}", extra_data=fields)
        return response


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle application exceptions"""
    logger.warning(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": _mask_path_pii(request.url.path),
        }
    )

    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitExceededError):
        headers["Retry-After"] = str(exc.retry_after_seconds)
        headers.update(exc.headers)
    return _error_response(exc.status_code, exc.to_dict(), headers)


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError
) -> JSONResponse:
    """Request body/query validation -> 400 in the standard envelope"""
    errors = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part not in ("body", "query")),
            "message": err.get("msg", ""),
        }
        for err in exc.errors()
    ]
    logger.info(
        "Request validation failed",
        extra_data={"path": _mask_path_pii(request.url.path), "errors": errors},
    )

    message = errors[0]["message"] if errors else "Invalid request"
    if errors and errors[0]["field"]:
        message = f"{errors[0]['field']}: {message}"

    return _error_response(400, {
        "error": {
            "code": ErrorCode.VALIDATION_ERROR.value,
            "message": message,
            "details": {"errors": errors},
        }
    })


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unexpected exceptions: full details in the log, none in the response"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": _mask_path_pii(request.url.path),
        },
        exc_info=True
    )

    return _error_response(500, {
        "error": {
            "code": ErrorCode.INTERNAL_ERROR.value,
            "message": "An unexpected error occurred",
            "details": {}
        }
    })


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Adds security headers to every response.

    - X-Content-Type-Options: nosniff, always
    - Cache-Control: no-store on /api responses (the message log holds recipients)
    - Content-Security-Policy: upgrade-insecure-requests and HSTS, except in DEBUG
      so local HTTP development keeps working
    """

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        if request.url.path.startswith("/api/"):
            response.headers.setdefault("Cache-Control", "no-store")

        if not self._debug:
            response.headers["Content-Security-Policy"] = "upgrade-insecure-requests"
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )

        return response


class WebhookRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window limit on /webhooks, per client IP and provider.

    Over the limit the verification handshake (GET) gets a 429. A status
    callback (POST) is logged and dropped, and still answered 200.

    A burst of callbacks from one provider does not use up the budget of
    another provider behind the same address. Hits live in memory, so the
    limit is per API process.
    """

    def __init__(
        self,
        app: FastAPI,
        *,
        max_requests: int = 100,
        window_seconds: int = 60,
    ) -> None:
        super().__init__(app)
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        # (ip, provider) -> hit timestamps, oldest first
        self._hits: dict[tuple[str, str], deque[float]] = {}

    @staticmethod
    def _bucket_key(request: Request) -> tuple[str, str]:
        client_ip = request.client.host if request.client else "unknown"
        segments = request.url.path.split("/")
        provider = segments[2] if len(segments) > 2 and segments[2] else "-"
        return client_ip, provider

    def _prune(self, key: tuple[str, str], now: float) -> deque[float]:
        """Drop hits outside the window; forget the key once it is empty"""
        hits = self._hits.get(key)
        if hits is None:
            return deque()
        cutoff = now - self._window_seconds
        while hits and hits[0] < cutoff:
            hits.popleft()
        if not hits:
            del self._hits[key]
        return hits

    def _retry_after(self, hits: deque[float], now: float) -> int:
        return max(1, math.ceil(hits[0] + self._window_seconds - now))

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not request.url.path.startswith("/webhooks"):
            return await call_next(request)

        key = self._bucket_key(request)
        now = time.time()
        hits = self._prune(key, now)

        if len(hits) >= self._max_requests:
            retry_after = self._retry_after(hits, now)
            logger.warning(
                "Webhook rate limit exceeded",
                extra_data={
                    "client_ip": key[0],
                    "provider": key[1],
                    "method": request.method,
                    "limit": self._max_requests,
                    "window_seconds": self._window_seconds,
                },
            )
            if request.method == "POST":
                # a status callback is always acknowledged, the events are dropped
                return JSONResponse(status_code=200, content={"status": "ok"})
            exc = RateLimitExceededError(
                limit=self._max_requests,
                window_seconds=self._window_seconds,
                retry_after_seconds=retry_after,
            )
            return _error_response(429, exc.to_dict(), {"Retry-After": str(retry_after)})

        self._hits.setdefault(key, deque()).append(now)
        return await call_next(request)


def setup_middleware(app: FastAPI) -> None:
    from app.core.config import settings

    # the last middleware added is the outermost
    app.add_middleware(
        WebhookRateLimitMiddleware,
        max_requests=settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
