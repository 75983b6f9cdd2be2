"""
Provider status webhooks.

GET  /webhooks/{provider}  verification handshake (Meta style; hub.* params)
POST /webhooks/{provider}  status callbacks, applied by the reconciler

POST always answers 200 {"status": "ok"}: a provider that gets an error
retries the same callback, and nothing it resends would fix a payload we
could not use.
"""
from __future__ import annotations

import hashlib
import hmac
import json

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse

from app.core.config import settings
from app.core.logging import get_logger
from app.api.dependencies.services import get_webhook_reconciler
from app.domain.services.webhook_reconciler import WebhookReconciler

logger = get_logger(__name__)

router = APIRouter()

_OK = {"status": "ok"}


def _first_param(request: Request, *names: str) -> str | None:
    for name in names:
        value = request.query_params.get(name)
        if value:
            return value
    return None


def _verify_signature(body: bytes, signature_header: str, app_secret: str) -> bool:
    """HMAC-SHA256 of the raw body, header format ``sha256=<hex>``"""
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(
        app_secret.encode(),
        body,
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(signature_header[7:], expected)


@router.get(
    "/{provider}",
    summary="Webhook verification handshake",
    response_class=PlainTextResponse,
    responses={
        200: {"description": "Challenge echoed back"},
        400: {"description": "Missing handshake parameters"},
        403: {"description": "Verification failed"},
    },
)
async def verify_webhook(provider: str, request: Request) -> PlainTextResponse:
    mode = _first_param(request, "hub.mode", "mode")
    verify_token = _first_param(request, "hub.verify_token", "verify_token")
    challenge = _first_param(request, "hub.challenge", "challenge")

    if not mode or not verify_token or not challenge:
        raise HTTPException(status_code=400, detail="Missing verification parameters")

    expected = settings.WEBHOOK_VERIFY_TOKEN
    if (
        mode == "subscribe"
        and expected
        and hmac.compare_digest(verify_token.encode(), expected.encode())
    ):
        logger.info("Webhook verified", extra_data={"provider": provider})
        return PlainTextResponse(challenge)

    logger.warning(
        "Webhook verification failed",
        extra_data={"provider": provider, "mode": mode},
    )
    raise HTTPException(status_code=403, detail="Verification failed")


async def _read_payload(request: Request, body: bytes):
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        return dict(form)
    return json.loads(body) if body else None


@router.post(
    "/{provider}",
    summary="Provider status callback",
    responses={200: {"description": "Accepted (always)"}},
)
async def receive_webhook(
    provider: str,
    request: Request,
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
) -> dict:
    body = await request.body()

    if provider == "whatsapp" and settings.WHATSAPP_APP_SECRET:
        signature = request.headers.get("X-Hub-Signature-256", "")
        if not _verify_signature(body, signature, settings.WHATSAPP_APP_SECRET):
            logger.warning(
                "Webhook signature mismatch, payload dropped",
                extra_data={"provider": provider},
            )
            return _OK

    try:
        payload = await _read_payload(request, body)
    except (ValueError, UnicodeDecodeError) as e:
        logger.warning(
            "Webhook body is not valid JSON, payload dropped",
            extra_data={"provider": provider, "error": str(e)},
        )
        return _OK

    try:
        await reconciler.handle(provider, payload)
    except Exception as e:
        # the provider gets its 200 regardless; the failure is only logged
        logger.error(
            "Webhook processing failed",
            extra_data={"provider": provider, "error": str(e)},
            exc_info=True,
        )

    return _OK
