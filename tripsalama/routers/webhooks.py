"""
PSP webhook: POST /v1/payments/webhook

The PSP reports the outcome of payment intents here. When
``psp_webhook_secret`` is set the body must carry a matching HMAC-SHA256
hex digest in ``X-PSP-Signature``.
"""
import hashlib
import hmac
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from tripsalama.config import get_settings
from tripsalama.database import get_db
from tripsalama.services import billing

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter(prefix="/v1/payments", tags=["Payments"])

SUCCEEDED = "payment_intent.succeeded"
FAILED = "payment_intent.payment_failed"


def signature_for(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _verify_signature(body: bytes, signature: str | None) -> None:
    if not settings.psp_webhook_secret:
        return
    expected = signature_for(body, settings.psp_webhook_secret)
    if not signature or not hmac.compare_digest(expected, signature.strip().lower()):
        logger.warning("Webhook rejected: bad signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")


@router.post("/webhook")
async def psp_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    body = await request.body()
    _verify_signature(body, request.headers.get("X-PSP-Signature"))

    try:
        event = json.loads(body)
        event_type = event["type"]
        intent = event["data"]["object"]
        intent_id = intent["id"]
    except (ValueError, KeyError, TypeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload")

    if event_type == SUCCEEDED:
        await billing.confirm_payment(intent_id, db)
    elif event_type == FAILED:
        error = (intent.get("last_payment_error") or {}).get("message")
        await billing.fail_payment(intent_id, db, error_message=error)
    else:
        logger.info("Webhook event %s ignored", event_type)
    return {"received": True}
