"""
EventSwap Platform - Payment Processor Webhook
Receives asynchronous charge events. Authenticity is checked with an
HMAC-SHA256 signature when WEBHOOK_SECRET is configured, otherwise with the
shared WEBHOOK_TOKEN header. Replays are acknowledged without side effects.
"""
import hashlib
import hmac
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError as PydanticValidationError

from eventswap.config import get_settings
from eventswap.dependencies import get_escrow_service
from eventswap.schemas.escrow import PaymentWebhook, WebhookAck
from eventswap.services.escrow import IGNORED, EscrowService

logger = logging.getLogger("eventswap.webhooks")

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])

SIGNATURE_HEADER = "x-webhook-signature"
TOKEN_HEADER = "x-webhook-token"

SETTLED_EVENTS = {"PAYMENT_CONFIRMED", "PAYMENT_RECEIVED"}
FAILED_EVENTS = {"PAYMENT_FAILED", "PAYMENT_OVERDUE"}
REFUNDED_EVENTS = {"PAYMENT_REFUNDED"}


def verify_webhook(request: Request, raw_body: bytes) -> bool:
    settings = get_settings()

    signature = request.headers.get(SIGNATURE_HEADER)
    if settings.WEBHOOK_SECRET and signature:
        expected = hmac.new(settings.WEBHOOK_SECRET.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
        if hmac.compare_digest(signature, expected):
            return True
        logger.error("Webhook HMAC signature mismatch")
        return False

    if not settings.WEBHOOK_TOKEN:
        return False
    token = request.headers.get(TOKEN_HEADER, "")
    return hmac.compare_digest(token, settings.WEBHOOK_TOKEN)


@router.post("/payments", response_model=WebhookAck)
async def payment_webhook(request: Request, escrow: EscrowService = Depends(get_escrow_service)):
    raw_body = await request.body()
    if not verify_webhook(request, raw_body):
        logger.warning("🚫 Rejected unauthenticated payment webhook from %s",
                       request.client.host if request.client else "unknown")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook credentials")

    try:
        body = json.loads(raw_body or b"{}")
        event = PaymentWebhook.model_validate(body)
    except (ValueError, PydanticValidationError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Malformed webhook: {exc}")

    external_id = event.payment.id
    logger.info("📬 Webhook %s for charge %s", event.event, external_id)

    if event.event in SETTLED_EVENTS:
        result = await escrow.on_payment_settled(external_id, event.event, body)
    elif event.event in FAILED_EVENTS:
        reason = event.payment.failure_reason or event.event.lower()
        result = await escrow.on_payment_failed(external_id, reason, event.event, body)
    elif event.event in REFUNDED_EVENTS:
        result = await escrow.on_payment_refunded(external_id, event.event, body)
    else:
        logger.info("Webhook event %s not handled", event.event)
        result = IGNORED

    return WebhookAck(result=result)
