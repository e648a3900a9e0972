"""
Payment processor webhook route.

Every handled delivery answers 200 so the processor stops redelivering;
replays answer 200 with ``message``. Malformed payloads answer 400 and
missing references 404 (the processor redelivers those later).
"""

import hashlib
import hmac
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from config import settings
from database import get_db
from domain.exceptions import ValidationError
from schemas import WebhookResult
from services.payment_capture import handle_webhook_event
from services.scheduler import Scheduler, get_scheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

SIGNATURE_HEADER = "paypal-transmission-sig"


def verify_signature(body: bytes, signature: str, secret: str) -> bool:
    """HMAC-SHA256 of the raw body, hex encoded, optional ``sha256=`` prefix."""
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


@router.post("/paypal", response_model=WebhookResult, response_model_exclude_none=True)
async def paypal_webhook(
    request: Request,
    db: Session = Depends(get_db),
    scheduler: Scheduler = Depends(get_scheduler),
):
    """Receive a PayPal event and fulfil it exactly once."""
    body = await request.body()

    if settings.PAYPAL_WEBHOOK_SECRET:
        signature = request.headers.get(SIGNATURE_HEADER, "")
        if not signature or not verify_signature(body, signature, settings.PAYPAL_WEBHOOK_SECRET):
            logger.warning("Rejected webhook with missing or invalid signature")
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        payload = json.loads(body)
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON")
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")

    # Sync ORM work stays off the event loop
    return await run_in_threadpool(handle_webhook_event, db, payload, scheduler.now())
