import json
import logging
from typing import Any, Dict, Optional

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..models import StripeEventLog
from ..schemas import StripeEventStatus, WebhookAck
from ..services.stripe_events import StripeEventProcessor

router = APIRouter()
logger = logging.getLogger(__name__)


def verify_stripe_event(body: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """Check the ``Stripe-Signature`` header against the raw body and return the event as a dict.

    Raises a 400 for a missing or bad signature (stale timestamps included) and
    for bodies that are not JSON, so Stripe does not keep redelivering them.
    """
    if not signature:
        raise HTTPException(status_code=400, detail="Missing Stripe signature")
    try:
        stripe.Webhook.construct_event(
            body,
            signature,
            settings.stripe_webhook_secret,
            tolerance=settings.stripe_webhook_tolerance,
        )
        return json.loads(body)
    except ValueError as e:
        logger.warning(f"Rejected webhook with invalid payload: {e}")
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Rejected webhook with invalid signature: {e}")
        raise HTTPException(status_code=400, detail="Invalid signature")


@router.post("/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    stripe_signature: str = Header(None, alias="stripe-signature"),
):
    """Credit paid checkouts. Safe under Stripe's at-least-once delivery."""
    event = verify_stripe_event(await request.body(), stripe_signature)
    logger.info(f"Received Stripe webhook {event.get('id')} ({event.get('type')})")

    success, message = await StripeEventProcessor(db).process_event(event)
    if success:
        return WebhookAck(status="success", message=message)

    # Malformed events are not worth a redelivery; anything else is, so answer 5xx
    status_code = 400 if message.startswith("Invalid event data") else 500
    logger.error(f"Webhook {event.get('id')} not processed ({status_code}): {message}")
    raise HTTPException(status_code=status_code, detail=message)


@router.get("/events/{event_id}/status", response_model=StripeEventStatus)
def get_event_status(event_id: str, db: Session = Depends(get_db)):
    """Processing state of a Stripe event, for support and the retry sweep."""
    event_log = db.execute(
        select(StripeEventLog).where(StripeEventLog.stripe_event_id == event_id)
    ).scalar_one_or_none()
    if event_log is None:
        raise HTTPException(status_code=404, detail="Event not found")
    return StripeEventStatus.model_validate(event_log)
