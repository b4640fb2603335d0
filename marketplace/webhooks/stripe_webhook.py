import json
import logging
from typing import Annotated

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

from marketplace.config import settings
from marketplace.dependencies import get_payment_service
from marketplace.models import get_db
from marketplace.schemas.webhook_events import (
    ChargeRefunded,
    PaymentCanceled,
    PaymentFailed,
    PaymentSucceeded,
    decode_event,
)
from marketplace.services.errors import MarketplaceError
from marketplace.services.payment_service import PaymentService

router = APIRouter()
logger = logging.getLogger(__name__)


def _dispatch(service: PaymentService, db: Session, event) -> None:
    if isinstance(event, ChargeRefunded):
        service.mark_refunded_by_charge(db, event.charge_id, event)
        return

    order_id = service.resolve_order_id(db, event)
    if order_id is None:
        logger.warning("Stripe event %s (%s) references no known order", event.id, event.type)
        return

    if isinstance(event, PaymentSucceeded):
        service.confirm(db, order_id, event)
    elif isinstance(event, PaymentFailed):
        service.fail(db, order_id, event.failure_reason, event)
    elif isinstance(event, PaymentCanceled):
        service.cancel(db, order_id, event)


@router.post(
    "/stripe",
    summary="Stripe webhook",
)
async def stripe_webhook(
    request: Request,
    db: Annotated[Session, Depends(get_db)],
    service: Annotated[PaymentService, Depends(get_payment_service)],
):
    """
    Stripe sends payment intent and charge events here. The signature is verified
    before the body is read. Every event is applied at most once, keyed by its id;
    redeliveries are acknowledged without side effects.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.warning("STRIPE_WEBHOOK_SECRET is not set, ignoring webhook")
        return {"received": True}

    try:
        stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
    except ValueError as e:
        logger.error("Invalid payload: %s", e)
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError as e:
        logger.error("Invalid signature: %s", e)
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        raw_event = json.loads(payload)
    except ValueError as e:
        logger.error("Invalid payload: %s", e)
        raise HTTPException(status_code=400, detail="Invalid payload")
    if not isinstance(raw_event, dict):
        logger.error("Invalid payload: expected a JSON object, got %s", type(raw_event).__name__)
        raise HTTPException(status_code=400, detail="Invalid payload")

    event_id = raw_event.get("id", "")
    event_type = raw_event.get("type", "")
    try:
        event = decode_event(raw_event)
        if event is None:
            logger.info("Ignoring unhandled Stripe event %s (%s)", event_id, event_type)
            return {"received": True}
        _dispatch(service, db, event)
    except (MarketplaceError, ValidationError) as e:
        logger.warning("Stripe event %s (%s) could not be applied: %s", event_id, event_type, e)
        _record_failure(service, db, raw_event, str(e))
    except Exception as e:
        logger.error("Error processing Stripe event %s (%s): %s", event_id, event_type, e, exc_info=True)
        _record_failure(service, db, raw_event, str(e))

    return {"received": True}


def _record_failure(service: PaymentService, db: Session, raw_event: dict, message: str) -> None:
    event_id = raw_event.get("id")
    if not event_id:
        return
    data_object = (raw_event.get("data") or {}).get("object") or {}
    intent_id = data_object.get("payment_intent") or data_object.get("id")
    service.events.record_failure(
        db,
        event_id,
        raw_event.get("type", ""),
        message,
        payment_intent_id=intent_id if isinstance(intent_id, str) else None,
        payload=raw_event,
    )
