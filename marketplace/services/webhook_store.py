import logging

from sqlalchemy.orm import Session

from marketplace.models import WebhookEvent
from marketplace.models.enums import WebhookEventStatus
from marketplace.services.clock import utcnow

logger = logging.getLogger(__name__)


class WebhookEventStore:
    """Idempotency fence for provider events, keyed by the provider's event id.

    ``record`` is meant to run inside the same unit of work as the mutation the
    event triggers, so an event is marked processed exactly when its effects
    are committed.
    """

    def get(self, db: Session, event_id: str) -> WebhookEvent | None:
        return db.query(WebhookEvent).filter(WebhookEvent.event_id == event_id).first()

    def is_processed(self, db: Session, event_id: str) -> bool:
        event = self.get(db, event_id)
        return event is not None and event.status == WebhookEventStatus.PROCESSED.value

    def record(
        self,
        db: Session,
        event_id: str,
        event_type: str,
        payment_intent_id: str | None = None,
        status: WebhookEventStatus = WebhookEventStatus.PROCESSED,
        payload: dict | None = None,
    ) -> tuple[WebhookEvent, bool]:
        """Insert or upgrade the event row; returns ``(event, created)``.

        ``created`` is False when the event was already processed, in which
        case nothing is written. The insert is flushed immediately so a
        concurrent delivery of the same event fails on the unique constraint
        with ``IntegrityError`` instead of applying twice.
        """
        now = utcnow() if status is WebhookEventStatus.PROCESSED else None
        existing = self.get(db, event_id)
        if existing is not None:
            if existing.status == WebhookEventStatus.PROCESSED.value:
                logger.info("Webhook event %s already processed", event_id)
                return existing, False
            existing.status = status.value
            existing.payload = payload if payload is not None else existing.payload
            existing.payment_intent_id = payment_intent_id or existing.payment_intent_id
            existing.error_message = None
            existing.processed_at = now
            db.flush()
            return existing, True

        event = WebhookEvent(
            event_id=event_id,
            event_type=event_type,
            payment_intent_id=payment_intent_id,
            status=status.value,
            payload=payload,
            processed_at=now,
        )
        db.add(event)
        db.flush()
        return event, True

    def record_failure(
        self,
        db: Session,
        event_id: str,
        event_type: str,
        error_message: str,
        payment_intent_id: str | None = None,
        payload: dict | None = None,
    ) -> WebhookEvent | None:
        """Store a failed delivery in its own transaction so a redelivery is retried.

        A processed event is never downgraded.
        """
        db.rollback()
        event = self.get(db, event_id)
        if event is not None and event.status == WebhookEventStatus.PROCESSED.value:
            return event

        if event is None:
            event = WebhookEvent(event_id=event_id, event_type=event_type)
            db.add(event)
        event.status = WebhookEventStatus.FAILED.value
        event.payment_intent_id = payment_intent_id or event.payment_intent_id
        event.payload = payload if payload is not None else event.payload
        event.error_message = error_message[:2000]
        db.commit()
        logger.warning("Webhook event %s (%s) recorded as failed: %s", event_id, event_type, error_message)
        return event
