from sqlalchemy import JSON, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from marketplace.models.database import Base


class WebhookEvent(Base):
    """Idempotency fence and audit log for provider events, keyed by event id."""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    payment_intent_id = Column(String(255), nullable=True, index=True)
    status = Column(String(20), nullable=False, default="pending")  # pending | processed | failed
    payload = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
