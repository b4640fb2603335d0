from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.sql import func

from marketplace.models.database import Base


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, unique=True)
    provider = Column(String(50), nullable=False)  # stripe | cod
    provider_payment_id = Column(String(255), nullable=True, index=True)  # PaymentIntent id
    client_secret = Column(String(255), nullable=True)
    provider_charge_id = Column(String(255), nullable=True, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    status = Column(String(20), nullable=False, default="pending")
    payment_method = Column(JSON, nullable=True)
    failure_reason = Column(Text, nullable=True)
    refund_id = Column(String(255), nullable=True)
    refunded_amount = Column(Numeric(12, 2), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
