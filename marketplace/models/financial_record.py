from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.sql import func

from marketplace.models.database import Base


class FinancialRecord(Base):
    """One seller's share of one order item, net of fees."""

    __tablename__ = "financial_records"

    id = Column(Integer, primary_key=True, index=True)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    order_item_id = Column(Integer, ForeignKey("order_items.id"), nullable=False, unique=True)
    amount = Column(Numeric(12, 2), nullable=False)
    platform_fee = Column(Numeric(10, 2), nullable=False, default=0)
    processing_fee = Column(Numeric(10, 2), nullable=False, default=0)
    net_amount = Column(Numeric(12, 2), nullable=False)  # amount - platform_fee - processing_fee
    status = Column(String(20), nullable=False, default="pending", index=True)
    payout_id = Column(String(255), nullable=True, index=True)
    payout_method = Column(String(50), nullable=True)
    payout_notes = Column(Text, nullable=True)
    cleared_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
