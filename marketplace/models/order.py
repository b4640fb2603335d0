from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.sql import func

from marketplace.models.database import Base


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="pending")
    payment_method = Column(String(20), nullable=False, default="cod")  # cod | stripe
    payment_status = Column(String(20), nullable=False, default="pending")
    total_amount = Column(Numeric(12, 2), nullable=False)
    shipping_cost = Column(Numeric(12, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(12, 2), nullable=False, default=0)
    shipping_address = Column(JSON, nullable=False)
    notes = Column(Text, nullable=True)
    tracking_number = Column(String(100), nullable=True)
    invoice_number = Column(String(50), nullable=True, unique=True)
    invoice_generated_at = Column(DateTime(timezone=True), nullable=True)
    placed_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    cancelled_at = Column(DateTime(timezone=True), nullable=True)


class OrderItem(Base):
    """Point-in-time snapshot of one product line. Never mutated after insert."""

    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    product_name_snapshot = Column(String(255), nullable=False)
    product_description_snapshot = Column(Text, nullable=True)
    unit_price_snapshot = Column(Numeric(10, 2), nullable=False)
    category_snapshot = Column(String(100), nullable=True)
    quantity = Column(Integer, nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
