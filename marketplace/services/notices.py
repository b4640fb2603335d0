"""Immutable snapshots handed to post-commit effects.

Effects run after the session that produced them may be closed and on another
thread, so they receive these plain values instead of ORM instances.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from marketplace.models import Order, OrderItem, User
from marketplace.services.clock import utcnow


@dataclass(frozen=True)
class Contact:
    user_id: int
    email: str
    name: str


@dataclass(frozen=True)
class OrderLineNotice:
    product_name: str
    seller_id: int
    quantity: int
    unit_price: Decimal
    subtotal: Decimal


@dataclass(frozen=True)
class OrderNotice:
    order_id: int
    buyer: Contact | None
    status: str
    payment_method: str
    payment_status: str
    total_amount: Decimal
    shipping_cost: Decimal
    tax_amount: Decimal
    shipping_address: str
    placed_at: datetime
    invoice_number: str | None
    lines: tuple[OrderLineNotice, ...]
    sellers: tuple[Contact, ...]

    def lines_for_seller(self, seller_id: int) -> list[OrderLineNotice]:
        return [line for line in self.lines if line.seller_id == seller_id]


@dataclass(frozen=True)
class PayoutNotice:
    seller_id: int
    total_amount: Decimal
    records_count: int
    payout_reference: str


def format_address(address: dict | None) -> str:
    if not address:
        return ""
    street = ", ".join(part for part in (address.get("line1"), address.get("line2")) if part)
    locality = " ".join(part for part in (address.get("state"), address.get("postal_code")) if part)
    parts = [address.get("full_name"), street, address.get("city"), locality, address.get("country")]
    return ", ".join(part for part in parts if part)


def _contact(user: User | None) -> Contact | None:
    if user is None:
        return None
    return Contact(user_id=user.id, email=user.email, name=user.display_name or user.email)


def build_order_notice(db: Session, order: Order) -> OrderNotice:
    items = db.query(OrderItem).filter(OrderItem.order_id == order.id).order_by(OrderItem.id).all()
    seller_ids = sorted({item.seller_id for item in items})
    sellers = db.query(User).filter(User.id.in_(seller_ids)).all() if seller_ids else []
    buyer = db.query(User).filter(User.id == order.buyer_id).first()

    return OrderNotice(
        order_id=order.id,
        buyer=_contact(buyer),
        status=order.status,
        payment_method=order.payment_method,
        payment_status=order.payment_status,
        total_amount=Decimal(order.total_amount),
        shipping_cost=Decimal(order.shipping_cost),
        tax_amount=Decimal(order.tax_amount),
        shipping_address=format_address(order.shipping_address),
        placed_at=order.placed_at or utcnow(),
        invoice_number=order.invoice_number,
        lines=tuple(
            OrderLineNotice(
                product_name=item.product_name_snapshot,
                seller_id=item.seller_id,
                quantity=item.quantity,
                unit_price=Decimal(item.unit_price_snapshot),
                subtotal=Decimal(item.subtotal),
            )
            for item in items
        ),
        sellers=tuple(contact for contact in (_contact(s) for s in sellers) if contact),
    )
