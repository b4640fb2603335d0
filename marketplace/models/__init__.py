from marketplace.models.database import Base, get_db
from marketplace.models.user import User
from marketplace.models.product import Product
from marketplace.models.cart import CartItem
from marketplace.models.order import Order, OrderItem
from marketplace.models.financial_record import FinancialRecord
from marketplace.models.payment import Payment
from marketplace.models.webhook_event import WebhookEvent

__all__ = [
    "Base",
    "get_db",
    "User",
    "Product",
    "CartItem",
    "Order",
    "OrderItem",
    "FinancialRecord",
    "Payment",
    "WebhookEvent",
]
