import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from marketplace.config import Settings, settings as default_settings
from marketplace.models import CartItem, Order, OrderItem, Payment, User
from marketplace.models.enums import OrderStatus, PaymentMethod, PaymentStatus, UserRole
from marketplace.services.clock import utcnow
from marketplace.services.effects import EffectsDispatcher
from marketplace.services.email_service import Mailer
from marketplace.services.errors import (
    EmptyCartError,
    InactiveBuyerError,
    InvalidTransitionError,
    NotFoundError,
    OrderTimeoutError,
    OrderValidationError,
    PermissionDeniedError,
)
from marketplace.services.inventory import InventoryGuard
from marketplace.services.ledger import FinancialLedger
from marketplace.services.notices import build_order_notice
from marketplace.services.notification_service import Notifier
from marketplace.services.pricing import calculate_totals, to_money
from marketplace.services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Forward-only fulfilment path. CANCELLED is reached through cancel_order only.
STATUS_FLOW = (
    OrderStatus.PENDING.value,
    OrderStatus.CONFIRMED.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
)
NON_CANCELLABLE = frozenset(
    {OrderStatus.SHIPPED.value, OrderStatus.DELIVERED.value, OrderStatus.CANCELLED.value}
)
INITIAL_PAYMENT_STATUS = {
    PaymentMethod.COD: PaymentStatus.PENDING,
    PaymentMethod.STRIPE: PaymentStatus.PROCESSING,
}

_checkout_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="checkout")


def run_with_deadline(
    fn: Callable[..., T],
    timeout: float,
    *args: Any,
    executor: Executor | None = None,
    **kwargs: Any,
) -> T:
    """Run ``fn`` on a worker thread and wait at most ``timeout`` seconds.

    On expiry, work still queued behind busy workers is cancelled and never
    runs. Work that already started keeps running and its transaction may
    still commit; only the caller stops waiting.
    """
    future = (executor or _checkout_executor).submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        name = getattr(fn, "__name__", fn)
        if future.cancel():
            logger.warning("%s exceeded its %ss deadline before starting; cancelled", name, timeout)
        else:
            logger.warning("%s exceeded its %ss deadline", name, timeout)
        raise OrderTimeoutError(timeout) from None


@dataclass(frozen=True)
class OrderLine:
    product_id: int
    quantity: int


def _merge_lines(lines: list[OrderLine]) -> list[OrderLine]:
    merged: dict[int, int] = {}
    for line in lines:
        if line.quantity <= 0:
            raise OrderValidationError(f"Quantity for product {line.product_id} must be at least 1")
        merged[line.product_id] = merged.get(line.product_id, 0) + line.quantity
    return [OrderLine(product_id=pid, quantity=qty) for pid, qty in merged.items()]


class OrderService:
    """Turns a buyer's lines or cart into an order, atomically.

    Order, items, ledger records, stock reservations and the payment row are
    written in one unit of work; notifications and emails go out only after
    it commits.
    """

    def __init__(
        self,
        ledger: FinancialLedger,
        inventory: InventoryGuard | None = None,
        dispatcher: EffectsDispatcher | None = None,
        notifier: Notifier | None = None,
        mailer: Mailer | None = None,
        config: Settings | None = None,
    ):
        self.ledger = ledger
        self.inventory = inventory or InventoryGuard()
        self.dispatcher = dispatcher
        self.notifier = notifier or Notifier()
        self.mailer = mailer or Mailer()
        self.config = config or default_settings

    def place_order(
        self,
        db: Session,
        buyer_id: int,
        lines: list[OrderLine],
        shipping_address: dict,
        payment_method: PaymentMethod = PaymentMethod.COD,
        notes: str | None = None,
    ) -> Order:
        with UnitOfWork(db, self.dispatcher) as uow:
            order = self._create_order(db, uow, buyer_id, lines, shipping_address, payment_method, notes)
        logger.info("Order %s placed by buyer %s", order.id, buyer_id)
        return order

    def place_order_from_cart(
        self,
        db: Session,
        buyer_id: int,
        shipping_address: dict,
        payment_method: PaymentMethod = PaymentMethod.COD,
        notes: str | None = None,
    ) -> Order:
        with UnitOfWork(db, self.dispatcher) as uow:
            cart_items = (
                db.query(CartItem)
                .filter(CartItem.user_id == buyer_id, CartItem.is_active.is_(True))
                .order_by(CartItem.id)
                .all()
            )
            if not cart_items:
                raise EmptyCartError()

            lines = [OrderLine(product_id=item.product_id, quantity=item.quantity) for item in cart_items]
            order = self._create_order(db, uow, buyer_id, lines, shipping_address, payment_method, notes)

            db.query(CartItem).filter(CartItem.id.in_([item.id for item in cart_items])).delete(
                synchronize_session=False
            )
        logger.info("Order %s placed from cart by buyer %s", order.id, buyer_id)
        return order

    def place_order_from_cart_with_deadline(
        self,
        session_factory: sessionmaker,
        buyer_id: int,
        shipping_address: dict,
        payment_method: PaymentMethod = PaymentMethod.COD,
        notes: str | None = None,
        timeout: float | None = None,
    ) -> int:
        """Bounded-time checkout; returns the new order id or raises OrderTimeoutError."""
        timeout = self.config.ORDER_TIMEOUT_SECONDS if timeout is None else timeout

        def checkout() -> int:
            db = session_factory()
            try:
                order = self.place_order_from_cart(db, buyer_id, shipping_address, payment_method, notes)
                return order.id
            finally:
                db.close()

        return run_with_deadline(checkout, timeout)

    def _create_order(
        self,
        db: Session,
        uow: UnitOfWork,
        buyer_id: int,
        lines: list[OrderLine],
        shipping_address: dict,
        payment_method: PaymentMethod,
        notes: str | None,
    ) -> Order:
        if not lines:
            raise OrderValidationError("Order must contain at least one item")
        lines = _merge_lines(lines)
        payment_method = PaymentMethod(payment_method)

        buyer = db.query(User).filter(User.id == buyer_id).first()
        if buyer is None:
            raise NotFoundError("Buyer", buyer_id)
        if not buyer.is_active:
            raise InactiveBuyerError(buyer_id)

        # Validate every line before the first write so one bad line rejects the order.
        products = [self.inventory.check(db, line.product_id, line.quantity) for line in lines]
        subtotals = [to_money(product.price * line.quantity) for product, line in zip(products, lines)]
        totals = calculate_totals(
            subtotals,
            flat_fee=self.config.SHIPPING_FLAT_FEE,
            free_threshold=self.config.FREE_SHIPPING_THRESHOLD,
            tax_rate_percent=self.config.TAX_RATE,
        )
        payment_status = INITIAL_PAYMENT_STATUS[payment_method]

        order = Order(
            buyer_id=buyer_id,
            status=OrderStatus.PENDING.value,
            payment_method=payment_method.value,
            payment_status=payment_status.value,
            total_amount=totals.total_amount,
            shipping_cost=totals.shipping_cost,
            tax_amount=totals.tax_amount,
            shipping_address=shipping_address,
            notes=notes,
            placed_at=utcnow(),
        )
        db.add(order)
        db.flush()

        for product, line, subtotal in zip(products, lines, subtotals):
            self.inventory.reserve(db, product.id, line.quantity)
            item = OrderItem(
                order_id=order.id,
                product_id=product.id,
                seller_id=product.seller_id,
                product_name_snapshot=product.name,
                product_description_snapshot=product.description,
                unit_price_snapshot=to_money(product.price),
                category_snapshot=product.category,
                quantity=line.quantity,
                subtotal=subtotal,
            )
            db.add(item)
            db.flush()
            db.add(self.ledger.derive_record(item))

        db.add(
            Payment(
                order_id=order.id,
                provider=payment_method.value,
                amount=totals.total_amount,
                currency=self.config.CURRENCY,
                status=payment_status.value,
            )
        )
        db.flush()

        notice = build_order_notice(db, order)
        uow.add_effect("notify_order_placed", self.notifier.order_placed, notice)
        uow.add_effect("email_order_confirmation", self.mailer.send_order_confirmation, notice)
        uow.add_effect("email_seller_new_order", self.mailer.send_seller_new_order, notice)
        return order

    def cancel_order(self, db: Session, order_id: int, actor: User) -> Order:
        with UnitOfWork(db, self.dispatcher) as uow:
            order = db.query(Order).filter(Order.id == order_id).with_for_update().first()
            if order is None:
                raise NotFoundError("Order", order_id)
            if order.buyer_id != actor.id:
                raise PermissionDeniedError("Only the buyer can cancel this order")
            if order.status in NON_CANCELLABLE:
                raise InvalidTransitionError("order", order.status, OrderStatus.CANCELLED.value)

            previous = order.status
            for item in db.query(OrderItem).filter(OrderItem.order_id == order.id).all():
                self.inventory.release(db, item.product_id, item.quantity)
            self.ledger.cancel_for_order(db, order.id)

            order.status = OrderStatus.CANCELLED.value
            order.cancelled_at = utcnow()

            notice = build_order_notice(db, order)
            uow.add_effect("notify_order_cancelled", self.notifier.order_status_changed, notice, previous)
            uow.add_effect("email_order_cancelled", self.mailer.send_status_update, notice)

        logger.info("Order %s cancelled by buyer %s", order_id, actor.id)
        return order

    def update_status(
        self,
        db: Session,
        order_id: int,
        target: OrderStatus,
        actor: User,
        tracking_number: str | None = None,
        notes: str | None = None,
    ) -> Order:
        target = OrderStatus(target)
        if target is OrderStatus.CANCELLED:
            raise OrderValidationError("Use the cancel endpoint to cancel an order")

        with UnitOfWork(db, self.dispatcher) as uow:
            order = db.query(Order).filter(Order.id == order_id).with_for_update().first()
            if order is None:
                raise NotFoundError("Order", order_id)
            if not self._can_fulfil(db, order, actor):
                raise PermissionDeniedError("You cannot update this order")

            previous = order.status
            if previous not in STATUS_FLOW or STATUS_FLOW.index(target.value) <= STATUS_FLOW.index(previous):
                raise InvalidTransitionError("order", previous, target.value)

            order.status = target.value
            if tracking_number:
                order.tracking_number = tracking_number
            if notes:
                order.notes = f"{order.notes}\n{notes}" if order.notes else notes
            if target is OrderStatus.DELIVERED:
                self.ledger.clear_for_order(db, order.id)

            notice = build_order_notice(db, order)
            uow.add_effect("notify_order_status", self.notifier.order_status_changed, notice, previous)
            uow.add_effect(
                "email_order_status", self.mailer.send_status_update, notice, order.tracking_number
            )

        logger.info("Order %s moved from %s to %s by user %s", order_id, previous, target.value, actor.id)
        return order

    @staticmethod
    def _sells_in(db: Session, order_id: int, seller_id: int) -> bool:
        return (
            db.query(OrderItem.id)
            .filter(OrderItem.order_id == order_id, OrderItem.seller_id == seller_id)
            .first()
            is not None
        )

    def _can_fulfil(self, db: Session, order: Order, actor: User) -> bool:
        if actor.role == UserRole.ADMIN.value:
            return True
        return actor.role == UserRole.SELLER.value and self._sells_in(db, order.id, actor.id)

    def get_order(self, db: Session, order_id: int, actor: User) -> Order:
        order = db.query(Order).filter(Order.id == order_id).first()
        if order is None:
            raise NotFoundError("Order", order_id)
        if actor.role == UserRole.ADMIN.value or order.buyer_id == actor.id:
            return order
        if actor.role == UserRole.SELLER.value and self._sells_in(db, order.id, actor.id):
            return order
        raise NotFoundError("Order", order_id)

    def list_orders(
        self,
        db: Session,
        actor: User,
        page: int = 1,
        limit: int = 20,
        status: OrderStatus | None = None,
    ) -> tuple[list[Order], int]:
        query = db.query(Order)
        if actor.role == UserRole.SELLER.value:
            seller_orders = select(OrderItem.order_id).where(OrderItem.seller_id == actor.id)
            query = query.filter(Order.id.in_(seller_orders))
        elif actor.role != UserRole.ADMIN.value:
            query = query.filter(Order.buyer_id == actor.id)
        if status is not None:
            query = query.filter(Order.status == status.value)

        total = query.count()
        orders = query.order_by(Order.id.desc()).offset((page - 1) * limit).limit(limit).all()
        return orders, total
