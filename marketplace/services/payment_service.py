import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.models import Order, Payment, User
from marketplace.models.enums import OrderStatus, PaymentMethod, PaymentStatus, UserRole
from marketplace.services.clock import utcnow
from marketplace.services.effects import EffectsDispatcher
from marketplace.services.email_service import Mailer
from marketplace.services.errors import (
    ConflictError,
    InvalidAmountError,
    NotFoundError,
    OrderValidationError,
    PaymentNotConfiguredError,
    PaymentProviderError,
    PermissionDeniedError,
    RefundNotAllowedError,
)
from marketplace.services.invoice_service import generate_invoice_number
from marketplace.services.notices import build_order_notice
from marketplace.services.notification_service import Notifier
from marketplace.services.pricing import from_minor_units, to_minor_units, to_money
from marketplace.services.stripe_service import StripeGateway
from marketplace.services.unit_of_work import UnitOfWork
from marketplace.services.webhook_store import WebhookEventStore

logger = logging.getLogger(__name__)

# Payment states a failure or cancellation must never overwrite.
SETTLED_STATUSES = frozenset({PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value})


@dataclass(frozen=True)
class PaymentIntentResult:
    order_id: int
    payment_intent_id: str
    client_secret: str | None
    amount: Decimal
    currency: str
    status: str


@dataclass(frozen=True)
class RefundResult:
    order_id: int
    refund_id: str
    amount: Decimal
    status: str


class PaymentService:
    """Drives Payment rows from provider responses and webhook events.

    Every webhook-driven mutation records its event in the same unit of work,
    so a redelivered event is either fully applied once or not at all.
    """

    def __init__(
        self,
        events: WebhookEventStore | None = None,
        gateway: StripeGateway | None = None,
        dispatcher: EffectsDispatcher | None = None,
        notifier: Notifier | None = None,
        mailer: Mailer | None = None,
    ):
        self.events = events or WebhookEventStore()
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.notifier = notifier or Notifier()
        self.mailer = mailer or Mailer()

    @staticmethod
    def _get_order(db: Session, order_id: int, lock: bool = False) -> Order:
        query = db.query(Order).filter(Order.id == order_id)
        if lock:
            query = query.with_for_update()
        order = query.first()
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    @staticmethod
    def _get_payment(db: Session, order_id: int, lock: bool = False) -> Payment:
        query = db.query(Payment).filter(Payment.order_id == order_id)
        if lock:
            query = query.with_for_update()
        payment = query.first()
        if payment is None:
            raise NotFoundError("Payment for order", order_id)
        return payment

    def _require_gateway(self) -> StripeGateway:
        if self.gateway is None:
            raise PaymentNotConfiguredError("Card payments are not configured (STRIPE_SECRET_KEY is not set)")
        return self.gateway

    def resolve_order_id(self, db: Session, event) -> int | None:
        """Order referenced by a webhook event: metadata first, then stored intent or charge ids."""
        if event.order_id is not None:
            return event.order_id
        query = db.query(Payment.order_id)
        if event.payment_intent_id:
            row = query.filter(Payment.provider_payment_id == event.payment_intent_id).first()
            if row is not None:
                return row[0]
        if event.charge_id:
            row = query.filter(Payment.provider_charge_id == event.charge_id).first()
            if row is not None:
                return row[0]
        return None

    def create_intent_for_order(self, db: Session, order_id: int, buyer_id: int) -> PaymentIntentResult:
        order = self._get_order(db, order_id)
        if order.buyer_id != buyer_id:
            raise PermissionDeniedError("You can only pay for your own orders")
        if order.payment_method != PaymentMethod.STRIPE.value:
            raise OrderValidationError(f"Order {order_id} is not a card payment order")
        if order.status == OrderStatus.CANCELLED.value:
            raise ConflictError(f"Order {order_id} is cancelled")

        payment = self._get_payment(db, order_id)
        if payment.status in SETTLED_STATUSES:
            raise ConflictError(f"Order {order_id} is already paid")

        if payment.provider_payment_id and payment.client_secret:
            logger.info("Reusing payment intent %s for order %s", payment.provider_payment_id, order_id)
            return PaymentIntentResult(
                order_id=order_id,
                payment_intent_id=payment.provider_payment_id,
                client_secret=payment.client_secret,
                amount=to_money(payment.amount),
                currency=payment.currency,
                status=payment.status,
            )

        intent = self._require_gateway().create_intent(
            amount=payment.amount,
            currency=payment.currency,
            metadata={"order_id": str(order_id), "buyer_id": str(buyer_id)},
            idempotency_key=f"order-{order_id}-payment-intent",
        )

        with UnitOfWork(db, self.dispatcher):
            payment = self._get_payment(db, order_id, lock=True)
            payment.provider_payment_id = intent.id
            payment.client_secret = intent.client_secret
            payment.status = PaymentStatus.PROCESSING.value

        return PaymentIntentResult(
            order_id=order_id,
            payment_intent_id=intent.id,
            client_secret=intent.client_secret,
            amount=to_money(payment.amount),
            currency=payment.currency,
            status=payment.status,
        )

    def confirm(self, db: Session, order_id: int, event) -> bool:
        """Apply a succeeded payment. Returns False when the event was a duplicate."""
        if self.events.is_processed(db, event.id):
            logger.info("Duplicate webhook %s for order %s ignored", event.id, order_id)
            return False

        try:
            with UnitOfWork(db, self.dispatcher) as uow:
                _, created = self.events.record(
                    db,
                    event.id,
                    event.type,
                    payment_intent_id=event.payment_intent_id,
                    payload=event.model_dump(mode="json"),
                )
                if not created:
                    return False

                payment = self._get_payment(db, order_id, lock=True)
                if payment.status == PaymentStatus.COMPLETED.value:
                    if payment.provider_payment_id in (None, event.payment_intent_id):
                        logger.info("Payment for order %s already completed; recorded event %s only", order_id, event.id)
                    else:
                        logger.warning(
                            "Order %s already paid by intent %s; success for %s not applied",
                            order_id,
                            payment.provider_payment_id,
                            event.payment_intent_id,
                        )
                    return False
                if payment.status == PaymentStatus.REFUNDED.value:
                    logger.warning("Ignoring success event %s for refunded order %s", event.id, order_id)
                    return False

                intent = event.data.object
                if intent.amount is not None and intent.amount != to_minor_units(payment.amount):
                    raise PaymentProviderError(
                        f"Amount mismatch for order {order_id}: expected {to_minor_units(payment.amount)}, "
                        f"received {intent.amount}"
                    )
                if intent.currency and intent.currency.lower() != payment.currency.lower():
                    raise PaymentProviderError(f"Currency mismatch for order {order_id}: {intent.currency}")

                now = utcnow()
                order = self._get_order(db, order_id, lock=True)
                payment.status = PaymentStatus.COMPLETED.value
                payment.provider_payment_id = event.payment_intent_id
                payment.provider_charge_id = event.charge_id or payment.provider_charge_id
                if intent.payment_method:
                    payment.payment_method = {"type": "card", "id": intent.payment_method}
                payment.processed_at = now
                payment.failure_reason = None
                order.payment_status = PaymentStatus.COMPLETED.value

                if order.status == OrderStatus.CANCELLED.value:
                    # Captured money on a cancelled order; stock and ledger stay released.
                    logger.warning(
                        "Payment captured for cancelled order %s (event %s); no invoice issued, refund required",
                        order_id,
                        event.id,
                    )
                    return True

                if not order.invoice_number:
                    order.invoice_number = generate_invoice_number(order.id, now)
                    order.invoice_generated_at = now

                notice = build_order_notice(db, order)
                uow.add_effect("notify_payment_confirmed", self.notifier.payment_confirmed, notice)
                uow.add_effect("email_payment_confirmed", self.mailer.send_payment_confirmed, notice)
                uow.add_effect("email_admin_new_order", self.mailer.send_admin_new_order, notice)
        except IntegrityError:
            logger.info("Webhook event %s recorded by a concurrent delivery; treating as duplicate", event.id)
            return False

        logger.info("Payment for order %s completed (event %s)", order_id, event.id)
        return True

    def fail(self, db: Session, order_id: int, reason: str | None, event=None) -> bool:
        if event is not None and self.events.is_processed(db, event.id):
            logger.info("Duplicate webhook %s for order %s ignored", event.id, order_id)
            return False

        try:
            with UnitOfWork(db, self.dispatcher) as uow:
                if event is not None:
                    _, created = self.events.record(
                        db,
                        event.id,
                        event.type,
                        payment_intent_id=event.payment_intent_id,
                        payload=event.model_dump(mode="json"),
                    )
                    if not created:
                        return False

                payment = self._get_payment(db, order_id, lock=True)
                if payment.status in SETTLED_STATUSES:
                    logger.warning(
                        "Not downgrading %s payment for order %s to failed", payment.status, order_id
                    )
                    return False

                order = self._get_order(db, order_id, lock=True)
                payment.status = PaymentStatus.FAILED.value
                payment.failure_reason = reason
                payment.failed_at = utcnow()
                order.payment_status = PaymentStatus.FAILED.value

                notice = build_order_notice(db, order)
                uow.add_effect("notify_payment_failed", self.notifier.payment_failed, notice, reason)
                uow.add_effect("email_payment_failed", self.mailer.send_payment_failed, notice, reason)
        except IntegrityError:
            logger.info("Webhook event %s recorded by a concurrent delivery; treating as duplicate", event.id)
            return False

        logger.info("Payment for order %s failed: %s", order_id, reason)
        return True

    def cancel(self, db: Session, order_id: int, event=None) -> bool:
        if event is not None and self.events.is_processed(db, event.id):
            logger.info("Duplicate webhook %s for order %s ignored", event.id, order_id)
            return False

        try:
            with UnitOfWork(db, self.dispatcher):
                if event is not None:
                    _, created = self.events.record(
                        db,
                        event.id,
                        event.type,
                        payment_intent_id=event.payment_intent_id,
                        payload=event.model_dump(mode="json"),
                    )
                    if not created:
                        return False

                payment = self._get_payment(db, order_id, lock=True)
                if payment.status in SETTLED_STATUSES or payment.status == PaymentStatus.CANCELLED.value:
                    logger.info("Payment for order %s is %s; cancel ignored", order_id, payment.status)
                    return False

                order = self._get_order(db, order_id, lock=True)
                payment.status = PaymentStatus.CANCELLED.value
                order.payment_status = PaymentStatus.CANCELLED.value
        except IntegrityError:
            logger.info("Webhook event %s recorded by a concurrent delivery; treating as duplicate", event.id)
            return False

        logger.info("Payment for order %s cancelled", order_id)
        return True

    def refund(
        self,
        db: Session,
        order_id: int,
        amount: Decimal | None = None,
        reason: str | None = None,
    ) -> RefundResult:
        """Refund a completed card payment, fully or partially.

        The provider is only called once the payment is known to be refundable.
        The payment row stays locked from that check until the refund is stored,
        so a concurrent refund of the same order waits and then sees REFUNDED.
        Ledger records are left as they are.
        """
        try:
            payment = self._get_payment(db, order_id, lock=True)
            if payment.status != PaymentStatus.COMPLETED.value:
                raise RefundNotAllowedError(
                    f"Payment for order {order_id} is {payment.status}; only completed payments can be refunded"
                )
            if not payment.provider_charge_id:
                raise RefundNotAllowedError(f"Payment for order {order_id} has no charge to refund")

            paid = to_money(payment.amount)
            refund_amount = paid if amount is None else to_money(amount)
            if refund_amount <= 0 or refund_amount > paid:
                raise InvalidAmountError(f"Refund amount must be greater than 0 and at most {paid}")

            refund = self._require_gateway().create_refund(
                payment.provider_charge_id,
                amount=None if refund_amount == paid else refund_amount,
                reason=reason,
                idempotency_key=f"order-{order_id}-refund",
            )
        except Exception:
            db.rollback()
            raise

        now = utcnow()
        with UnitOfWork(db, self.dispatcher):
            order = self._get_order(db, order_id, lock=True)
            payment.status = PaymentStatus.REFUNDED.value
            payment.refund_id = refund.id
            payment.refunded_amount = refund_amount
            payment.refunded_at = now
            order.payment_status = PaymentStatus.REFUNDED.value

        logger.info("Refunded %s on order %s (refund %s)", refund_amount, order_id, refund.id)
        return RefundResult(order_id=order_id, refund_id=refund.id, amount=refund_amount, status=refund.status)

    def mark_refunded_by_charge(self, db: Session, charge_id: str, event) -> bool:
        """Apply a ``charge.refunded`` event; refunds made through :meth:`refund` are no-ops here."""
        if self.events.is_processed(db, event.id):
            logger.info("Duplicate webhook %s for charge %s ignored", event.id, charge_id)
            return False

        try:
            with UnitOfWork(db, self.dispatcher):
                _, created = self.events.record(
                    db,
                    event.id,
                    event.type,
                    payment_intent_id=event.payment_intent_id,
                    payload=event.model_dump(mode="json"),
                )
                if not created:
                    return False

                query = db.query(Payment).with_for_update()
                payment = query.filter(Payment.provider_charge_id == charge_id).first()
                if payment is None and event.payment_intent_id:
                    payment = query.filter(Payment.provider_payment_id == event.payment_intent_id).first()
                if payment is None:
                    raise NotFoundError("Payment for charge", charge_id)

                if payment.status == PaymentStatus.REFUNDED.value:
                    logger.info("Payment for order %s already refunded", payment.order_id)
                    return False
                if payment.status != PaymentStatus.COMPLETED.value:
                    logger.warning(
                        "Refund event %s for %s payment of order %s ignored", event.id, payment.status, payment.order_id
                    )
                    return False

                order = self._get_order(db, payment.order_id, lock=True)
                payment.status = PaymentStatus.REFUNDED.value
                payment.provider_charge_id = charge_id
                payment.refunded_amount = from_minor_units(event.data.object.amount_refunded)
                payment.refunded_at = utcnow()
                order.payment_status = PaymentStatus.REFUNDED.value
        except IntegrityError:
            logger.info("Webhook event %s recorded by a concurrent delivery; treating as duplicate", event.id)
            return False

        logger.info("Charge %s marked refunded", charge_id)
        return True

    def payment_status(self, db: Session, order_id: int, actor: User) -> tuple[Order, Payment]:
        order = self._get_order(db, order_id)
        if actor.role != UserRole.ADMIN.value and order.buyer_id != actor.id:
            raise PermissionDeniedError("You do not have access to this order")
        return order, self._get_payment(db, order_id)

    def list_payments(
        self,
        db: Session,
        status: PaymentStatus | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        search: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[tuple[Payment, Order, User]], int]:
        """Admin listing, newest first. ``search`` matches the order id or invoice number
        and the buyer's email or display name, case-insensitively."""
        query = (
            db.query(Payment, Order, User)
            .join(Order, Order.id == Payment.order_id)
            .join(User, User.id == Order.buyer_id)
        )
        if status is not None:
            query = query.filter(Payment.status == status.value)
        if start is not None:
            query = query.filter(Payment.created_at >= start)
        if end is not None:
            query = query.filter(Payment.created_at <= end)
        term = (search or "").strip()
        if term:
            pattern = f"%{term}%"
            conditions = [
                Order.invoice_number.ilike(pattern),
                User.email.ilike(pattern),
                User.display_name.ilike(pattern),
            ]
            if term.isdigit():
                conditions.append(Order.id == int(term))
            query = query.filter(or_(*conditions))

        total = query.count()
        rows = (
            query.order_by(Payment.created_at.desc(), Payment.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return [tuple(row) for row in rows], total
