import logging
from dataclasses import asdict, dataclass, field

from marketplace.services.notices import OrderNotice, PayoutNotice

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    recipient_id: int
    kind: str
    title: str
    message: str
    data: dict = field(default_factory=dict)


class Notifier:
    """Builds in-app notifications and hands them to the external fan-out.

    Delivery itself lives outside this service; here each notification is
    emitted as a structured log record on the ``marketplace.notifications``
    logger, which the fan-out tails.
    """

    def __init__(self, channel: logging.Logger | None = None):
        self._channel = channel or logging.getLogger("marketplace.notifications")

    def _emit(self, notifications: list[Notification]) -> list[Notification]:
        for notification in notifications:
            self._channel.info("notification %s", notification.kind, extra={"notification": asdict(notification)})
        return notifications

    def order_placed(self, notice: OrderNotice) -> list[Notification]:
        notifications = []
        if notice.buyer is not None:
            notifications.append(
                Notification(
                    recipient_id=notice.buyer.user_id,
                    kind="order_placed",
                    title="Order placed",
                    message=f"Your order #{notice.order_id} for {notice.total_amount} has been placed.",
                    data={"order_id": notice.order_id},
                )
            )
        for seller in notice.sellers:
            lines = notice.lines_for_seller(seller.user_id)
            notifications.append(
                Notification(
                    recipient_id=seller.user_id,
                    kind="new_order",
                    title="New order",
                    message=f"Order #{notice.order_id} includes {sum(line.quantity for line in lines)} of your item(s).",
                    data={"order_id": notice.order_id},
                )
            )
        return self._emit(notifications)

    def order_status_changed(self, notice: OrderNotice, previous_status: str) -> list[Notification]:
        if notice.buyer is None:
            return []
        return self._emit(
            [
                Notification(
                    recipient_id=notice.buyer.user_id,
                    kind="order_status",
                    title="Order updated",
                    message=f"Order #{notice.order_id} is now {notice.status}.",
                    data={"order_id": notice.order_id, "from": previous_status, "to": notice.status},
                )
            ]
        )

    def payment_confirmed(self, notice: OrderNotice) -> list[Notification]:
        if notice.buyer is None:
            return []
        return self._emit(
            [
                Notification(
                    recipient_id=notice.buyer.user_id,
                    kind="payment_confirmed",
                    title="Payment received",
                    message=f"Payment for order #{notice.order_id} was confirmed.",
                    data={"order_id": notice.order_id, "invoice_number": notice.invoice_number},
                )
            ]
        )

    def payment_failed(self, notice: OrderNotice, reason: str | None) -> list[Notification]:
        if notice.buyer is None:
            return []
        return self._emit(
            [
                Notification(
                    recipient_id=notice.buyer.user_id,
                    kind="payment_failed",
                    title="Payment failed",
                    message=f"Payment for order #{notice.order_id} failed: {reason or 'unknown reason'}.",
                    data={"order_id": notice.order_id},
                )
            ]
        )

    def payout_processed(self, notice: PayoutNotice) -> list[Notification]:
        return self._emit(
            [
                Notification(
                    recipient_id=notice.seller_id,
                    kind="payout_processed",
                    title="Payout sent",
                    message=f"A payout of {notice.total_amount} for {notice.records_count} sale(s) is on its way.",
                    data={"payout_reference": notice.payout_reference},
                )
            ]
        )
