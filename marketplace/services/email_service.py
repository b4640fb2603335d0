import logging
import smtplib
from email.message import EmailMessage
from html import escape

from marketplace.config import Settings, settings as default_settings
from marketplace.services.notices import OrderLineNotice, OrderNotice

logger = logging.getLogger(__name__)


def _lines_text(lines: list[OrderLineNotice] | tuple[OrderLineNotice, ...]) -> str:
    return "\n".join(
        f"  - {line.product_name} x{line.quantity} @ {line.unit_price} = {line.subtotal}" for line in lines
    )


def _lines_html(lines: list[OrderLineNotice] | tuple[OrderLineNotice, ...]) -> str:
    rows = "".join(
        f"<li>{escape(line.product_name)} &times;{line.quantity} @ {line.unit_price} = {line.subtotal}</li>"
        for line in lines
    )
    return f"<ul>{rows}</ul>"


class Mailer:
    """Transactional emails over SMTP.

    Every send raises when SMTP is not configured; callers run these as
    post-commit effects, where the failure is logged and dropped.
    """

    def __init__(self, config: Settings | None = None):
        self._settings = config or default_settings

    def _send_email(self, to_email: str, subject: str, text_body: str, html_body: str | None = None) -> None:
        config = self._settings
        if not config.SMTP_HOST or not config.SMTP_FROM_EMAIL:
            raise RuntimeError("SMTP is not configured (SMTP_HOST and SMTP_FROM_EMAIL are required).")

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = f"{config.SMTP_FROM_NAME} <{config.SMTP_FROM_EMAIL}>"
        message["To"] = to_email
        message.set_content(text_body)
        if html_body:
            message.add_alternative(html_body, subtype="html")

        with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT) as smtp:
            smtp.ehlo()
            if config.SMTP_USE_TLS:
                smtp.starttls()
                smtp.ehlo()
            if config.SMTP_USER:
                smtp.login(config.SMTP_USER, config.SMTP_PASSWORD)
            smtp.send_message(message)
        logger.info("Sent email %r to %s", subject, to_email)

    def send_order_confirmation(self, notice: OrderNotice) -> None:
        if notice.buyer is None:
            return
        name = notice.buyer.name
        text = (
            f"Hi {name},\n\n"
            f"Thanks for your order #{notice.order_id}.\n\n"
            f"{_lines_text(notice.lines)}\n\n"
            f"Shipping: {notice.shipping_cost}\n"
            f"Tax: {notice.tax_amount}\n"
            f"Total: {notice.total_amount}\n"
            f"Payment: {notice.payment_method} ({notice.payment_status})\n"
            f"Ship to: {notice.shipping_address}\n"
        )
        html = (
            f"<p>Hi {escape(name)},</p>"
            f"<p>Thanks for your order #{notice.order_id}.</p>"
            f"{_lines_html(notice.lines)}"
            f"<p>Shipping: {notice.shipping_cost}<br>Tax: {notice.tax_amount}<br>"
            f"<strong>Total: {notice.total_amount}</strong></p>"
            f"<p>Ship to: {escape(notice.shipping_address)}</p>"
        )
        self._send_email(notice.buyer.email, f"Order #{notice.order_id} confirmed", text, html)

    def send_seller_new_order(self, notice: OrderNotice) -> None:
        """One email per seller, listing only that seller's lines."""
        for seller in notice.sellers:
            lines = notice.lines_for_seller(seller.user_id)
            if not lines:
                continue
            text = (
                f"Hi {seller.name},\n\n"
                f"You have a new order #{notice.order_id}:\n\n"
                f"{_lines_text(lines)}\n\n"
                f"Ship to: {notice.shipping_address}\n"
            )
            html = (
                f"<p>Hi {escape(seller.name)},</p>"
                f"<p>You have a new order #{notice.order_id}:</p>"
                f"{_lines_html(lines)}"
                f"<p>Ship to: {escape(notice.shipping_address)}</p>"
            )
            self._send_email(seller.email, f"New order #{notice.order_id}", text, html)

    def send_status_update(self, notice: OrderNotice, tracking_number: str | None = None) -> None:
        if notice.buyer is None:
            return
        tracking = f"\nTracking number: {tracking_number}\n" if tracking_number else ""
        text = f"Hi {notice.buyer.name},\n\nYour order #{notice.order_id} is now {notice.status}.\n{tracking}"
        self._send_email(notice.buyer.email, f"Order #{notice.order_id} {notice.status}", text)

    def send_payment_confirmed(self, notice: OrderNotice) -> None:
        if notice.buyer is None:
            return
        text = (
            f"Hi {notice.buyer.name},\n\n"
            f"We received your payment of {notice.total_amount} for order #{notice.order_id}.\n"
            f"Invoice: {notice.invoice_number}\n"
        )
        self._send_email(notice.buyer.email, f"Payment received for order #{notice.order_id}", text)

    def send_payment_failed(self, notice: OrderNotice, reason: str | None = None) -> None:
        if notice.buyer is None:
            return
        text = (
            f"Hi {notice.buyer.name},\n\n"
            f"Your payment for order #{notice.order_id} did not go through"
            f"{f': {reason}' if reason else ''}.\n"
            "You can retry the payment from your orders page.\n"
        )
        self._send_email(notice.buyer.email, f"Payment failed for order #{notice.order_id}", text)

    def send_admin_new_order(self, notice: OrderNotice) -> None:
        admin_email = self._settings.ADMIN_EMAIL
        if not admin_email:
            logger.debug("ADMIN_EMAIL not set, skipping admin notification for order %s", notice.order_id)
            return
        buyer = notice.buyer.email if notice.buyer else "unknown buyer"
        text = (
            f"Order #{notice.order_id} from {buyer} was paid.\n\n"
            f"{_lines_text(notice.lines)}\n\n"
            f"Total: {notice.total_amount}\n"
            f"Invoice: {notice.invoice_number}\n"
        )
        self._send_email(admin_email, f"New paid order #{notice.order_id}", text)
