import logging
from dataclasses import dataclass
from decimal import Decimal

import stripe

from marketplace.services.errors import PaymentProviderError
from marketplace.services.pricing import from_minor_units, to_minor_units

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderIntentRef:
    id: str
    client_secret: str | None
    status: str
    amount: Decimal
    currency: str
    latest_charge: str | None = None


@dataclass(frozen=True)
class RefundRef:
    id: str
    amount: Decimal
    status: str


def _intent_ref(intent) -> ProviderIntentRef:
    latest_charge = getattr(intent, "latest_charge", None)
    if latest_charge is not None and not isinstance(latest_charge, str):
        latest_charge = latest_charge.id
    return ProviderIntentRef(
        id=intent.id,
        client_secret=getattr(intent, "client_secret", None),
        status=intent.status,
        amount=from_minor_units(intent.amount),
        currency=intent.currency,
        latest_charge=latest_charge,
    )


class StripeGateway:
    """Thin bridge over an injected ``stripe.StripeClient``.

    Amounts cross this boundary as Decimal and are sent to Stripe in cents.
    Provider errors surface as PaymentProviderError.
    """

    def __init__(self, client: stripe.StripeClient):
        self._client = client

    def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> ProviderIntentRef:
        params = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        try:
            intent = self._client.payment_intents.create(params=params, options=options)
        except stripe.StripeError as e:
            logger.error("Stripe intent creation failed: %s", e)
            raise PaymentProviderError(f"Payment provider error: {e.user_message or e}") from e
        logger.info("Created payment intent %s for %s %s", intent.id, amount, currency)
        return _intent_ref(intent)

    def retrieve_intent(self, intent_id: str) -> ProviderIntentRef:
        try:
            intent = self._client.payment_intents.retrieve(intent_id)
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Payment provider error: {e.user_message or e}") from e
        return _intent_ref(intent)

    def cancel_intent(self, intent_id: str) -> ProviderIntentRef:
        try:
            intent = self._client.payment_intents.cancel(intent_id)
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Payment provider error: {e.user_message or e}") from e
        logger.info("Cancelled payment intent %s", intent_id)
        return _intent_ref(intent)

    def create_refund(
        self,
        charge_id: str,
        amount: Decimal | None = None,
        reason: str | None = None,
        idempotency_key: str | None = None,
    ) -> RefundRef:
        params: dict = {"charge": charge_id}
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        if reason:
            params["reason"] = reason
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        try:
            refund = self._client.refunds.create(params=params, options=options)
        except stripe.StripeError as e:
            logger.error("Stripe refund for charge %s failed: %s", charge_id, e)
            raise PaymentProviderError(f"Payment provider error: {e.user_message or e}") from e
        logger.info("Created refund %s for charge %s", refund.id, charge_id)
        return RefundRef(id=refund.id, amount=from_minor_units(refund.amount), status=refund.status)


def build_stripe_gateway(secret_key: str) -> StripeGateway:
    return StripeGateway(stripe.StripeClient(secret_key))
