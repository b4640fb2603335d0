"""Stripe webhook events the service reacts to, decoded at the HTTP boundary."""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")


class PaymentIntentObject(_StripeObject):
    id: str
    amount: int | None = None
    currency: str | None = None
    status: str | None = None
    latest_charge: str | None = None
    payment_method: str | None = None
    cancellation_reason: str | None = None
    last_payment_error: dict[str, Any] | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class ChargeObject(_StripeObject):
    id: str
    payment_intent: str | None = None
    amount: int | None = None
    amount_refunded: int = 0
    currency: str | None = None
    refunded: bool = False
    metadata: dict[str, str] = Field(default_factory=dict)


class _IntentData(_StripeObject):
    object: PaymentIntentObject


class _ChargeData(_StripeObject):
    object: ChargeObject


class _StripeEvent(_StripeObject):
    id: str
    created: int | None = None

    @property
    def order_id(self) -> int | None:
        raw = self.data.object.metadata.get("order_id")
        try:
            order_id = int(raw) if raw is not None else None
        except (TypeError, ValueError):
            return None
        return order_id if order_id and order_id > 0 else None


class _IntentEvent(_StripeEvent):
    data: _IntentData

    @property
    def payment_intent_id(self) -> str:
        return self.data.object.id

    @property
    def charge_id(self) -> str | None:
        return self.data.object.latest_charge


class PaymentSucceeded(_IntentEvent):
    type: Literal["payment_intent.succeeded"]


class PaymentFailed(_IntentEvent):
    type: Literal["payment_intent.payment_failed"]

    @property
    def failure_reason(self) -> str:
        error = self.data.object.last_payment_error or {}
        return error.get("message") or error.get("code") or "Payment failed"


class PaymentCanceled(_IntentEvent):
    type: Literal["payment_intent.canceled"]


class ChargeRefunded(_StripeEvent):
    type: Literal["charge.refunded"]
    data: _ChargeData

    @property
    def payment_intent_id(self) -> str | None:
        return self.data.object.payment_intent

    @property
    def charge_id(self) -> str:
        return self.data.object.id


StripeEvent = Annotated[
    Union[PaymentSucceeded, PaymentFailed, PaymentCanceled, ChargeRefunded],
    Field(discriminator="type"),
]

_event_adapter = TypeAdapter(StripeEvent)

HANDLED_EVENT_TYPES = frozenset(
    {
        "payment_intent.succeeded",
        "payment_intent.payment_failed",
        "payment_intent.canceled",
        "charge.refunded",
    }
)


def decode_event(payload: dict[str, Any]) -> PaymentSucceeded | PaymentFailed | PaymentCanceled | ChargeRefunded | None:
    """Decode a raw event body; returns None for event types the service ignores.

    Raises ``pydantic.ValidationError`` when a handled type is malformed.
    """
    if payload.get("type") not in HANDLED_EVENT_TYPES:
        return None
    return _event_adapter.validate_python(payload)
