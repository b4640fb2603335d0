from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

from marketplace.schemas.base import MoneyModel


class PaymentIntentResponse(MoneyModel):
    order_id: int
    payment_intent_id: str
    client_secret: str | None = None
    amount: Decimal
    currency: str
    status: str


class RefundRequest(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0, decimal_places=2)
    reason: Literal["duplicate", "fraudulent", "requested_by_customer"] | None = None


class RefundResponse(MoneyModel):
    order_id: int
    refund_id: str
    amount: Decimal
    status: str


class PaymentStatusResponse(MoneyModel):
    order_id: int
    order_status: str
    payment_status: str
    provider: str
    amount: Decimal
    currency: str
    provider_payment_id: str | None = None
    failure_reason: str | None = None
    refunded_amount: Decimal | None = None
    invoice_number: str | None = None
    processed_at: datetime | None = None
    failed_at: datetime | None = None
    refunded_at: datetime | None = None


class PaymentListItem(MoneyModel):
    id: int
    order_id: int
    order_status: str
    buyer_id: int
    buyer_email: str
    provider: str
    status: str
    amount: Decimal
    currency: str
    provider_payment_id: str | None = None
    refunded_amount: Decimal | None = None
    invoice_number: str | None = None
    created_at: datetime | None = None
    processed_at: datetime | None = None


class PaymentListResponse(BaseModel):
    payments: list[PaymentListItem]
    total: int
    page: int
    limit: int
    total_pages: int
