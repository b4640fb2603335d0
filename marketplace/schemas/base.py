from decimal import Decimal

from pydantic import BaseModel, field_serializer

MONEY_FIELDS = (
    "amount",
    "total_amount",
    "shipping_cost",
    "tax_amount",
    "unit_price",
    "subtotal",
    "platform_fee",
    "processing_fee",
    "net_amount",
    "refunded_amount",
    "total_earnings",
    "total_platform_fees",
    "total_processing_fees",
    "net_earnings",
    "pending_amount",
    "cleared_amount",
    "paid_amount",
    "cancelled_amount",
    "total_revenue",
    "net_revenue",
    "total_paid_out",
    "awaiting_payout",
    "pending_clearance",
    "revenue",
    "average_transaction_value",
)


class MoneyModel(BaseModel):
    """Renders money fields as fixed two-place strings."""

    @field_serializer(*MONEY_FIELDS, check_fields=False)
    def serialize_money(self, value: Decimal | None) -> str | None:
        if value is None:
            return None
        return format(Decimal(value).quantize(Decimal("0.01")), "f")
