from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    """Round any numeric value to cents, half-up."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(value) -> int:
    """Convert a money amount to integer cents for the card provider."""
    return int((to_money(value) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(value: int) -> Decimal:
    return to_money(Decimal(value) / 100)


def calculate_shipping_cost(subtotal: Decimal, flat_fee: Decimal, free_threshold: Decimal) -> Decimal:
    if subtotal >= free_threshold:
        return ZERO
    return to_money(flat_fee)


def calculate_tax(subtotal: Decimal, tax_rate_percent: Decimal) -> Decimal:
    rate = min(max(Decimal(tax_rate_percent) / 100, Decimal(0)), Decimal(1))
    if rate == 0:
        return ZERO
    return to_money(subtotal * rate)


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    shipping_cost: Decimal
    tax_amount: Decimal

    @property
    def total_amount(self) -> Decimal:
        return to_money(self.subtotal + self.shipping_cost + self.tax_amount)


def calculate_totals(
    line_subtotals: list[Decimal],
    flat_fee: Decimal,
    free_threshold: Decimal,
    tax_rate_percent: Decimal,
) -> OrderTotals:
    subtotal = to_money(sum(line_subtotals, ZERO))
    return OrderTotals(
        subtotal=subtotal,
        shipping_cost=calculate_shipping_cost(subtotal, flat_fee, free_threshold),
        tax_amount=calculate_tax(subtotal, tax_rate_percent),
    )
