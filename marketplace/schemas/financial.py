from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from marketplace.schemas.base import MoneyModel


class PayoutRequest(BaseModel):
    seller_id: int = Field(gt=0)
    record_ids: list[int] = Field(min_length=1)
    payout_method: str = Field(min_length=1, max_length=50)
    reference: str | None = Field(default=None, max_length=255)
    notes: str | None = Field(default=None, max_length=1000)


class PayoutResponse(MoneyModel):
    seller_id: int
    total_amount: Decimal
    records_count: int
    payout_reference: str
    payout_method: str
    paid_at: datetime


class FinancialRecordResponse(MoneyModel):
    id: int
    seller_id: int
    order_item_id: int
    amount: Decimal
    platform_fee: Decimal
    processing_fee: Decimal
    net_amount: Decimal
    status: str
    payout_id: str | None = None
    payout_method: str | None = None
    cleared_at: datetime | None = None
    paid_at: datetime | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class FinancialRecordListResponse(BaseModel):
    records: list[FinancialRecordResponse]
    total: int
    page: int
    limit: int


class StatusTotalsResponse(MoneyModel):
    amount: Decimal
    net_amount: Decimal
    platform_fee: Decimal
    processing_fee: Decimal
    count: int

    model_config = {"from_attributes": True}


class SellerSummaryResponse(MoneyModel):
    seller_id: int
    total_earnings: Decimal
    total_platform_fees: Decimal
    total_processing_fees: Decimal
    net_earnings: Decimal
    pending_amount: Decimal
    cleared_amount: Decimal
    paid_amount: Decimal
    cancelled_amount: Decimal
    total_transactions: int
    total_orders: int
    by_status: dict[str, StatusTotalsResponse]

    model_config = {"from_attributes": True}


class SellerRevenueResponse(MoneyModel):
    seller_id: int
    seller_name: str | None = None
    total_revenue: Decimal
    total_platform_fees: Decimal
    net_revenue: Decimal
    transaction_count: int

    model_config = {"from_attributes": True}


class PlatformOverviewResponse(MoneyModel):
    total_revenue: Decimal
    total_platform_fees: Decimal
    total_paid_out: Decimal
    awaiting_payout: Decimal
    pending_clearance: Decimal
    active_sellers: int
    top_sellers: list[SellerRevenueResponse]

    model_config = {"from_attributes": True}


class DailyRevenueResponse(MoneyModel):
    day: date
    revenue: Decimal
    transaction_count: int

    model_config = {"from_attributes": True}


class PaymentMethodRevenueResponse(MoneyModel):
    payment_method: str
    revenue: Decimal
    transaction_count: int
    percentage: Decimal

    model_config = {"from_attributes": True}


class RevenueAnalyticsResponse(MoneyModel):
    start: datetime
    end: datetime
    total_revenue: Decimal
    transaction_count: int
    average_transaction_value: Decimal
    total_platform_fees: Decimal
    total_paid_out: Decimal
    daily: list[DailyRevenueResponse]
    by_payment_method: list[PaymentMethodRevenueResponse]

    model_config = {"from_attributes": True}


class SellerRevenueComparisonResponse(BaseModel):
    period: str
    start: datetime
    end: datetime
    sellers: list[SellerRevenueResponse]

    model_config = {"from_attributes": True}


class MonthlyTotalsResponse(MoneyModel):
    month: int
    total_amount: Decimal
    total_platform_fees: Decimal
    net_amount: Decimal
    transaction_count: int

    model_config = {"from_attributes": True}


class MonthlyBreakdownResponse(BaseModel):
    seller_id: int
    year: int
    months: list[MonthlyTotalsResponse]
