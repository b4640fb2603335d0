from datetime import datetime
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from marketplace.dependencies import get_ledger, get_payout_service, require_admin, require_seller_or_admin
from marketplace.models import User, get_db
from marketplace.models.enums import FinancialStatus, UserRole
from marketplace.schemas.financial import (
    FinancialRecordListResponse,
    FinancialRecordResponse,
    MonthlyBreakdownResponse,
    MonthlyTotalsResponse,
    PayoutRequest,
    PayoutResponse,
    PlatformOverviewResponse,
    RevenueAnalyticsResponse,
    SellerRevenueComparisonResponse,
    SellerSummaryResponse,
)
from marketplace.services.clock import as_utc, utcnow
from marketplace.services.errors import OrderValidationError
from marketplace.services.ledger import FinancialLedger
from marketplace.services.payout_service import PayoutService

router = APIRouter()


def _target_seller(current_user: User, seller_id: int | None) -> int:
    """Sellers always see their own books; admins must name the seller."""
    if current_user.role == UserRole.SELLER.value:
        return current_user.id
    if seller_id is None:
        raise OrderValidationError("seller_id is required")
    return seller_id


@router.post(
    "/payouts",
    response_model=PayoutResponse,
    summary="Pay out cleared records to a seller (admin)",
)
def process_payout(
    body: PayoutRequest,
    current_user: Annotated[User, Depends(require_admin)],
    db: Annotated[Session, Depends(get_db)],
    service: Annotated[PayoutService, Depends(get_payout_service)],
):
    """
    All listed records must belong to the seller and be cleared. If any record is
    not eligible (including records already paid) nothing is paid and 409 lists them.
    """
    result = service.process_payout(
        db,
        seller_id=body.seller_id,
        record_ids=body.record_ids,
        payout_method=body.payout_method,
        reference=body.reference,
        notes=body.notes,
        processed_by=current_user.id,
    )
    return PayoutResponse(
        seller_id=result.seller_id,
        total_amount=result.total_amount,
        records_count=result.records_count,
        payout_reference=result.payout_reference,
        payout_method=result.payout_method,
        paid_at=result.paid_at,
    )


@router.get(
    "/payouts",
    response_model=FinancialRecordListResponse,
    summary="Payout history",
)
def payout_history(
    current_user: Annotated[User, Depends(require_seller_or_admin)],
    db: Annotated[Session, Depends(get_db)],
    ledger: Annotated[FinancialLedger, Depends(get_ledger)],
    seller_id: int | None = Query(None, gt=0),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    records, total = ledger.payout_history(db, _target_seller(current_user, seller_id), page=page, limit=limit)
    return FinancialRecordListResponse(
        records=[FinancialRecordResponse.model_validate(record) for record in records],
        total=total,
        page=page,
        limit=limit,
    )


@router.get(
    "/summary",
    response_model=SellerSummaryResponse,
    summary="Seller earnings summary",
)
def seller_summary(
    current_user: Annotated[User, Depends(require_seller_or_admin)],
    db: Annotated[Session, Depends(get_db)],
    ledger: Annotated[FinancialLedger, Depends(get_ledger)],
    seller_id: int | None = Query(None, gt=0),
    start: datetime | None = None,
    end: datetime | None = None,
):
    """Totals per ledger status; cancelled records are excluded from the earnings totals."""
    summary = ledger.seller_summary(db, _target_seller(current_user, seller_id), start=start, end=end)
    return SellerSummaryResponse.model_validate(summary)


@router.get(
    "/summary/monthly",
    response_model=MonthlyBreakdownResponse,
    summary="Seller earnings by month",
)
def seller_monthly_breakdown(
    current_user: Annotated[User, Depends(require_seller_or_admin)],
    db: Annotated[Session, Depends(get_db)],
    ledger: Annotated[FinancialLedger, Depends(get_ledger)],
    seller_id: int | None = Query(None, gt=0),
    year: int | None = Query(None, ge=2000, le=2100),
):
    """Months without records are omitted. Defaults to the current year."""
    target = _target_seller(current_user, seller_id)
    year = year or utcnow().year
    months = ledger.seller_monthly_breakdown(db, target, year=year)
    return MonthlyBreakdownResponse(
        seller_id=target,
        year=year,
        months=[MonthlyTotalsResponse.model_validate(month) for month in months],
    )


@router.get(
    "/records",
    response_model=FinancialRecordListResponse,
    summary="Seller ledger records",
)
def seller_records(
    current_user: Annotated[User, Depends(require_seller_or_admin)],
    db: Annotated[Session, Depends(get_db)],
    ledger: Annotated[FinancialLedger, Depends(get_ledger)],
    seller_id: int | None = Query(None, gt=0),
    record_status: FinancialStatus | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    records, total = ledger.records_for_seller(
        db, _target_seller(current_user, seller_id), status=record_status, page=page, limit=limit
    )
    return FinancialRecordListResponse(
        records=[FinancialRecordResponse.model_validate(record) for record in records],
        total=total,
        page=page,
        limit=limit,
    )


@router.get(
    "/platform/overview",
    response_model=PlatformOverviewResponse,
    summary="Platform-wide financial overview (admin)",
)
def platform_overview(
    current_user: Annotated[User, Depends(require_admin)],
    db: Annotated[Session, Depends(get_db)],
    ledger: Annotated[FinancialLedger, Depends(get_ledger)],
    start: datetime | None = None,
    end: datetime | None = None,
    top: int = Query(10, ge=1, le=50),
):
    return PlatformOverviewResponse.model_validate(ledger.platform_overview(db, start=start, end=end, top=top))


@router.get(
    "/platform/analytics",
    response_model=RevenueAnalyticsResponse,
    summary="Revenue analytics for a period (admin)",
)
def revenue_analytics(
    current_user: Annotated[User, Depends(require_admin)],
    db: Annotated[Session, Depends(get_db)],
    ledger: Annotated[FinancialLedger, Depends(get_ledger)],
    start: datetime | None = None,
    end: datetime | None = None,
):
    """Completed payments in the window, by day and by payment method. Defaults to the last 30 days."""
    if start is not None and end is not None and as_utc(start) > as_utc(end):
        raise OrderValidationError("start must not be after end")
    return RevenueAnalyticsResponse.model_validate(ledger.revenue_analytics(db, start=start, end=end))


@router.get(
    "/platform/seller-comparison",
    response_model=SellerRevenueComparisonResponse,
    summary="Revenue per seller for the current month, quarter or year (admin)",
)
def seller_revenue_comparison(
    current_user: Annotated[User, Depends(require_admin)],
    db: Annotated[Session, Depends(get_db)],
    ledger: Annotated[FinancialLedger, Depends(get_ledger)],
    period: Literal["month", "quarter", "year"] = "month",
):
    return SellerRevenueComparisonResponse.model_validate(ledger.seller_revenue_comparison(db, period=period))
