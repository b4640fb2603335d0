import math
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from marketplace.dependencies import get_current_user, get_payment_service, require_admin
from marketplace.models import User, get_db
from marketplace.models.enums import PaymentStatus
from marketplace.schemas.payments import (
    PaymentListItem,
    PaymentListResponse,
    PaymentStatusResponse,
    RefundRequest,
    RefundResponse,
)
from marketplace.services.payment_service import PaymentService

router = APIRouter()


@router.get(
    "",
    response_model=PaymentListResponse,
    summary="List payments (admin)",
)
def list_payments(
    current_user: Annotated[User, Depends(require_admin)],
    db: Annotated[Session, Depends(get_db)],
    service: Annotated[PaymentService, Depends(get_payment_service)],
    status_filter: PaymentStatus | None = Query(None, alias="status"),
    start: datetime | None = None,
    end: datetime | None = None,
    search: str | None = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    """Newest first. ``search`` matches order id, invoice number, buyer email or name."""
    rows, total = service.list_payments(
        db, status=status_filter, start=start, end=end, search=search, page=page, limit=limit
    )
    return PaymentListResponse(
        payments=[
            PaymentListItem(
                id=payment.id,
                order_id=order.id,
                order_status=order.status,
                buyer_id=buyer.id,
                buyer_email=buyer.email,
                provider=payment.provider,
                status=payment.status,
                amount=payment.amount,
                currency=payment.currency,
                provider_payment_id=payment.provider_payment_id,
                refunded_amount=payment.refunded_amount,
                invoice_number=order.invoice_number,
                created_at=payment.created_at,
                processed_at=payment.processed_at,
            )
            for payment, order, buyer in rows
        ],
        total=total,
        page=page,
        limit=limit,
        total_pages=math.ceil(total / limit),
    )


@router.get(
    "/{order_id}/status",
    response_model=PaymentStatusResponse,
    summary="Get payment status for an order",
)
def payment_status(
    order_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    service: Annotated[PaymentService, Depends(get_payment_service)],
):
    """Available to the buyer who placed the order and to admins."""
    order, payment = service.payment_status(db, order_id, current_user)
    return PaymentStatusResponse(
        order_id=order.id,
        order_status=order.status,
        payment_status=payment.status,
        provider=payment.provider,
        amount=payment.amount,
        currency=payment.currency,
        provider_payment_id=payment.provider_payment_id,
        failure_reason=payment.failure_reason,
        refunded_amount=payment.refunded_amount,
        invoice_number=order.invoice_number,
        processed_at=payment.processed_at,
        failed_at=payment.failed_at,
        refunded_at=payment.refunded_at,
    )


@router.post(
    "/{order_id}/refund",
    response_model=RefundResponse,
    summary="Refund a completed card payment (admin)",
)
def refund_payment(
    order_id: int,
    body: RefundRequest,
    current_user: Annotated[User, Depends(require_admin)],
    db: Annotated[Session, Depends(get_db)],
    service: Annotated[PaymentService, Depends(get_payment_service)],
):
    """
    Full refund when no amount is given, partial otherwise. Only completed payments
    with a captured charge can be refunded; seller ledger records are not adjusted.
    """
    result = service.refund(db, order_id, amount=body.amount, reason=body.reason)
    return RefundResponse(
        order_id=result.order_id,
        refund_id=result.refund_id,
        amount=result.amount,
        status=result.status,
    )
