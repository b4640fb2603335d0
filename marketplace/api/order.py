from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from marketplace.dependencies import (
    get_current_user,
    get_order_service,
    get_payment_service,
    require_seller_or_admin,
)
from marketplace.models import Order, OrderItem, Payment, User, get_db
from marketplace.models.database import get_session_factory
from marketplace.models.enums import OrderStatus
from marketplace.schemas.orders import (
    OrderCreateRequest,
    OrderFromCartRequest,
    OrderItemResponse,
    OrderListResponse,
    OrderResponse,
    OrderStatusUpdateRequest,
    PaymentSummary,
)
from marketplace.schemas.payments import PaymentIntentResponse
from marketplace.services.order_service import OrderLine, OrderService
from marketplace.services.payment_service import PaymentService

router = APIRouter()


def _order_responses(db: Session, orders: list[Order]) -> list[OrderResponse]:
    order_ids = [order.id for order in orders]
    if not order_ids:
        return []
    items: dict[int, list[OrderItem]] = {order_id: [] for order_id in order_ids}
    for item in db.query(OrderItem).filter(OrderItem.order_id.in_(order_ids)).order_by(OrderItem.id):
        items[item.order_id].append(item)
    payments = {p.order_id: p for p in db.query(Payment).filter(Payment.order_id.in_(order_ids))}

    return [
        OrderResponse(
            id=order.id,
            buyer_id=order.buyer_id,
            status=order.status,
            payment_method=order.payment_method,
            payment_status=order.payment_status,
            total_amount=order.total_amount,
            shipping_cost=order.shipping_cost,
            tax_amount=order.tax_amount,
            shipping_address=order.shipping_address,
            notes=order.notes,
            tracking_number=order.tracking_number,
            invoice_number=order.invoice_number,
            placed_at=order.placed_at,
            cancelled_at=order.cancelled_at,
            items=[OrderItemResponse.model_validate(item) for item in items[order.id]],
            payment=PaymentSummary.model_validate(payments[order.id]) if order.id in payments else None,
        )
        for order in orders
    ]


def _order_response(db: Session, order: Order) -> OrderResponse:
    return _order_responses(db, [order])[0]


@router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Place an order from explicit lines",
)
def create_order(
    body: OrderCreateRequest,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    service: Annotated[OrderService, Depends(get_order_service)],
):
    """
    Validates every line against current stock and prices, then writes the order,
    its items, one ledger record per item, the stock reservations and the payment
    row in one transaction. Any invalid line rejects the whole order.
    """
    order = service.place_order(
        db,
        buyer_id=current_user.id,
        lines=[OrderLine(product_id=line.product_id, quantity=line.quantity) for line in body.items],
        shipping_address=body.shipping_address.model_dump(),
        payment_method=body.payment_method,
        notes=body.notes,
    )
    return _order_response(db, order)


@router.post(
    "/from-cart",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Place an order from the cart",
)
def create_order_from_cart(
    body: OrderFromCartRequest,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    service: Annotated[OrderService, Depends(get_order_service)],
    session_factory=Depends(get_session_factory),
):
    """
    Converts the active cart into an order and empties the cart. Bounded by
    ORDER_TIMEOUT_SECONDS: on 504 the order may still have been created, so list
    your orders before retrying.
    """
    order_id = service.place_order_from_cart_with_deadline(
        session_factory,
        buyer_id=current_user.id,
        shipping_address=body.shipping_address.model_dump(),
        payment_method=body.payment_method,
        notes=body.notes,
    )
    order = db.query(Order).filter(Order.id == order_id).one()
    return _order_response(db, order)


@router.get(
    "",
    response_model=OrderListResponse,
    summary="List orders visible to the current user",
)
def list_orders(
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    service: Annotated[OrderService, Depends(get_order_service)],
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    order_status: OrderStatus | None = Query(None, alias="status"),
):
    """Buyers see their own orders, sellers orders containing their items, admins everything."""
    orders, total = service.list_orders(db, current_user, page=page, limit=limit, status=order_status)
    return OrderListResponse(orders=_order_responses(db, orders), total=total, page=page, limit=limit)


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order",
)
def get_order(
    order_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    service: Annotated[OrderService, Depends(get_order_service)],
):
    return _order_response(db, service.get_order(db, order_id, current_user))


@router.patch(
    "/{order_id}/status",
    response_model=OrderResponse,
    summary="Advance order fulfilment status",
)
def update_order_status(
    order_id: int,
    body: OrderStatusUpdateRequest,
    current_user: Annotated[User, Depends(require_seller_or_admin)],
    db: Annotated[Session, Depends(get_db)],
    service: Annotated[OrderService, Depends(get_order_service)],
):
    """Forward-only. Moving an order to delivered clears its pending ledger records."""
    order = service.update_status(
        db,
        order_id,
        body.status,
        current_user,
        tracking_number=body.tracking_number,
        notes=body.notes,
    )
    return _order_response(db, order)


@router.post(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    summary="Cancel my order",
)
def cancel_order(
    order_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    service: Annotated[OrderService, Depends(get_order_service)],
):
    """Releases reserved stock and cancels the order's unpaid ledger records. Not allowed once shipped."""
    order = service.cancel_order(db, order_id, current_user)
    return _order_response(db, order)


@router.post(
    "/{order_id}/payment-intent",
    response_model=PaymentIntentResponse,
    summary="Create or reuse the card payment intent for my order",
)
def create_payment_intent(
    order_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    service: Annotated[PaymentService, Depends(get_payment_service)],
):
    result = service.create_intent_for_order(db, order_id, current_user.id)
    return PaymentIntentResponse(
        order_id=result.order_id,
        payment_intent_id=result.payment_intent_id,
        client_secret=result.client_secret,
        amount=result.amount,
        currency=result.currency,
        status=result.status,
    )
