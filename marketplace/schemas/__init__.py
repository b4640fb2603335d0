from marketplace.schemas.cart import CartItemRequest, CartItemResponse, CartItemUpdateRequest, CartResponse
from marketplace.schemas.financial import (
    FinancialRecordListResponse,
    FinancialRecordResponse,
    PayoutRequest,
    PayoutResponse,
    PlatformOverviewResponse,
    SellerSummaryResponse,
)
from marketplace.schemas.orders import (
    OrderCreateRequest,
    OrderFromCartRequest,
    OrderListResponse,
    OrderResponse,
    OrderStatusUpdateRequest,
)
from marketplace.schemas.payments import (
    PaymentIntentResponse,
    PaymentStatusResponse,
    RefundRequest,
    RefundResponse,
)

__all__ = [
    "CartItemRequest",
    "CartItemResponse",
    "CartItemUpdateRequest",
    "CartResponse",
    "FinancialRecordListResponse",
    "FinancialRecordResponse",
    "PayoutRequest",
    "PayoutResponse",
    "PlatformOverviewResponse",
    "SellerSummaryResponse",
    "OrderCreateRequest",
    "OrderFromCartRequest",
    "OrderListResponse",
    "OrderResponse",
    "OrderStatusUpdateRequest",
    "PaymentIntentResponse",
    "PaymentStatusResponse",
    "RefundRequest",
    "RefundResponse",
]
