from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from marketplace.models.enums import OrderStatus, PaymentMethod
from marketplace.schemas.base import MoneyModel


class ShippingAddress(BaseModel):
    full_name: str = Field(min_length=1, max_length=255)
    phone: str = Field(min_length=3, max_length=50)
    line1: str = Field(min_length=1, max_length=255)
    line2: str | None = Field(default=None, max_length=255)
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(min_length=1, max_length=100)
    postal_code: str = Field(min_length=1, max_length=20)
    country: str = Field(min_length=2, max_length=100)


class OrderLineRequest(BaseModel):
    product_id: int = Field(gt=0)
    quantity: int = Field(gt=0)


class OrderCreateRequest(BaseModel):
    items: list[OrderLineRequest] = Field(min_length=1)
    shipping_address: ShippingAddress
    payment_method: PaymentMethod = PaymentMethod.COD
    notes: str | None = Field(default=None, max_length=1000)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "items": [{"product_id": 1, "quantity": 3}, {"product_id": 2, "quantity": 1}],
                    "shipping_address": {
                        "full_name": "Ada Buyer",
                        "phone": "+15550100",
                        "line1": "1 Market St",
                        "city": "Springfield",
                        "state": "IL",
                        "postal_code": "62701",
                        "country": "US",
                    },
                    "payment_method": "cod",
                }
            ]
        }
    }


class OrderFromCartRequest(BaseModel):
    shipping_address: ShippingAddress
    payment_method: PaymentMethod = PaymentMethod.COD
    notes: str | None = Field(default=None, max_length=1000)


class OrderStatusUpdateRequest(BaseModel):
    status: OrderStatus
    tracking_number: str | None = Field(default=None, max_length=100)
    notes: str | None = Field(default=None, max_length=1000)


class OrderItemResponse(MoneyModel):
    id: int
    product_id: int
    seller_id: int
    product_name: str = Field(validation_alias="product_name_snapshot")
    unit_price: Decimal = Field(validation_alias="unit_price_snapshot")
    category: str | None = Field(default=None, validation_alias="category_snapshot")
    quantity: int
    subtotal: Decimal

    model_config = {"from_attributes": True}


class PaymentSummary(MoneyModel):
    provider: str
    status: str
    amount: Decimal
    currency: str
    provider_payment_id: str | None = None

    model_config = {"from_attributes": True}


class OrderResponse(MoneyModel):
    id: int
    buyer_id: int
    status: str
    payment_method: str
    payment_status: str
    total_amount: Decimal
    shipping_cost: Decimal
    tax_amount: Decimal
    shipping_address: dict
    notes: str | None = None
    tracking_number: str | None = None
    invoice_number: str | None = None
    placed_at: datetime | None = None
    cancelled_at: datetime | None = None
    items: list[OrderItemResponse] = []
    payment: PaymentSummary | None = None


class OrderListResponse(BaseModel):
    orders: list[OrderResponse]
    total: int
    page: int
    limit: int
