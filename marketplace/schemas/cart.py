from decimal import Decimal

from pydantic import BaseModel, Field

from marketplace.schemas.base import MoneyModel


class CartItemRequest(BaseModel):
    product_id: int = Field(gt=0)
    quantity: int = Field(default=1, gt=0, le=1000)


class CartItemUpdateRequest(BaseModel):
    quantity: int = Field(gt=0, le=1000)


class CartItemResponse(MoneyModel):
    id: int
    product_id: int
    product_name: str
    unit_price: Decimal
    quantity: int
    subtotal: Decimal
    in_stock: bool


class CartResponse(MoneyModel):
    items: list[CartItemResponse]
    subtotal: Decimal
    item_count: int
