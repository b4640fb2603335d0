from typing import Annotated

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from marketplace.dependencies import get_current_user
from marketplace.models import CartItem, Product, User, get_db
from marketplace.schemas.cart import CartItemRequest, CartItemResponse, CartItemUpdateRequest, CartResponse
from marketplace.services.errors import NotFoundError, ProductUnavailableError
from marketplace.services.pricing import ZERO, to_money

router = APIRouter()


def _active_cart_items(db: Session, user_id: int) -> list[CartItem]:
    return (
        db.query(CartItem)
        .filter(CartItem.user_id == user_id, CartItem.is_active.is_(True))
        .order_by(CartItem.id)
        .all()
    )


def _cart_response(db: Session, user_id: int) -> CartResponse:
    cart_items = _active_cart_items(db, user_id)
    product_ids = [item.product_id for item in cart_items]
    products = {p.id: p for p in db.query(Product).filter(Product.id.in_(product_ids))} if product_ids else {}

    lines = []
    for item in cart_items:
        product = products.get(item.product_id)
        if product is None:
            continue
        lines.append(
            CartItemResponse(
                id=item.id,
                product_id=product.id,
                product_name=product.name,
                unit_price=to_money(product.price),
                quantity=item.quantity,
                subtotal=to_money(product.price * item.quantity),
                in_stock=product.is_active and product.stock_quantity >= item.quantity,
            )
        )
    return CartResponse(
        items=lines,
        subtotal=to_money(sum((line.subtotal for line in lines), ZERO)),
        item_count=sum(line.quantity for line in lines),
    )


@router.get("", response_model=CartResponse, summary="Get my cart")
def get_cart(
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    return _cart_response(db, current_user.id)


@router.post(
    "/items",
    response_model=CartResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add a product to my cart",
)
def add_cart_item(
    body: CartItemRequest,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    """Adding a product already in the cart increases its quantity. Stock is checked at checkout."""
    product = db.query(Product).filter(Product.id == body.product_id, Product.is_active.is_(True)).first()
    if product is None:
        raise ProductUnavailableError(body.product_id)

    item = (
        db.query(CartItem)
        .filter(
            CartItem.user_id == current_user.id,
            CartItem.product_id == body.product_id,
            CartItem.is_active.is_(True),
        )
        .first()
    )
    if item is None:
        db.add(CartItem(user_id=current_user.id, product_id=body.product_id, quantity=body.quantity))
    else:
        item.quantity += body.quantity
    db.commit()
    return _cart_response(db, current_user.id)


@router.put("/items/{item_id}", response_model=CartResponse, summary="Change a cart line quantity")
def update_cart_item(
    item_id: int,
    body: CartItemUpdateRequest,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    item = (
        db.query(CartItem)
        .filter(CartItem.id == item_id, CartItem.user_id == current_user.id, CartItem.is_active.is_(True))
        .first()
    )
    if item is None:
        raise NotFoundError("Cart item", item_id)
    item.quantity = body.quantity
    db.commit()
    return _cart_response(db, current_user.id)


@router.delete("/items/{item_id}", response_model=CartResponse, summary="Remove a cart line")
def remove_cart_item(
    item_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    deleted = (
        db.query(CartItem)
        .filter(CartItem.id == item_id, CartItem.user_id == current_user.id)
        .delete(synchronize_session=False)
    )
    if not deleted:
        raise NotFoundError("Cart item", item_id)
    db.commit()
    return _cart_response(db, current_user.id)


@router.delete("", response_model=CartResponse, summary="Empty my cart")
def clear_cart(
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    db.query(CartItem).filter(CartItem.user_id == current_user.id).delete(synchronize_session=False)
    db.commit()
    return _cart_response(db, current_user.id)
