import threading
import time
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from unittest.mock import patch

import pytest
from fastapi import status
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from marketplace.models import CartItem, FinancialRecord, Order, OrderItem, Payment, Product, User
from marketplace.models.database import Base
from marketplace.models.enums import FinancialStatus, OrderStatus, PaymentMethod
from marketplace.services.errors import (
    EmptyCartError,
    InactiveBuyerError,
    InsufficientStockError,
    InvalidTransitionError,
    OrderTimeoutError,
    PermissionDeniedError,
    UnverifiedSellerError,
)
from marketplace.services.order_service import OrderLine, OrderService, run_with_deadline


def _order_payload(shipping_address, *lines, payment_method="cod"):
    return {
        "items": [{"product_id": pid, "quantity": qty} for pid, qty in lines],
        "shipping_address": shipping_address,
        "payment_method": payment_method,
    }


def test_place_order_two_seller_cart(client, db, buyer_headers, product_a, product_b, shipping_address, effects):
    response = client.post(
        "/api/orders",
        json=_order_payload(shipping_address, (product_a.id, 3), (product_b.id, 1)),
        headers=buyer_headers,
    )

    assert response.status_code == status.HTTP_201_CREATED
    data = response.json()
    assert Decimal(data["shipping_cost"]) == Decimal("60.00")
    assert Decimal(data["tax_amount"]) == Decimal("0.00")
    assert Decimal(data["total_amount"]) == Decimal("115.00")
    assert data["status"] == "pending"
    assert data["payment"]["status"] == "pending"
    assert [item["quantity"] for item in data["items"]] == [3, 1]

    records = db.query(FinancialRecord).order_by(FinancialRecord.id).all()
    assert [(r.amount, r.platform_fee, r.net_amount) for r in records] == [
        (Decimal("30.00"), Decimal("1.50"), Decimal("28.50")),
        (Decimal("25.00"), Decimal("1.25"), Decimal("23.75")),
    ]
    assert all(r.status == FinancialStatus.PENDING.value for r in records)

    db.expire_all()
    assert db.get(Product, product_a.id).stock_quantity == 7
    assert db.get(Product, product_b.id).stock_quantity == 4

    assert effects.dispatched == ["notify_order_placed", "email_order_confirmation", "email_seller_new_order"]


def test_order_total_invariant_holds(db, order_service, buyer, product_a, product_b, shipping_address):
    order = order_service.place_order(
        db, buyer.id, [OrderLine(product_a.id, 2), OrderLine(product_b.id, 2)], shipping_address
    )

    items = db.query(OrderItem).filter(OrderItem.order_id == order.id).all()
    assert order.total_amount == sum(i.subtotal for i in items) + order.shipping_cost + order.tax_amount
    for item in items:
        assert item.subtotal == item.unit_price_snapshot * item.quantity


def test_free_shipping_at_threshold(db, order_service, buyer, seller, shipping_address):
    product = Product(seller_id=seller.id, name="Sofa", price=Decimal("500.00"), stock_quantity=3)
    db.add(product)
    db.commit()

    order = order_service.place_order(db, buyer.id, [OrderLine(product.id, 2)], shipping_address)

    assert order.shipping_cost == Decimal("0.00")
    assert order.total_amount == Decimal("1000.00")


def test_tax_rate_applies_as_percentage(db, order_service, buyer, product_a, shipping_address, monkeypatch):
    monkeypatch.setenv("TAX_RATE", "10")

    order = order_service.place_order(db, buyer.id, [OrderLine(product_a.id, 1)], shipping_address)

    assert order.tax_amount == Decimal("1.00")
    assert order.total_amount == Decimal("71.00")


def test_stripe_order_starts_processing(db, order_service, buyer, product_a, shipping_address):
    order = order_service.place_order(
        db, buyer.id, [OrderLine(product_a.id, 1)], shipping_address, payment_method=PaymentMethod.STRIPE
    )

    payment = db.query(Payment).filter(Payment.order_id == order.id).one()
    assert payment.status == "processing"
    assert payment.provider == "stripe"
    assert payment.amount == order.total_amount
    assert order.payment_status == "processing"


def test_snapshots_survive_price_changes(db, order_service, buyer, product_a, shipping_address):
    order = order_service.place_order(db, buyer.id, [OrderLine(product_a.id, 1)], shipping_address)
    product_a.price = Decimal("99.00")
    product_a.name = "Renamed"
    db.commit()

    item = db.query(OrderItem).filter(OrderItem.order_id == order.id).one()
    assert item.unit_price_snapshot == Decimal("10.00")
    assert item.product_name_snapshot == "Mug"


def test_one_bad_line_rejects_whole_order(db, order_service, buyer, product_a, product_b, shipping_address, effects):
    with pytest.raises(InsufficientStockError):
        order_service.place_order(
            db, buyer.id, [OrderLine(product_a.id, 2), OrderLine(product_b.id, 6)], shipping_address
        )

    assert db.query(Order).count() == 0
    assert db.query(FinancialRecord).count() == 0
    assert db.get(Product, product_a.id).stock_quantity == 10
    assert effects.dispatched == []


def test_failure_after_reservation_rolls_back_stock(db, order_service, buyer, product_a, shipping_address, effects):
    with patch.object(order_service.ledger, "derive_record", side_effect=RuntimeError("ledger down")):
        with pytest.raises(RuntimeError):
            order_service.place_order(db, buyer.id, [OrderLine(product_a.id, 4)], shipping_address)

    db.expire_all()
    assert db.get(Product, product_a.id).stock_quantity == 10
    assert db.query(Order).count() == 0
    assert db.query(OrderItem).count() == 0
    assert effects.dispatched == []


def test_unverified_seller_products_cannot_be_ordered(db, order_service, buyer, unverified_product, shipping_address):
    with pytest.raises(UnverifiedSellerError):
        order_service.place_order(db, buyer.id, [OrderLine(unverified_product.id, 1)], shipping_address)


def test_inactive_buyer_cannot_order(db, order_service, buyer, product_a, shipping_address):
    buyer.is_active = False
    db.commit()

    with pytest.raises(InactiveBuyerError):
        order_service.place_order(db, buyer.id, [OrderLine(product_a.id, 1)], shipping_address)


def test_insufficient_stock_returns_400(client, buyer_headers, product_a, shipping_address):
    response = client.post(
        "/api/orders",
        json=_order_payload(shipping_address, (product_a.id, 11)),
        headers=buyer_headers,
    )
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert "Insufficient stock" in response.json()["detail"]
    assert response.json()["retryable"] is False


def test_sequential_orders_never_oversell(db, order_service, buyer, other_buyer, product_a, shipping_address):
    order_service.place_order(db, buyer.id, [OrderLine(product_a.id, 6)], shipping_address)
    with pytest.raises(InsufficientStockError):
        order_service.place_order(db, other_buyer.id, [OrderLine(product_a.id, 6)], shipping_address)

    db.expire_all()
    assert db.get(Product, product_a.id).stock_quantity == 4


@pytest.fixture
def file_session_factory(tmp_path):
    """Sessions on a file-backed SQLite database so each thread gets its own connection."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'checkout.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    # SQLite serializes writers; BEGIN IMMEDIATE makes waiting transactions
    # block on the write lock instead of failing on lock upgrade.
    @event.listens_for(engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


def test_concurrent_orders_never_oversell(file_session_factory, ledger, shipping_address):
    with file_session_factory() as session:
        seller = User(email="seller@example.com", display_name="Seller", role="seller", is_verified=True)
        buyer = User(email="buyer@example.com", display_name="Buyer", role="buyer")
        session.add_all([seller, buyer])
        session.flush()
        product = Product(
            seller_id=seller.id,
            name="Mug",
            description="Mug description",
            category="general",
            price=Decimal("10.00"),
            stock_quantity=5,
        )
        session.add(product)
        session.commit()
        buyer_id, product_id = buyer.id, product.id

    service = OrderService(ledger=ledger)
    checkouts = 8
    start = threading.Barrier(checkouts)

    def checkout(_):
        start.wait()
        with file_session_factory() as session:
            try:
                service.place_order(session, buyer_id, [OrderLine(product_id, 2)], shipping_address)
            except InsufficientStockError as e:
                return e
        return 2

    with ThreadPoolExecutor(max_workers=checkouts) as pool:
        outcomes = list(pool.map(checkout, range(checkouts)))

    reserved = [outcome for outcome in outcomes if isinstance(outcome, int)]
    rejected = [outcome for outcome in outcomes if isinstance(outcome, InsufficientStockError)]
    assert len(reserved) + len(rejected) == checkouts
    assert sum(reserved) <= 5
    assert len(reserved) == 2

    with file_session_factory() as session:
        stock = session.get(Product, product_id).stock_quantity
        assert stock >= 0
        assert stock == 5 - sum(reserved)
        assert session.query(Order).count() == len(reserved)


def test_place_order_from_cart_empties_cart(
    client, db, buyer, buyer_headers, product_a, product_b, shipping_address, add_to_cart
):
    add_to_cart(buyer, product_a, 3)
    add_to_cart(buyer, product_b, 1)

    response = client.post(
        "/api/orders/from-cart",
        json={"shipping_address": shipping_address, "payment_method": "cod"},
        headers=buyer_headers,
    )

    assert response.status_code == status.HTTP_201_CREATED
    assert Decimal(response.json()["total_amount"]) == Decimal("115.00")
    db.expire_all()
    assert db.query(CartItem).filter(CartItem.user_id == buyer.id).count() == 0


def test_place_order_from_empty_cart(db, order_service, buyer, shipping_address):
    with pytest.raises(EmptyCartError):
        order_service.place_order_from_cart(db, buyer.id, shipping_address)


def test_from_cart_rejection_keeps_cart(db, order_service, buyer, product_a, shipping_address, add_to_cart):
    add_to_cart(buyer, product_a, 50)

    with pytest.raises(InsufficientStockError):
        order_service.place_order_from_cart(db, buyer.id, shipping_address)

    assert db.query(CartItem).filter(CartItem.user_id == buyer.id).count() == 1


def test_run_with_deadline_raises_retryable_timeout():
    with pytest.raises(OrderTimeoutError) as exc_info:
        run_with_deadline(time.sleep, 0.05, 0.5)

    assert exc_info.value.retryable is True
    assert "Check your orders" in str(exc_info.value)


def test_timed_out_checkout_still_queued_never_runs():
    release = threading.Event()
    ran = []
    with ThreadPoolExecutor(max_workers=1) as executor:
        executor.submit(release.wait, 5)
        with pytest.raises(OrderTimeoutError):
            run_with_deadline(ran.append, 0.05, "checkout committed", executor=executor)
        release.set()

    assert ran == []


def test_from_cart_timeout_returns_504(client, buyer_headers, shipping_address):
    with patch(
        "marketplace.services.order_service.OrderService.place_order_from_cart_with_deadline",
        side_effect=OrderTimeoutError(8),
    ):
        response = client.post(
            "/api/orders/from-cart",
            json={"shipping_address": shipping_address},
            headers=buyer_headers,
        )

    assert response.status_code == status.HTTP_504_GATEWAY_TIMEOUT
    assert response.json()["retryable"] is True


def test_cancel_restores_exactly_its_own_stock_and_records(
    db, order_service, buyer, other_buyer, product_a, shipping_address
):
    mine = order_service.place_order(db, buyer.id, [OrderLine(product_a.id, 3)], shipping_address)
    theirs = order_service.place_order(db, other_buyer.id, [OrderLine(product_a.id, 2)], shipping_address)

    order_service.cancel_order(db, mine.id, buyer)

    db.expire_all()
    assert db.get(Product, product_a.id).stock_quantity == 8
    assert db.get(Order, mine.id).status == OrderStatus.CANCELLED.value
    assert db.get(Order, mine.id).cancelled_at is not None
    statuses = {
        item.order_id: db.query(FinancialRecord).filter(FinancialRecord.order_item_id == item.id).one().status
        for item in db.query(OrderItem).all()
    }
    assert statuses == {mine.id: "cancelled", theirs.id: "pending"}
    assert db.query(Payment).filter(Payment.order_id == mine.id).one().status == "pending"


def test_only_the_buyer_can_cancel(db, order_service, buyer, other_buyer, product_a, shipping_address):
    order = order_service.place_order(db, buyer.id, [OrderLine(product_a.id, 1)], shipping_address)

    with pytest.raises(PermissionDeniedError):
        order_service.cancel_order(db, order.id, other_buyer)


def test_cannot_cancel_shipped_order(client, db, buyer_headers, order_service, buyer, product_a, shipping_address):
    order = order_service.place_order(db, buyer.id, [OrderLine(product_a.id, 1)], shipping_address)
    order.status = OrderStatus.SHIPPED.value
    db.commit()

    response = client.post(f"/api/orders/{order.id}/cancel", headers=buyer_headers)

    assert response.status_code == status.HTTP_409_CONFLICT
    db.expire_all()
    assert db.get(Product, product_a.id).stock_quantity == 9


def test_delivered_clears_pending_records(
    client, db, headers_for, order_service, buyer, seller, product_a, shipping_address, effects
):
    order = order_service.place_order(db, buyer.id, [OrderLine(product_a.id, 2)], shipping_address)

    response = client.patch(
        f"/api/orders/{order.id}/status",
        json={"status": "shipped", "tracking_number": "1Z999"},
        headers=headers_for(seller),
    )
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["tracking_number"] == "1Z999"

    response = client.patch(
        f"/api/orders/{order.id}/status", json={"status": "delivered"}, headers=headers_for(seller)
    )
    assert response.status_code == status.HTTP_200_OK

    record = db.query(FinancialRecord).one()
    db.refresh(record)
    assert record.status == FinancialStatus.CLEARED.value
    assert record.cleared_at is not None
    assert "notify_order_status" in effects.dispatched


def test_status_cannot_move_backwards(db, order_service, buyer, admin, product_a, shipping_address):
    order = order_service.place_order(db, buyer.id, [OrderLine(product_a.id, 1)], shipping_address)
    order_service.update_status(db, order.id, OrderStatus.SHIPPED, admin)

    with pytest.raises(InvalidTransitionError):
        order_service.update_status(db, order.id, OrderStatus.CONFIRMED, admin)


def test_unrelated_seller_cannot_update_status(db, order_service, buyer, seller2, product_a, shipping_address):
    order = order_service.place_order(db, buyer.id, [OrderLine(product_a.id, 1)], shipping_address)

    with pytest.raises(PermissionDeniedError):
        order_service.update_status(db, order.id, OrderStatus.CONFIRMED, seller2)


def test_order_visibility_by_role(
    client, db, headers_for, order_service, buyer, other_buyer, seller, seller2, admin, product_a, shipping_address
):
    order = order_service.place_order(db, buyer.id, [OrderLine(product_a.id, 1)], shipping_address)
    order_id = order.id

    assert client.get(f"/api/orders/{order_id}", headers=headers_for(buyer)).status_code == 200
    assert client.get(f"/api/orders/{order_id}", headers=headers_for(seller)).status_code == 200
    assert client.get(f"/api/orders/{order_id}", headers=headers_for(admin)).status_code == 200
    assert client.get(f"/api/orders/{order_id}", headers=headers_for(other_buyer)).status_code == 404
    assert client.get(f"/api/orders/{order_id}", headers=headers_for(seller2)).status_code == 404

    listing = client.get("/api/orders", headers=headers_for(seller2)).json()
    assert listing["total"] == 0
    listing = client.get("/api/orders", headers=headers_for(buyer)).json()
    assert [o["id"] for o in listing["orders"]] == [order_id]
