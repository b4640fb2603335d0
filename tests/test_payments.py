from decimal import Decimal

import pytest
from fastapi import status

from marketplace.dependencies import get_stripe_gateway
from marketplace.main import app
from marketplace.models import Payment
from marketplace.models.enums import PaymentMethod, PaymentStatus
from marketplace.services.errors import PaymentProviderError
from marketplace.services.order_service import OrderLine
from marketplace.services.stripe_service import ProviderIntentRef, RefundRef


@pytest.fixture
def card_order(db, order_service, buyer, product_a, shipping_address):
    """$10 card order: 10.00 + 60.00 shipping."""
    return order_service.place_order(
        db, buyer.id, [OrderLine(product_a.id, 1)], shipping_address, payment_method=PaymentMethod.STRIPE
    )


def _complete(db, order_id, charge_id="ch_1"):
    payment = db.query(Payment).filter(Payment.order_id == order_id).one()
    payment.status = PaymentStatus.COMPLETED.value
    payment.provider_payment_id = "pi_1"
    payment.provider_charge_id = charge_id
    db.commit()
    return payment


def test_create_payment_intent(client, db, buyer_headers, card_order, gateway):
    gateway.create_intent.return_value = ProviderIntentRef(
        id="pi_1", client_secret="pi_1_secret", status="requires_payment_method",
        amount=Decimal("70.00"), currency="usd",
    )

    response = client.post(f"/api/orders/{card_order.id}/payment-intent", headers=buyer_headers)

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["payment_intent_id"] == "pi_1"
    assert data["client_secret"] == "pi_1_secret"
    assert Decimal(data["amount"]) == Decimal("70.00")

    kwargs = gateway.create_intent.call_args.kwargs
    assert kwargs["amount"] == Decimal("70.00")
    assert kwargs["metadata"]["order_id"] == str(card_order.id)
    assert kwargs["idempotency_key"] == f"order-{card_order.id}-payment-intent"

    payment = db.query(Payment).filter(Payment.order_id == card_order.id).one()
    db.refresh(payment)
    assert payment.provider_payment_id == "pi_1"
    assert payment.status == PaymentStatus.PROCESSING.value


def test_existing_payment_intent_is_reused(client, db, buyer_headers, card_order, gateway):
    payment = db.query(Payment).filter(Payment.order_id == card_order.id).one()
    payment.provider_payment_id = "pi_existing"
    payment.client_secret = "pi_existing_secret"
    db.commit()

    response = client.post(f"/api/orders/{card_order.id}/payment-intent", headers=buyer_headers)

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["payment_intent_id"] == "pi_existing"
    gateway.create_intent.assert_not_called()


def test_payment_intent_only_for_own_card_orders(
    client, db, headers_for, other_buyer, buyer_headers, order_service, buyer, product_a, shipping_address, card_order
):
    response = client.post(f"/api/orders/{card_order.id}/payment-intent", headers=headers_for(other_buyer))
    assert response.status_code == status.HTTP_403_FORBIDDEN

    cod_order = order_service.place_order(db, buyer.id, [OrderLine(product_a.id, 1)], shipping_address)
    response = client.post(f"/api/orders/{cod_order.id}/payment-intent", headers=buyer_headers)
    assert response.status_code == status.HTTP_400_BAD_REQUEST


def test_provider_failure_returns_502(client, buyer_headers, card_order, gateway):
    gateway.create_intent.side_effect = PaymentProviderError("Payment provider error: card network down")

    response = client.post(f"/api/orders/{card_order.id}/payment-intent", headers=buyer_headers)

    assert response.status_code == status.HTTP_502_BAD_GATEWAY
    assert response.json()["error"] == "PaymentProviderError"


def test_refund_requires_completed_payment(client, admin_headers, card_order, gateway):
    response = client.post(f"/api/payments/{card_order.id}/refund", json={}, headers=admin_headers)

    assert response.status_code == status.HTTP_409_CONFLICT
    gateway.create_refund.assert_not_called()


def test_full_refund(client, db, admin_headers, card_order, gateway):
    _complete(db, card_order.id)
    gateway.create_refund.return_value = RefundRef(id="re_1", amount=Decimal("70.00"), status="succeeded")

    response = client.post(
        f"/api/payments/{card_order.id}/refund",
        json={"reason": "requested_by_customer"},
        headers=admin_headers,
    )

    assert response.status_code == status.HTTP_200_OK
    assert Decimal(response.json()["amount"]) == Decimal("70.00")
    gateway.create_refund.assert_called_once_with(
        "ch_1", amount=None, reason="requested_by_customer", idempotency_key=f"order-{card_order.id}-refund"
    )

    payment = db.query(Payment).filter(Payment.order_id == card_order.id).one()
    db.refresh(payment)
    assert payment.status == PaymentStatus.REFUNDED.value
    assert payment.refund_id == "re_1"
    assert payment.refunded_amount == Decimal("70.00")


def test_partial_refund_sends_amount(client, db, admin_headers, card_order, gateway):
    _complete(db, card_order.id)
    gateway.create_refund.return_value = RefundRef(id="re_2", amount=Decimal("20.00"), status="succeeded")

    response = client.post(f"/api/payments/{card_order.id}/refund", json={"amount": "20.00"}, headers=admin_headers)

    assert response.status_code == status.HTTP_200_OK
    gateway.create_refund.assert_called_once_with(
        "ch_1", amount=Decimal("20.00"), reason=None, idempotency_key=f"order-{card_order.id}-refund"
    )


def test_refund_above_paid_amount_rejected(client, db, admin_headers, card_order, gateway):
    _complete(db, card_order.id)

    response = client.post(f"/api/payments/{card_order.id}/refund", json={"amount": "70.01"}, headers=admin_headers)

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    gateway.create_refund.assert_not_called()


def test_refund_is_admin_only(client, db, buyer_headers, card_order, gateway):
    _complete(db, card_order.id)

    response = client.post(f"/api/payments/{card_order.id}/refund", json={}, headers=buyer_headers)

    assert response.status_code == status.HTTP_403_FORBIDDEN
    gateway.create_refund.assert_not_called()


def test_payment_status_visibility(client, headers_for, buyer, other_buyer, admin, card_order):
    response = client.get(f"/api/payments/{card_order.id}/status", headers=headers_for(buyer))
    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["payment_status"] == "processing"
    assert data["provider"] == "stripe"
    assert Decimal(data["amount"]) == Decimal("70.00")

    assert client.get(f"/api/payments/{card_order.id}/status", headers=headers_for(admin)).status_code == 200
    assert client.get(f"/api/payments/{card_order.id}/status", headers=headers_for(other_buyer)).status_code == 403


def test_payment_status_unknown_order(client, buyer_headers):
    response = client.get("/api/payments/999/status", headers=buyer_headers)
    assert response.status_code == status.HTTP_404_NOT_FOUND


def test_refund_of_cod_order_conflicts_without_stripe_configured(
    client, db, admin_headers, order_service, buyer, product_a, shipping_address, monkeypatch
):
    cod_order = order_service.place_order(db, buyer.id, [OrderLine(product_a.id, 1)], shipping_address)
    app.dependency_overrides.pop(get_stripe_gateway)
    monkeypatch.setenv("STRIPE_SECRET_KEY", "")

    response = client.post(f"/api/payments/{cod_order.id}/refund", json={}, headers=admin_headers)

    assert response.status_code == status.HTTP_409_CONFLICT
    assert response.json()["error"] == "RefundNotAllowedError"


def test_refund_of_completed_payment_without_stripe_configured(client, db, admin_headers, card_order, monkeypatch):
    _complete(db, card_order.id)
    app.dependency_overrides.pop(get_stripe_gateway)
    monkeypatch.setenv("STRIPE_SECRET_KEY", "")

    response = client.post(f"/api/payments/{card_order.id}/refund", json={}, headers=admin_headers)

    assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    assert response.json()["error"] == "PaymentNotConfiguredError"
    payment = db.query(Payment).filter(Payment.order_id == card_order.id).one()
    db.refresh(payment)
    assert payment.status == PaymentStatus.COMPLETED.value


def test_payment_intent_validated_before_stripe_configuration(
    client, db, buyer_headers, order_service, buyer, product_a, shipping_address, monkeypatch
):
    cod_order = order_service.place_order(db, buyer.id, [OrderLine(product_a.id, 1)], shipping_address)
    app.dependency_overrides.pop(get_stripe_gateway)
    monkeypatch.setenv("STRIPE_SECRET_KEY", "")

    response = client.post(f"/api/orders/{cod_order.id}/payment-intent", headers=buyer_headers)

    assert response.status_code == status.HTTP_400_BAD_REQUEST


def test_second_refund_conflicts_without_calling_provider(client, db, admin_headers, card_order, gateway):
    _complete(db, card_order.id)
    gateway.create_refund.return_value = RefundRef(id="re_1", amount=Decimal("70.00"), status="succeeded")

    first = client.post(f"/api/payments/{card_order.id}/refund", json={}, headers=admin_headers)
    second = client.post(f"/api/payments/{card_order.id}/refund", json={"amount": "5.00"}, headers=admin_headers)

    assert first.status_code == status.HTTP_200_OK
    assert second.status_code == status.HTTP_409_CONFLICT
    gateway.create_refund.assert_called_once()


def test_provider_refund_failure_leaves_payment_completed(client, db, admin_headers, card_order, gateway):
    _complete(db, card_order.id)
    gateway.create_refund.side_effect = PaymentProviderError("Payment provider error: charge already refunded")

    response = client.post(f"/api/payments/{card_order.id}/refund", json={}, headers=admin_headers)

    assert response.status_code == status.HTTP_502_BAD_GATEWAY
    payment = db.query(Payment).filter(Payment.order_id == card_order.id).one()
    db.refresh(payment)
    assert payment.status == PaymentStatus.COMPLETED.value
    assert payment.refund_id is None


@pytest.fixture
def listed_payments(db, order_service, card_order, other_buyer, product_b, shipping_address):
    """The buyer's completed card payment (with invoice) and another buyer's pending COD payment."""
    _complete(db, card_order.id)
    card_order.invoice_number = f"INV-202610-{card_order.id:06d}"
    db.commit()
    cod_order = order_service.place_order(db, other_buyer.id, [OrderLine(product_b.id, 1)], shipping_address)
    return card_order, cod_order


def test_admin_lists_payments_newest_first(client, admin_headers, listed_payments):
    card_order, cod_order = listed_payments

    response = client.get("/api/payments", headers=admin_headers)

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["total"] == 2
    assert data["total_pages"] == 1
    assert [p["order_id"] for p in data["payments"]] == [cod_order.id, card_order.id]
    assert data["payments"][0]["buyer_email"] == "other@example.com"
    assert data["payments"][0]["amount"] == "85.00"
    assert data["payments"][1]["invoice_number"] == card_order.invoice_number


@pytest.mark.parametrize(
    "params,expected",
    [
        ({"status": "completed"}, ["card"]),
        ({"status": "pending"}, ["cod"]),
        ({"search": "OTHER"}, ["cod"]),
        ({"search": "buyer@example"}, ["card"]),
        ({"search": "inv-202610"}, ["card"]),
        ({"search": "nobody"}, []),
    ],
)
def test_payment_listing_filters(client, admin_headers, listed_payments, params, expected):
    orders = dict(zip(("card", "cod"), listed_payments))

    data = client.get("/api/payments", params=params, headers=admin_headers).json()

    assert [p["order_id"] for p in data["payments"]] == [orders[name].id for name in expected]
    assert data["total"] == len(expected)


def test_payment_listing_date_window_and_pages(client, admin_headers, listed_payments):
    data = client.get("/api/payments", params={"limit": 1, "page": 2}, headers=admin_headers).json()
    assert data["total"] == 2
    assert data["total_pages"] == 2
    assert len(data["payments"]) == 1

    data = client.get("/api/payments", params={"end": "2000-01-01T00:00:00"}, headers=admin_headers).json()
    assert data["total"] == 0


def test_payment_listing_is_admin_only(client, buyer_headers, listed_payments):
    assert client.get("/api/payments", headers=buyer_headers).status_code == status.HTTP_403_FORBIDDEN
