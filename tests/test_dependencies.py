from datetime import datetime, timedelta, timezone

from fastapi import status
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from marketplace.config import settings
from marketplace.dependencies import get_current_user_optional


def _token(user_id: int, expires_in: timedelta = timedelta(hours=1), **claims) -> str:
    payload = {"sub": str(user_id), "exp": datetime.now(timezone.utc) + expires_in, **claims}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def test_get_current_user_optional_resolves_token(db, buyer):
    credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials=_token(buyer.id))

    user = get_current_user_optional(credentials, db)

    assert user is not None
    assert user.id == buyer.id


def test_get_current_user_optional_none(db):
    assert get_current_user_optional(None, db) is None


def test_get_current_user_optional_rejects_refresh_token(db, buyer):
    token = _token(buyer.id, type="refresh")
    credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)

    assert get_current_user_optional(credentials, db) is None


def test_missing_token_is_unauthorized(client):
    response = client.get("/api/orders")
    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert "authenticated" in response.json()["detail"].lower()


def test_invalid_token_is_unauthorized(client):
    response = client.get("/api/orders", headers={"Authorization": "Bearer invalid_token_here"})
    assert response.status_code == status.HTTP_401_UNAUTHORIZED


def test_expired_token_is_unauthorized(client, buyer):
    token = _token(buyer.id, expires_in=timedelta(hours=-1))
    response = client.get("/api/orders", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == status.HTTP_401_UNAUTHORIZED


def test_token_for_unknown_user_is_unauthorized(client, db, buyer):
    buyer_id = buyer.id
    db.delete(buyer)
    db.commit()
    token = _token(buyer_id)

    response = client.get("/api/orders", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == status.HTTP_401_UNAUTHORIZED


def test_inactive_user_is_forbidden(client, db, buyer, buyer_headers):
    buyer.is_active = False
    db.commit()

    response = client.get("/api/orders", headers=buyer_headers)
    assert response.status_code == status.HTTP_403_FORBIDDEN


def test_admin_routes_reject_buyers(client, buyer_headers):
    response = client.get("/api/financial/platform/overview", headers=buyer_headers)
    assert response.status_code == status.HTTP_403_FORBIDDEN
