from functools import lru_cache
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from marketplace.config import settings
from marketplace.models import User, get_db
from marketplace.models.enums import UserRole
from marketplace.services.effects import EffectsDispatcher, build_default_dispatcher
from marketplace.services.ledger import FinancialLedger
from marketplace.services.order_service import OrderService
from marketplace.services.payment_service import PaymentService
from marketplace.services.payout_service import PayoutService
from marketplace.services.stripe_service import StripeGateway, build_stripe_gateway

security = HTTPBearer(auto_error=False)


def get_current_user_optional(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    db: Annotated[Session, Depends(get_db)],
) -> User | None:
    if not credentials:
        return None
    token = credentials.credentials
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        sub = payload.get("sub")
        token_type = payload.get("type")
        if sub is None:
            return None
        if token_type not in {None, "access"}:
            return None
        user_id = int(sub) if not isinstance(sub, int) else sub
    except (JWTError, ValueError):
        return None
    return db.query(User).filter(User.id == user_id).first()


def get_current_user(
    user: Annotated[User | None, Depends(get_current_user_optional)],
) -> User:
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is disabled")
    return user


def require_roles(*roles: UserRole):
    allowed = {role.value for role in roles}

    def checker(user: Annotated[User, Depends(get_current_user)]) -> User:
        if user.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return user

    return checker


require_admin = require_roles(UserRole.ADMIN)
require_seller_or_admin = require_roles(UserRole.SELLER, UserRole.ADMIN)


@lru_cache(maxsize=1)
def _default_dispatcher() -> EffectsDispatcher:
    return build_default_dispatcher(settings.EFFECTS_MAX_WORKERS)


def get_effects_dispatcher() -> EffectsDispatcher:
    return _default_dispatcher()


@lru_cache(maxsize=1)
def _stripe_gateway(secret_key: str) -> StripeGateway:
    return build_stripe_gateway(secret_key)


def get_stripe_gateway() -> StripeGateway | None:
    """Configured Stripe gateway, or None; services raise PaymentNotConfiguredError on first use."""
    secret_key = settings.STRIPE_SECRET_KEY.strip()
    if not secret_key:
        return None
    return _stripe_gateway(secret_key)


def get_ledger() -> FinancialLedger:
    return FinancialLedger(settings.PLATFORM_FEE_RATE)


def get_order_service(
    ledger: Annotated[FinancialLedger, Depends(get_ledger)],
    dispatcher: Annotated[EffectsDispatcher, Depends(get_effects_dispatcher)],
) -> OrderService:
    return OrderService(ledger=ledger, dispatcher=dispatcher)


def get_payment_service(
    gateway: Annotated[StripeGateway | None, Depends(get_stripe_gateway)],
    dispatcher: Annotated[EffectsDispatcher, Depends(get_effects_dispatcher)],
) -> PaymentService:
    return PaymentService(gateway=gateway, dispatcher=dispatcher)


def get_payout_service(
    ledger: Annotated[FinancialLedger, Depends(get_ledger)],
    dispatcher: Annotated[EffectsDispatcher, Depends(get_effects_dispatcher)],
) -> PayoutService:
    return PayoutService(ledger=ledger, dispatcher=dispatcher)
