import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Generator
from unittest.mock import MagicMock

# Override settings for tests before importing app modules
TEST_DATABASE_URL = "sqlite:///:memory:"
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["JWT_SECRET"] = "test-secret-key-for-testing-only"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_mock"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_mock"
os.environ["PLATFORM_FEE_RATE"] = "0.05"
os.environ["TAX_RATE"] = "0"
os.environ["SHIPPING_FLAT_FEE"] = "60"
os.environ["FREE_SHIPPING_THRESHOLD"] = "1000"
os.environ["CURRENCY"] = "usd"
os.environ["SMTP_HOST"] = ""
os.environ["ADMIN_EMAIL"] = ""

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from marketplace.config import settings
from marketplace.dependencies import get_effects_dispatcher, get_stripe_gateway
from marketplace.main import app
from marketplace.models import CartItem, Product, User
from marketplace.models.database import Base, get_db, get_session_factory
from marketplace.services.effects import EffectsDispatcher
from marketplace.services.ledger import FinancialLedger
from marketplace.services.order_service import OrderService
from marketplace.services.stripe_service import StripeGateway

# Create test database engine
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


class RecordingDispatcher(EffectsDispatcher):
    """Runs effects inline and remembers which ones were dispatched."""

    def __init__(self):
        super().__init__(executor=None)
        self.dispatched: list[str] = []

    def dispatch(self, effects):
        self.dispatched.extend(effect.name for effect in effects)
        super().dispatch(effects)


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=test_engine)
    db_session = TestSessionLocal()
    try:
        yield db_session
    finally:
        db_session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def effects() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def gateway() -> MagicMock:
    return MagicMock(spec=StripeGateway)


@pytest.fixture(scope="function")
def client(db: Session, effects: RecordingDispatcher, gateway: MagicMock) -> Generator[TestClient, None, None]:
    """Create a test client with database, provider and effects overrides."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestSessionLocal
    app.dependency_overrides[get_effects_dispatcher] = lambda: effects
    app.dependency_overrides[get_stripe_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def ledger() -> FinancialLedger:
    return FinancialLedger(Decimal("0.05"))


@pytest.fixture
def order_service(ledger: FinancialLedger, effects: RecordingDispatcher) -> OrderService:
    return OrderService(ledger=ledger, dispatcher=effects)


def _create_user(db: Session, email: str, role: str, **kwargs) -> User:
    user = User(email=email, display_name=email.split("@")[0].title(), role=role, **kwargs)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def buyer(db: Session) -> User:
    return _create_user(db, "buyer@example.com", "buyer")


@pytest.fixture
def other_buyer(db: Session) -> User:
    return _create_user(db, "other@example.com", "buyer")


@pytest.fixture
def seller(db: Session) -> User:
    return _create_user(db, "seller@example.com", "seller", is_verified=True)


@pytest.fixture
def seller2(db: Session) -> User:
    return _create_user(db, "seller2@example.com", "seller", is_verified=True)


@pytest.fixture
def unverified_seller(db: Session) -> User:
    return _create_user(db, "newshop@example.com", "seller", is_verified=False)


@pytest.fixture
def admin(db: Session) -> User:
    return _create_user(db, "admin@example.com", "admin", is_verified=True)


def _create_product(db: Session, seller: User, name: str, price: str, stock: int, **kwargs) -> Product:
    product = Product(
        seller_id=seller.id,
        name=name,
        description=f"{name} description",
        category="general",
        price=Decimal(price),
        stock_quantity=stock,
        **kwargs,
    )
    db.add(product)
    db.commit()
    db.refresh(product)
    return product


@pytest.fixture
def product_a(db: Session, seller: User) -> Product:
    """$10.00 item sold by the first seller."""
    return _create_product(db, seller, "Mug", "10.00", 10)


@pytest.fixture
def product_b(db: Session, seller2: User) -> Product:
    """$25.00 item sold by the second seller."""
    return _create_product(db, seller2, "Poster", "25.00", 5)


@pytest.fixture
def unverified_product(db: Session, unverified_seller: User) -> Product:
    return _create_product(db, unverified_seller, "Knockoff", "5.00", 100)


@pytest.fixture
def shipping_address() -> dict:
    return {
        "full_name": "Ada Buyer",
        "phone": "+15550100",
        "line1": "1 Market St",
        "line2": None,
        "city": "Springfield",
        "state": "IL",
        "postal_code": "62701",
        "country": "US",
    }


@pytest.fixture
def add_to_cart(db: Session) -> Callable[[User, Product, int], CartItem]:
    def _add(user: User, product: Product, quantity: int) -> CartItem:
        item = CartItem(user_id=user.id, product_id=product.id, quantity=quantity)
        db.add(item)
        db.commit()
        return item

    return _add


def make_token(user: User, expires_in: timedelta = timedelta(hours=1)) -> str:
    return jwt.encode(
        {"sub": str(user.id), "exp": datetime.now(timezone.utc) + expires_in, "type": "access"},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )


@pytest.fixture
def headers_for() -> Callable[[User], dict[str, str]]:
    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(user)}"}

    return _headers


@pytest.fixture
def buyer_headers(buyer: User, headers_for) -> dict[str, str]:
    return headers_for(buyer)


@pytest.fixture
def admin_headers(admin: User, headers_for) -> dict[str, str]:
    return headers_for(admin)
