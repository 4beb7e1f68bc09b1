import os
from decimal import Decimal
from typing import Generator

# Override settings for tests before importing app modules
TEST_DATABASE_URL = "sqlite:///:memory:"
PLATFORM_WALLET = "PLATFORMwa11et1111111111111111111111111111111"
USER_WALLET = "USERwa11et111111111111111111111111111111111"
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["JWT_SECRET"] = "test-secret-key-for-testing-only"
os.environ["BASE_URL"] = "https://api.example.com"
os.environ["PLATFORM_WALLET_ADDRESS"] = PLATFORM_WALLET
os.environ["VENDOR_URL"] = "https://vendor.example.com/api"
os.environ["VENDOR_MERCHANT_ID"] = "merchant-1"
os.environ["VENDOR_SECRET_KEY"] = "vendor-secret"
os.environ["VENDOR_API_KEY"] = "vendor-api-key"
os.environ["VENDOR_CALLBACK_KEY"] = "callback-secret"
os.environ["VERIFY_RETRY_DELAY_SECONDS"] = "0"
os.environ["RECONCILE_THROTTLE_SECONDS"] = "0"
os.environ["WORKER_ENABLED"] = "false"
os.environ["CACHE_URL"] = ""

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.models import CryptoTransaction, Order
from app.models.database import Base, get_db
from app.models.user import User

# Create test database engine
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


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


@pytest.fixture(scope="function")
def client(db: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def test_user(db: Session) -> User:
    user = User(wallet_address=USER_WALLET, display_name="Test User", email="test@example.com")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def test_user2(db: Session) -> User:
    user = User(wallet_address="SECONDwa11et11111111111111111111111111111111", display_name="Second")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_token(user: User, **claims) -> str:
    payload = {"sub": str(user.id), "type": "access", **claims}
    return jwt.encode(payload, os.environ["JWT_SECRET"], algorithm="HS256")


@pytest.fixture
def auth_headers(test_user: User) -> dict[str, str]:
    """Get auth headers with token."""
    return {"Authorization": f"Bearer {make_token(test_user)}"}


@pytest.fixture
def make_order(db: Session, test_user: User):
    """Factory for an order with its crypto transaction."""
    counter = {"n": 0}

    def _make(
        status: str = "pending",
        tx_state: str = "pending",
        crypto_amount: Decimal = Decimal("0.02"),
        crypto_currency: str = "SOL",
        user: User | None = None,
        signature: str | None = None,
        **fields,
    ) -> Order:
        counter["n"] += 1
        owner = user or test_user
        values = {
            "order_number": f"TESTMLBB{counter['n']:012X}",
            "user_id": owner.id,
            "order_type": "topup",
            "status": status,
            "amount": Decimal("4.99"),
            "original_amount": Decimal("4.99"),
            "currency": "USD",
            "crypto_amount": crypto_amount,
            "crypto_currency": crypto_currency,
            "product_id": "12",
            "product_item_id": "345",
            "product_title": "Mobile Legends Diamonds",
            "user_data": {"userId": "123456789", "zoneId": "2001"},
        }
        values.update(fields)
        order = Order(**values)
        db.add(order)
        db.flush()
        db.add(
            CryptoTransaction(
                order_id=order.id,
                transaction_signature=signature or f"sig{counter['n']:040d}",
                wallet_from=owner.wallet_address,
                wallet_to=PLATFORM_WALLET,
                amount=crypto_amount,
                token=crypto_currency,
                state=tx_state,
            )
        )
        db.commit()
        db.refresh(order)
        return order

    return _make
