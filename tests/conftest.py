"""
Shared fixtures: an in-memory SQLite database wired into the app through
dependency overrides, plus a store with ShipStation credentials and orders.
"""
import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JOB_WORKERS_ENABLED"] = "false"
os.environ["ENCRYPTION_KEY"] = "test-suite-encryption-key-000000"
os.environ["JWT_SECRET"] = "test-suite-jwt-secret"

import base64
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from app.auth import create_access_token
from app.database import get_db, Base
from app.dependencies import get_secret_cipher, get_session_factory
from app.models import CredentialScheme, Order, OrderItem, OrderStatus, Store, utcnow
from app.services.credentials import CredentialStore, SecretCipher, derive_fernet_key

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
TEST_CIPHER = SecretCipher(derive_fernet_key("test-suite-encryption-key-000000"))


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db
app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal
app.dependency_overrides[get_secret_cipher] = lambda: TEST_CIPHER


class FakeClock:
    """Injectable clock for the job queue."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 1, 15, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def setup_database():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def db_session():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def cipher():
    return TEST_CIPHER


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def store(db_session):
    store = Store(name="Test Store", is_active=True, integration_enabled=True)
    db_session.add(store)
    db_session.commit()
    db_session.refresh(store)
    return store


@pytest.fixture
def other_store(db_session):
    store = Store(name="Other Store", is_active=True, integration_enabled=True)
    db_session.add(store)
    db_session.commit()
    db_session.refresh(store)
    return store


@pytest.fixture
def api_credentials(db_session, store, cipher):
    return CredentialStore(db_session, cipher).generate(store.id, CredentialScheme.API_KEY_SECRET)


@pytest.fixture
def api_headers(api_credentials):
    return {"X-API-Key": api_credentials.identifier, "X-API-Secret": api_credentials.secret}


@pytest.fixture
def basic_credentials(db_session, store, cipher):
    return CredentialStore(db_session, cipher).generate(store.id, CredentialScheme.BASIC_USERNAME_PASSWORD)


@pytest.fixture
def basic_headers(basic_credentials):
    token = base64.b64encode(f"{basic_credentials.identifier}:{basic_credentials.secret}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


@pytest.fixture
def operator_headers(store):
    token = create_access_token({"sub": "operator-1", "store_id": store.id})
    return {"Authorization": f"Bearer {token}"}


DEFAULT_ADDRESS = {
    "name": "Ada Lovelace",
    "street": "12 Analytical Way",
    "city": "London",
    "state": "LDN",
    "postal_code": "N1 7AA",
    "country": "GB",
}


@pytest.fixture
def make_order(db_session, store):
    """Factory for persisted orders; keyword arguments override the defaults."""
    counter = {"n": 0}

    def _make(**overrides) -> Order:
        counter["n"] += 1
        items = overrides.pop("items", [("SKU-1", "Widget", 2, Decimal("10.00"))])
        now = utcnow()
        values = {
            "store_id": store.id,
            "order_number": f"ORD-{1000 + counter['n']}",
            "status": OrderStatus.CONFIRMED,
            "customer_email": "ada@example.com",
            "shipping_address": dict(DEFAULT_ADDRESS),
            "shipping_method": "Ground",
            "total_amount": Decimal("20.00"),
            "created_at": now - timedelta(hours=2),
            "updated_at": now - timedelta(hours=1),
        }
        values.update(overrides)
        order = Order(**values)
        for position, (sku, name, qty, price) in enumerate(items):
            order.items.append(OrderItem(position=position, sku=sku, name=name, quantity=qty, unit_price=price))
        db_session.add(order)
        db_session.commit()
        db_session.refresh(order)
        return order

    return _make
