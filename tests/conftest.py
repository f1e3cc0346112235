import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_orderpay.db")

from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import orderpay.auth
from orderpay import orders
from orderpay.database import Base, get_db
from orderpay.gateways import reset_gateways, set_gateway
from orderpay.gateways.card import CardGateway
from orderpay.gateways.click import ClickGateway
from orderpay.gateways.payme import PaymeGateway
from orderpay.gateways.uzum import UzumGateway
from orderpay.main import app as fastapi_app
from orderpay.models import Product, User

# Setup test database
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

CLICK_SECRET = "click_secret"
PAYME_KEY = "payme_key"
UZUM_SECRET = "uzum_secret"
STRIPE_WEBHOOK_SECRET = "whsec_test"

EXAMPLE_ITEMS = [
    {"product_id": 1, "quantity": 2, "unit_price": Decimal("50000")},
    {"product_id": 2, "quantity": 1, "unit_price": Decimal("30000")},
]


class ProviderStub:
    """Scripted provider API behind an httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.responses = []

    def reply(self, body, status=200):
        self.responses.append((status, body))

    def fail(self, exc):
        self.responses.append(exc)

    def __call__(self, request):
        self.requests.append(request)
        response = self.responses.pop(0) if self.responses else (200, {})
        if isinstance(response, Exception):
            raise response
        status, body = response
        return httpx.Response(status, json=body)

    def client(self):
        return httpx.Client(transport=httpx.MockTransport(self))


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def isolated_registry():
    reset_gateways()
    yield
    reset_gateways()


@pytest.fixture(autouse=True)
def producer(mocker):
    # Mock the Kafka producer; sent events are kept as (topic, value) pairs
    kafka = mocker.Mock()
    kafka.sent = []
    kafka.send.side_effect = lambda topic, key, value: kafka.sent.append((topic, value))
    mocker.patch("orderpay.events.get_producer", return_value=kafka)
    return kafka


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def seed(db):
    db.add_all(
        [
            User(id=1, is_active=True),
            User(id=2, is_active=True),
            Product(id=1, title="Phone", is_active=True),
            Product(id=2, title="Phone case", is_active=True),
            Product(id=3, title="Discontinued charger", is_active=False),
        ]
    )
    db.commit()


@pytest.fixture
def published(producer):
    # Only events produced after the fixtures requested before this one
    producer.sent.clear()
    return producer.sent


@pytest.fixture
def make_order(db, seed):
    def _make(user_id=1, items=EXAMPLE_ITEMS, **kwargs):
        return orders.create_order(db, user_id=user_id, currency_id=1, items=items, **kwargs)

    return _make


@pytest.fixture
def example_order(make_order):
    """130000 in items, 5000 tax, 10000 shipping: 145000 to pay."""
    return make_order(tax=Decimal("5000"), shipping=Decimal("10000"))


@pytest.fixture
def provider():
    return ProviderStub()


@pytest.fixture
def click(provider):
    gateway = ClickGateway(
        service_id="svc1",
        merchant_id="m1",
        merchant_user_id="mu1",
        secret_key=CLICK_SECRET,
        checkout_url="https://my.click.uz/services/pay",
        api_url="https://api.click.uz/v2/merchant",
        http_client=provider.client(),
    )
    set_gateway(gateway)
    return gateway


@pytest.fixture
def payme(provider):
    gateway = PaymeGateway(
        merchant_id="pm1",
        secret_key=PAYME_KEY,
        checkout_url="https://checkout.paycom.uz",
        api_url="https://checkout.paycom.uz/api",
        http_client=provider.client(),
    )
    set_gateway(gateway)
    return gateway


@pytest.fixture
def uzum(provider):
    gateway = UzumGateway(
        merchant_id="uz1",
        secret_key=UZUM_SECRET,
        api_key="uzum_api_key",
        api_url="https://api.uzum.test/v1",
        webhook_url="http://testserver/payments/uzum/callback",
        http_client=provider.client(),
    )
    set_gateway(gateway)
    return gateway


@pytest.fixture
def card():
    gateway = CardGateway(secret_key="sk_test", webhook_secret=STRIPE_WEBHOOK_SECRET, currency="uzs")
    set_gateway(gateway)
    return gateway


@pytest.fixture
def client():
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = override_get_db
    # Mock auth verification; the caller is user 1
    fastapi_app.dependency_overrides[orderpay.auth.verify_token] = lambda: {"sub": "1"}
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()
