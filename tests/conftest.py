import hashlib
import hmac
import json
import os
import tempfile
import time
from decimal import Decimal

# Settings are read at import time; configure before importing the app.
_TMP = tempfile.mkdtemp(prefix="storefront-tests-")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AUTH_JWT_SECRET"] = "test-jwt-secret"
os.environ["FX_CACHE_PATH"] = os.path.join(_TMP, "currency-cache.json")
os.environ["UPLOADS_DIR"] = os.path.join(_TMP, "uploads")
os.environ["SUPPORT_KB_DIR"] = os.path.join(_TMP, "kb")
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["PAYPAL_CLIENT_ID_SANDBOX"] = "pp-client"
os.environ["PAYPAL_CLIENT_SECRET_SANDBOX"] = "pp-secret"
os.environ["NOWPAYMENTS_API_KEY"] = "np-key"
os.environ["SHIPPO_API_TEST_KEY"] = "shippo_test_key"
os.environ["PUBLIC_BASE_URL"] = "https://shop.test"
for _name in ("OPENAI_API_KEY", "SMTP_HOST", "GOAFFPRO_ACCESS_TOKEN", "GOAFFPRO_PUBLIC_TOKEN",
              "NOWPAYMENTS_IPN_SECRET"):
    os.environ.pop(_name, None)

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session, SQLModel  # noqa: E402

from storefront import database  # noqa: E402
from storefront.core import http  # noqa: E402
from storefront.core.auth import create_access_token, hash_password  # noqa: E402
from storefront.database import get_session  # noqa: E402
from storefront.main import app  # noqa: E402
from storefront.models.product import Product  # noqa: E402
from storefront.models.user import User  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_db():
    SQLModel.metadata.drop_all(database.engine)
    SQLModel.metadata.create_all(database.engine)
    yield


@pytest.fixture(autouse=True)
def clear_fx_cache():
    path = os.environ["FX_CACHE_PATH"]
    if os.path.exists(path):
        os.remove(path)
    yield


@pytest.fixture
def session():
    with Session(database.engine) as s:
        yield s


@pytest.fixture
def client(session):
    app.dependency_overrides[get_session] = lambda: session
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


class MockHttp:
    """Routes outbound httpx calls to a handler and records the requests."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.handler = lambda request: httpx.Response(503, json={"error": "offline"})

    def _dispatch(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self._dispatch))

    def find(self, path_fragment: str) -> list[httpx.Request]:
        return [r for r in self.requests if path_fragment in r.url.path]


@pytest.fixture(autouse=True)
def mock_http(monkeypatch):
    """No test talks to the network; by default every provider is down."""
    mock = MockHttp()
    monkeypatch.setattr(http, "make_http_client", mock.client)
    return mock


@pytest.fixture
def make_user(session):
    def _make(email="buyer@example.com", role="USER", password="password123", is_active=True):
        user = User(
            email=email.lower(),
            password_hash=hash_password(password),
            name=email.split("@")[0],
            role=role,
            is_active=is_active,
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        return user

    return _make


@pytest.fixture
def admin(make_user):
    return make_user("admin@example.com", role="ADMIN")


@pytest.fixture
def admin_headers(admin):
    return {"Authorization": f"Bearer {create_access_token(admin)}"}


@pytest.fixture
def make_product(session):
    def _make(name="Crystal Grid", price="10.00", **kwargs):
        product = Product(
            name=name,
            slug=kwargs.pop("slug", name.lower().replace(" ", "-")),
            price=Decimal(price),
            **kwargs,
        )
        session.add(product)
        session.commit()
        session.refresh(product)
        return product

    return _make


def stripe_signature(payload: bytes, secret: str = "whsec_test", timestamp: int | None = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    sig = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def stripe_event(obj: dict, event_type: str = "checkout.session.completed") -> bytes:
    return json.dumps({"id": "evt_1", "type": event_type, "data": {"object": obj}}).encode()


ON_ADDRESS = {
    "full_name": "Jane Doe",
    "street": "1 King St W",
    "city": "Toronto",
    "state": "ON",
    "zip": "M5H 1A1",
    "country": "CA",
}
