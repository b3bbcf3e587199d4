import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from auth import Principal, TokenVerifier, get_verifier
from database import Store, get_store
from notifications import get_mailer
from payments import PaymentGateway, get_gateway
from schemas import Product, Role, User

SECRET = "test-secret"
SELLER = "seller@example.com"
BUYER = "buyer@example.com"
ADMIN = "admin@example.com"


class RecordingMailer:
    def __init__(self):
        self.sent = []

    def send(self, to, subject, body):
        self.sent.append((to, subject, body))


class StubGateway(PaymentGateway):
    """Gateway that skips Stripe and replays a prepared settlement."""

    def __init__(self):
        super().__init__(api_key="sk_test", webhook_secret="whsec_test")
        self.settlement = None
        self.intents = []

    def create_intent(self, order_id, amount, currency=None):
        self.intents.append((order_id, amount))
        return {"client_secret": f"secret_{order_id}", "intent_id": f"pi_{order_id}"}

    def parse_event(self, payload, signature):
        return self.settlement


@pytest.fixture()
def store():
    s = Store(mongomock.MongoClient()["vendersphere_test"])
    s.ensure_indexes()
    return s


@pytest.fixture()
def verifier():
    return TokenVerifier(SECRET)


@pytest.fixture()
def mailer():
    return RecordingMailer()


@pytest.fixture()
def gateway():
    return StubGateway()


@pytest.fixture()
def client(store, verifier, mailer, gateway):
    main.app.dependency_overrides[get_store] = lambda: store
    main.app.dependency_overrides[get_verifier] = lambda: verifier
    main.app.dependency_overrides[get_mailer] = lambda: mailer
    main.app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture()
def buyer():
    return Principal(email=BUYER)


@pytest.fixture()
def seller(store):
    make_user(store, SELLER, Role.SELLER)
    return Principal(email=SELLER, role=Role.SELLER.value)


@pytest.fixture()
def admin(store):
    make_user(store, ADMIN, Role.ADMIN)
    return Principal(email=ADMIN, role=Role.ADMIN.value)


def make_user(store, email, role=Role.CUSTOMER):
    return store.create_document("user", User(email=email, role=role))


def make_product(store, stock=10, price=100.0, name="Widget", category="gadgets", **extra):
    fields = dict(name=name, category=category, price=price, stock=stock, seller_email=SELLER)
    fields.update(extra)
    return store.create_document("product", Product(**fields))


def headers_for(verifier, email):
    return {"Authorization": f"Bearer {verifier.sign(email)}"}
