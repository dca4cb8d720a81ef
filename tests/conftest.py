import json
from datetime import timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import create_document, ensure_indexes, utcnow
from deps import Services
from errors import UpstreamFailure, ValidationError
from main import create_app
from schemas import Category, Farmer, Product, User
from security import create_access_token, hash_password

PASSWORD = "secret123"
WEBHOOK_SIGNATURE = "t=1,v1=valid"


class FakeGateway:
    provider = "stripe"
    enabled = True

    def __init__(self):
        self.intents = {}
        self.refunds = []
        self.fail_refunds = False

    def create_intent(self, amount, currency, metadata):
        intent_id = f"pi_test_{len(self.intents) + 1}"
        self.intents[intent_id] = {"amount": amount, "currency": currency, "metadata": metadata}
        return {"id": intent_id, "client_secret": f"{intent_id}_secret"}

    def retrieve_intent(self, intent_id):
        return {"id": intent_id, "client_secret": f"{intent_id}_secret"}

    def construct_event(self, payload, signature):
        if signature != WEBHOOK_SIGNATURE:
            raise ValidationError("Invalid webhook signature")
        return json.loads(payload)

    def refund(self, intent_id, amount, reason=None):
        if self.fail_refunds:
            raise UpstreamFailure("Payment provider refused the refund")
        refund = {"id": f"re_test_{len(self.refunds) + 1}", "amount": amount}
        self.refunds.append(refund)
        return refund


class FakeMailer:
    def __init__(self):
        self.sent = []

    def send(self, to, template, data=None):
        self.sent.append({"to": to, "template": template, "data": data or {}})
        return True

    def send_bulk(self, recipients, template, data_for):
        return [{"email": r["email"], "sent": self.send(r["email"], template, data_for(r))} for r in recipients]

    def templates_sent(self):
        return [m["template"] for m in self.sent]


def stripe_event(event_id, event_type, intent_id, **extra):
    return {"id": event_id, "type": event_type, "data": {"object": {"id": intent_id, **extra}}}


@pytest.fixture
def settings():
    return Settings(secret_key="test-secret", bcrypt_rounds=4, delivery_fee=200.0,
                    free_delivery_threshold=2000.0, low_stock_threshold=10)


@pytest.fixture
def db():
    database = mongomock.MongoClient()["farmmarket_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def services(settings, db, mailer, gateway):
    return Services(settings, db, mailer=mailer, gateway=gateway)


def make_user(db, role="customer", email=None, **fields):
    return create_document(db, "user", User(
        firstName=fields.pop("firstName", role.title()),
        lastName=fields.pop("lastName", "Tester"),
        email=email or f"{role}@example.com",
        passwordHash=hash_password(PASSWORD, 4),
        role=role,
        isVerified=True,
        **fields,
    ))


@pytest.fixture
def customer(db):
    return make_user(db, "customer")


@pytest.fixture
def other_customer(db):
    return make_user(db, "customer", email="second@example.com", firstName="Second")


@pytest.fixture
def admin(db):
    return make_user(db, "admin")


@pytest.fixture
def farmer_user(db):
    return make_user(db, "farmer")


@pytest.fixture
def farmer(db, farmer_user):
    return create_document(db, "farmer", Farmer(
        userId=farmer_user["id"], farmName="Green Acres", specialties=["vegetables"], isVerified=True,
    ))


@pytest.fixture
def category(db):
    return create_document(db, "category", Category(name="Vegetables", slug="vegetables"))


def make_product(db, farmer, category, name="Tomatoes", amount=100.0, quantity=5, discounts=None, **fields):
    return create_document(db, "product", Product(
        name=name,
        description=f"Fresh {name.lower()}",
        farmerId=farmer["id"],
        categoryId=category["id"],
        price={"amount": amount, "unit": "kg"},
        availability={"inStock": quantity > 0, "quantity": quantity},
        discounts=discounts or [],
        **fields,
    ))


def ten_percent_off():
    now = utcnow()
    return [{"type": "percentage", "value": 10, "startDate": now - timedelta(days=1),
             "endDate": now + timedelta(days=1)}]


@pytest.fixture
def product(db, farmer, category):
    """Quantity 5 at 100 with an active 10% discount."""
    return make_product(db, farmer, category, discounts=ten_percent_off())


@pytest.fixture
def pickup():
    return {"type": "pickup", "pickupLocation": "Central market", "scheduledDate": utcnow() + timedelta(days=2)}


@pytest.fixture
def place(services, pickup):
    def _place(user, product, quantity=1, promo_code=None, method="cash", delivery=None):
        return services.orders.place_order(
            user, [{"productId": product["id"], "quantity": quantity}], delivery or pickup,
            {"method": method}, promo_code=promo_code,
        )
    return _place


@pytest.fixture
def client(settings, services):
    app = create_app(settings, services)
    with TestClient(app) as test_client:
        yield test_client


def auth_headers(user, settings):
    token = create_access_token({"sub": user["id"], "role": user["role"]}, settings)
    return {"Authorization": f"Bearer {token}"}
