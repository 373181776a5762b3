import hashlib
import hmac
import json
import time
from datetime import datetime
from itertools import count

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
from errors import MailDeliveryError, PaymentGatewayError
from payments import PaymentIntent

ADDRESS = {
    "first_name": "Asha",
    "last_name": "Rao",
    "street": "12 MG Road",
    "city": "Bengaluru",
    "state": "KA",
    "zip_code": "560001",
    "phone": "9999999999",
    "country": "India",
}


class FakeGateway:
    """Records calls instead of talking to Stripe."""

    publishable_key = "pk_test_123"

    def __init__(self):
        self._ids = count(1)
        self.intents = {}
        self.created = []
        self.refunds = []
        self.fail_refunds = False

    def create_intent(self, amount, currency, metadata):
        intent_id = f"pi_test_{next(self._ids)}"
        intent = PaymentIntent(
            id=intent_id,
            status="requires_payment_method",
            amount=amount,
            client_secret=f"{intent_id}_secret",
            metadata=dict(metadata),
        )
        self.intents[intent_id] = intent
        self.created.append((amount, currency))
        return intent

    def succeed(self, intent_id):
        self.intents[intent_id].status = "succeeded"
        return self.intents[intent_id]

    def retrieve_intent(self, intent_id):
        if intent_id not in self.intents:
            raise PaymentGatewayError(f"No such payment_intent: '{intent_id}'")
        return self.intents[intent_id]

    def refund(self, intent_id):
        if self.fail_refunds:
            raise PaymentGatewayError("Refund declined")
        self.refunds.append(intent_id)
        return f"re_{len(self.refunds)}"

    def construct_event(self, payload, signature):
        if signature != "t=valid":
            raise PaymentGatewayError("Webhook Error: No signatures found matching the expected signature")
        return json.loads(payload)


class FakeMailer:
    """Keeps sent password reset mails instead of talking to SMTP."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send_password_reset(self, to, token, expires_minutes):
        if self.fail:
            raise MailDeliveryError()
        self.sent.append((to, token))


@pytest.fixture
def db(monkeypatch):
    mock_db = mongomock.MongoClient().storefront
    database.ensure_indexes(mock_db)
    monkeypatch.setattr(database, "db", mock_db)
    return mock_db


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def client(db, gateway, mailer):
    main.app.dependency_overrides[main.get_gateway] = lambda: gateway
    main.app.dependency_overrides[main.get_mailer] = lambda: mailer
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def make_product(db, name="Widget", price=100.0, discount=0, stock=5, category="electronics", **extra):
    now = datetime.utcnow()
    doc = {
        "name": name,
        "description": None,
        "price": price,
        "discount": discount,
        "stock": stock,
        "category": category,
        "images": [{"url": f"https://img.example/{name}.png", "alt": name}],
        "is_featured": False,
        "is_active": True,
        "created_at": now,
        "updated_at": now,
        **extra,
    }
    return str(db["product"].insert_one(doc).inserted_id)


def make_user(db, email="user@example.com", role="user", is_active=True):
    now = datetime.utcnow()
    uid = db["user"].insert_one({
        "name": email.split("@")[0],
        "email": email,
        "password_hash": None,
        "role": role,
        "is_active": is_active,
        "created_at": now,
        "updated_at": now,
    }).inserted_id
    return str(uid)


def auth_headers(user_id):
    return {"Authorization": f"Bearer {main.create_access_token({'sub': user_id})}"}


def stripe_signature(payload, secret, timestamp=None):
    """Stripe-Signature header value for payload, signed the way Stripe signs webhooks."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"
