import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

import hashlib
import hmac
import json
import time

import pytest
from payrecon import create_app
from payrecon.billing import init_billing
from payrecon.billing.errors import ProviderError
from payrecon.extensions import db
from payrecon.models import SubscriberState, User, UserRole

TEST_WHSEC = "whsec_test_secret"
LIVE_WHSEC = "whsec_live_secret"


@pytest.fixture(scope="session")
def app():
    app = create_app()
    app.config.update(
        TESTING=True,
        MAIL_SUPPRESS_SEND=True,
        APP_BASE_URL="http://example.test",
        SITE_NAME="Example Members",
        SECRET_KEY="test-secret-key",
        STRIPE_MODE="test",
        STRIPE_TEST_SECRET_KEY="sk_test_x",
        STRIPE_TEST_PUBLISHABLE_KEY="pk_test_x",
        STRIPE_TEST_WEBHOOK_SECRET=TEST_WHSEC,
        STRIPE_LIVE_WEBHOOK_SECRET=LIVE_WHSEC,
        ADMIN_NOTIFY_EMAIL="ops@example.test",
        SUBSCRIBER_ROLE="subscriber",
        ALLOWED_PRICE_IDS=(),
    )
    # Rebuild the billing bundle from the test config
    init_billing(app)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()


class FakeGateway:
    """Stands in for StripeGateway; records calls and returns canned provider objects."""

    def __init__(self):
        self.calls = []
        self.customers = {}
        self.subscription_response = None
        self.subscriptions = {}
        self.payment_intents = {}
        self.refund_status = "succeeded"
        self.cancel_error = None
        self.price_names = {}

    def find_or_create_customer(self, email):
        self.calls.append(("find_or_create_customer", email))
        if email not in self.customers:
            self.customers[email] = f"cus_fake{len(self.customers) + 1}"
        return self.customers[email]

    def create_payment_intent(self, **kwargs):
        self.calls.append(("create_payment_intent", kwargs))
        return {"id": "pi_fake1", "client_secret": "pi_fake1_secret_abc", "status": "requires_payment_method"}

    def create_subscription(self, **kwargs):
        self.calls.append(("create_subscription", kwargs))
        return self.subscription_response

    def retrieve_payment_intent(self, payment_intent_id):
        self.calls.append(("retrieve_payment_intent", payment_intent_id))
        if payment_intent_id not in self.payment_intents:
            raise ProviderError(provider_code="resource_missing", detail=f"No such payment_intent: '{payment_intent_id}'")
        return self.payment_intents[payment_intent_id]

    def cancel_subscription(self, subscription_id):
        self.calls.append(("cancel_subscription", subscription_id))
        if self.cancel_error is not None:
            raise self.cancel_error
        return {"id": subscription_id, "status": "canceled"}

    def retrieve_subscription(self, subscription_id):
        self.calls.append(("retrieve_subscription", subscription_id))
        if subscription_id not in self.subscriptions:
            raise ProviderError(provider_code="resource_missing", detail=f"No such subscription: '{subscription_id}'")
        return self.subscriptions[subscription_id]

    def create_refund(self, payment_intent_id):
        self.calls.append(("create_refund", payment_intent_id))
        return {"id": "re_fake1", "status": self.refund_status, "payment_intent": payment_intent_id}

    def price_display_name(self, price_id):
        return self.price_names.get(price_id, price_id)

    def called(self, name):
        return [c for c in self.calls if c[0] == name]


@pytest.fixture(autouse=True)
def gateway(app):
    # Never reach Stripe from tests
    gw = FakeGateway()
    app.extensions["billing"].use_gateway(gw)
    return gw


@pytest.fixture()
def billing(app):
    return app.extensions["billing"]


def sign(payload: str, secret: str = TEST_WHSEC, timestamp: int | None = None) -> str:
    # Same scheme Stripe uses: HMAC-SHA256 over f"{t}.{payload}"
    ts = int(timestamp if timestamp is not None else time.time())
    sig = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def paid_intent(payment_intent_id="pi_1", customer_id="cus_1", amount=1000, currency="jpy", **extra) -> dict:
    """A succeeded PaymentIntent as the provider returns it."""
    intent = {
        "id": payment_intent_id,
        "object": "payment_intent",
        "status": "succeeded",
        "customer": customer_id,
        "amount": amount,
        "amount_received": amount,
        "currency": currency,
        "metadata": {},
    }
    intent.update(extra)
    return intent


def make_event(event_type: str, obj: dict, event_id: str = "evt_1", livemode: bool = False) -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "livemode": livemode,
        "data": {"object": obj},
    }


def post_event(client, event: dict, secret: str = TEST_WHSEC):
    body = json.dumps(event)
    return client.post(
        "/webhook",
        data=body,
        headers={"Stripe-Signature": sign(body, secret), "Content-Type": "application/json"},
    )


def seed_subscriber(
    email: str = "member@example.com",
    customer_id: str = "cus_9",
    status: str = "active",
    subscription_id: str | None = "sub_9",
    role: str | None = "subscriber",
) -> int:
    """Create a user + subscriber state (call inside an app context)."""
    user = User(email=email, is_active=True)
    user.set_password("pw-123456")
    db.session.add(user)
    db.session.flush()
    granted = status in ("active", "trialing")
    db.session.add(SubscriberState(
        subscriber_id=user.id,
        provider_customer_id=customer_id,
        active_subscription_id=subscription_id,
        subscription_status=status,
        role_granted=granted,
    ))
    if granted and role:
        db.session.add(UserRole(user_id=user.id, role=role))
    db.session.commit()
    return user.id


def make_admin(email: str = "admin@example.com") -> int:
    user = User(email=email, is_active=True, is_admin=True)
    user.set_password("admin-pw")
    db.session.add(user)
    db.session.commit()
    return user.id


def login(client, user_id: int) -> None:
    with client.session_transaction() as sess:
        sess["_user_id"] = str(user_id)
        sess["_fresh"] = True


def roles_of(user_id: int) -> set:
    return {r.role for r in UserRole.query.filter_by(user_id=user_id).all()}
