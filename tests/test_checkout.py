import pytest

from payrecon.billing.errors import (
    NotFoundError,
    ProviderError,
    ProviderTimeout,
    UnexpectedState,
    ValidationError,
)
from payrecon.extensions import db
from payrecon.models import EmailLog, LedgerRecord, SubscriberState, User
from conftest import paid_intent, roles_of, seed_subscriber


# ---------- record_confirmed_payment ----------

def test_record_onetime_payment(app, billing, gateway):
    gateway.payment_intents["pi_1"] = paid_intent(metadata={"email": "a@b.com"})
    with app.app_context():
        result = billing.checkout.record_confirmed_payment(
            email="a@b.com",
            customer_id="cus_1",
            amount=1000,
            currency="jpy",
            payment_intent_id="pi_1",
        )
        assert result.created is True
        assert result.notified is True
        assert result.transaction_id == "pi_1"

        rec = LedgerRecord.query.one()
        assert rec.provider_transaction_id == "pi_1"
        assert rec.amount_minor_units == 1000
        assert rec.currency_code == "jpy"
        assert rec.status == "succeeded"
        assert rec.subscriber_id == result.subscriber_id

        user = User.query.filter_by(email="a@b.com").one()
        state = db.session.get(SubscriberState, user.id)
        assert state.provider_customer_id == "cus_1"
        # No subscription involved: status untouched
        assert state.subscription_status == "none"
        assert roles_of(user.id) == set()

        # Admin side only by default
        assert [m.template for m in EmailLog.query.all()] == ["signup_onetime.admin"]
    assert gateway.called("retrieve_payment_intent") == [("retrieve_payment_intent", "pi_1")]


def test_record_payment_repeat_is_a_noop(app, billing, gateway):
    gateway.payment_intents["pi_1"] = paid_intent()
    with app.app_context():
        kwargs = dict(email="a@b.com", customer_id="cus_1", amount=1000, currency="jpy", payment_intent_id="pi_1")
        billing.checkout.record_confirmed_payment(**kwargs)
        again = billing.checkout.record_confirmed_payment(**kwargs)
        assert again.created is False
        assert again.notified is False
        assert LedgerRecord.query.count() == 1
        assert EmailLog.query.count() == 1
        assert User.query.count() == 1


def test_record_after_webhook_still_notifies_once(app, billing, gateway):
    gateway.payment_intents["pi_1"] = paid_intent()
    with app.app_context():
        billing.ledger.upsert(
            provider_transaction_id="pi_1",
            provider_customer_id="cus_1",
            status="succeeded",
            amount_minor_units=1000,
            currency_code="jpy",
        )
        kwargs = dict(email="a@b.com", customer_id="cus_1", amount=1000, currency="jpy", payment_intent_id="pi_1")
        result = billing.checkout.record_confirmed_payment(**kwargs)
        assert result.created is False
        assert result.notified is True
        rec = LedgerRecord.query.one()
        # The client call still links the row to the identity
        assert rec.subscriber_id == result.subscriber_id
        assert rec.signup_notified_at is not None
        assert [m.template for m in EmailLog.query.all()] == ["signup_onetime.admin"]

        assert billing.checkout.record_confirmed_payment(**kwargs).notified is False
        assert EmailLog.query.count() == 1


def test_record_free_trial_subscription(app, billing, gateway):
    gateway.subscriptions["sub_1"] = {"id": "sub_1", "status": "trialing", "customer": "cus_2"}
    with app.app_context():
        result = billing.checkout.record_confirmed_payment(
            email="trial@example.com",
            customer_id="cus_2",
            amount=0,
            subscription_id="sub_1",
            plan_id="price_gold",
        )
        assert result.transaction_id == "sub_initial_sub_1"
        state = db.session.get(SubscriberState, result.subscriber_id)
        assert state.subscription_status == "trialing"
        assert state.active_subscription_id == "sub_1"
        assert roles_of(result.subscriber_id) == {"subscriber"}

        rec = LedgerRecord.query.one()
        assert rec.amount_minor_units == 0
        assert rec.description == "Subscription (price_gold)"
        assert rec.subscription_id == "sub_1"
        assert [m.template for m in EmailLog.query.all()] == ["signup_subscription.admin"]


def test_record_paid_subscription_is_active(app, billing, gateway):
    gateway.payment_intents["pi_sub1"] = paid_intent("pi_sub1", "cus_3", amount=1500, invoice="in_1")
    gateway.subscriptions["sub_2"] = {"id": "sub_2", "status": "active", "customer": "cus_3"}
    with app.app_context():
        result = billing.checkout.record_confirmed_payment(
            email="paid@example.com",
            customer_id="cus_3",
            amount="1500",
            currency="jpy",
            payment_intent_id="pi_sub1",
            subscription_id="sub_2",
            description="Subscription (price_silver)",
            plan_id="price_gold",
        )
        assert result.transaction_id == "pi_sub1"
        assert db.session.get(SubscriberState, result.subscriber_id).subscription_status == "active"
        rec = LedgerRecord.query.one()
        assert rec.amount_minor_units == 1500
        # Placeholder names are replaced by the plan-derived one
        assert rec.description == "Subscription (price_gold)"


def test_record_takes_subscription_status_from_provider(app, billing, gateway):
    gateway.subscriptions["sub_1"] = {"id": "sub_1", "status": "incomplete", "customer": "cus_2"}
    with app.app_context():
        result = billing.checkout.record_confirmed_payment(
            email="trial@example.com", customer_id="cus_2", amount=0, subscription_id="sub_1",
        )
        state = db.session.get(SubscriberState, result.subscriber_id)
        assert state.subscription_status == "incomplete"
        assert state.role_granted is False
        assert roles_of(result.subscriber_id) == set()


def test_record_unknown_currency_falls_back_to_default(app, billing, gateway):
    gateway.payment_intents["pi_2"] = paid_intent("pi_2", amount=10, currency="zzz")
    with app.app_context():
        billing.checkout.record_confirmed_payment(
            email="a@b.com", customer_id="cus_1", amount=10, currency="zzz", payment_intent_id="pi_2",
        )
        assert LedgerRecord.query.one().currency_code == "jpy"


def test_record_rejects_unknown_subscription(app, billing, gateway):
    with app.app_context():
        with pytest.raises(ValidationError):
            billing.checkout.record_confirmed_payment(
                email="a@b.com", customer_id="cus_1", amount=0, subscription_id="sub_doesnotexist",
            )
        assert User.query.count() == 0
        assert SubscriberState.query.count() == 0
        assert LedgerRecord.query.count() == 0
    assert gateway.called("retrieve_subscription") == [("retrieve_subscription", "sub_doesnotexist")]


def test_record_rejects_another_customers_subscription(app, billing, gateway):
    gateway.subscriptions["sub_9"] = {"id": "sub_9", "status": "active", "customer": "cus_9"}
    with app.app_context():
        uid = seed_subscriber()
        with pytest.raises(ValidationError):
            billing.checkout.record_confirmed_payment(
                email="member@example.com", customer_id="cus_attacker", amount=0, subscription_id="sub_9",
            )
        # The real subscriber keeps their customer mapping
        assert db.session.get(SubscriberState, uid).provider_customer_id == "cus_9"
        assert LedgerRecord.query.count() == 0


def test_record_rejects_payment_made_for_another_email(app, billing, gateway):
    gateway.payment_intents["pi_1"] = paid_intent(customer_id="cus_attacker", metadata={"email": "attacker@example.com"})
    with app.app_context():
        uid = seed_subscriber()
        with pytest.raises(ValidationError):
            billing.checkout.record_confirmed_payment(
                email="member@example.com", customer_id="cus_attacker", amount=1000, payment_intent_id="pi_1",
            )
        assert db.session.get(SubscriberState, uid).provider_customer_id == "cus_9"


@pytest.mark.parametrize("intent", [
    paid_intent(status="requires_payment_method"),
    paid_intent(customer_id="cus_other"),
    paid_intent(amount=999),
])
def test_record_rejects_unconfirmed_or_mismatched_intent(app, billing, gateway, intent):
    gateway.payment_intents["pi_1"] = intent
    with app.app_context():
        with pytest.raises(ValidationError):
            billing.checkout.record_confirmed_payment(
                email="a@b.com", customer_id="cus_1", amount=1000, payment_intent_id="pi_1",
            )
        assert User.query.count() == 0
        assert LedgerRecord.query.count() == 0


@pytest.mark.parametrize("kwargs", [
    dict(email="", customer_id="cus_1", payment_intent_id="pi_1"),
    dict(email="a@b.com", customer_id="", payment_intent_id="pi_1"),
    dict(email="a@b.com", customer_id="cus_1"),
    dict(email="not-an-email", customer_id="cus_1", payment_intent_id="pi_1"),
    dict(email="a@b.com", customer_id="cus_1", payment_intent_id="pi_1", amount="-5"),
    dict(email="a@b.com", customer_id="cus_1", payment_intent_id="pi_1", amount="10.5"),
])
def test_record_rejects_bad_input(app, billing, gateway, kwargs):
    with app.app_context():
        with pytest.raises(ValidationError):
            billing.checkout.record_confirmed_payment(**kwargs)
        assert LedgerRecord.query.count() == 0
        assert User.query.count() == 0
    assert gateway.calls == []


# ---------- create flows ----------

def test_create_onetime_intent(app, billing, gateway):
    with app.app_context():
        out = billing.checkout.create_onetime_intent("Buyer@Example.com", "1000", "jpy", "Sticker pack")
    assert out == {"client_secret": "pi_fake1_secret_abc", "customer_id": "cus_fake1"}
    (_, kwargs), = gateway.called("create_payment_intent")
    assert kwargs["amount"] == 1000
    assert kwargs["email"] == "buyer@example.com"
    assert kwargs["description"] == "Sticker pack"


@pytest.mark.parametrize("email,amount,currency", [
    ("bad", 1000, "jpy"),
    ("a@b.com", 0, "jpy"),
    ("a@b.com", "12.50", "jpy"),
    ("a@b.com", 1000, "eur"),
])
def test_create_onetime_intent_validation(app, billing, gateway, email, amount, currency):
    with app.app_context():
        with pytest.raises(ValidationError):
            billing.checkout.create_onetime_intent(email, amount, currency)
    # Nothing reaches the provider
    assert gateway.calls == []


def test_create_subscription_incomplete_returns_secret(app, billing, gateway):
    gateway.subscription_response = {
        "id": "sub_1",
        "status": "incomplete",
        "latest_invoice": {"id": "in_1", "payment_intent": {"id": "pi_1", "client_secret": "pi_1_secret"}},
    }
    with app.app_context():
        out = billing.checkout.create_subscription("a@b.com", "price_gold")
        assert out == {"subscription_id": "sub_1", "client_secret": "pi_1_secret", "customer_id": "cus_fake1"}
        # Nothing persisted until confirmation
        assert User.query.count() == 0


def test_create_subscription_trial_without_intent(app, billing, gateway):
    gateway.subscription_response = {"id": "sub_2", "status": "trialing", "latest_invoice": {"id": "in_2", "payment_intent": None}}
    with app.app_context():
        out = billing.checkout.create_subscription("a@b.com", "price_gold")
    assert out == {"subscription_id": "sub_2", "status": "trialing", "customer_id": "cus_fake1"}


def test_create_subscription_unexpected_state(app, billing, gateway):
    gateway.subscription_response = {"id": "sub_3", "status": "past_due", "latest_invoice": {"payment_intent": None}}
    with app.app_context():
        with pytest.raises(UnexpectedState):
            billing.checkout.create_subscription("a@b.com", "price_gold")


def test_create_subscription_rejects_bad_plan(app, billing, gateway):
    with app.app_context():
        with pytest.raises(ValidationError):
            billing.checkout.create_subscription("a@b.com", "gold")
    assert gateway.calls == []


# ---------- cancel / sync / refund ----------

def test_cancel_own_subscription(app, billing, gateway):
    with app.app_context():
        uid = seed_subscriber()
        user = db.session.get(User, uid)
        out = billing.checkout.cancel_subscription("sub_9", user)
        assert out == {"subscription_id": "sub_9", "status": "canceled", "already_canceled": False}
        # Local state waits for the webhook
        assert db.session.get(SubscriberState, uid).subscription_status == "active"
    assert gateway.called("cancel_subscription") == [("cancel_subscription", "sub_9")]


def test_cancel_someone_elses_subscription(app, billing, gateway):
    with app.app_context():
        uid = seed_subscriber()
        user = db.session.get(User, uid)
        with pytest.raises(NotFoundError):
            billing.checkout.cancel_subscription("sub_other", user)
    assert gateway.called("cancel_subscription") == []


def test_cancel_already_canceled_is_success(app, billing, gateway):
    gateway.cancel_error = ProviderError(provider_code="resource_missing", detail="No such subscription: 'sub_9'")
    with app.app_context():
        user = db.session.get(User, seed_subscriber())
        out = billing.checkout.cancel_subscription("sub_9", user)
    assert out["already_canceled"] is True


def test_cancel_timeout_propagates(app, billing, gateway):
    gateway.cancel_error = ProviderTimeout(op="subscriptions.cancel")
    with app.app_context():
        user = db.session.get(User, seed_subscriber())
        with pytest.raises(ProviderTimeout):
            billing.checkout.cancel_subscription("sub_9", user)


def test_admin_may_cancel_any_subscription(app, billing, gateway):
    with app.app_context():
        out = billing.checkout.cancel_subscription("sub_any", None, admin=True)
    assert out["status"] == "canceled"


def test_sync_overwrites_status_and_role(app, billing, gateway):
    gateway.subscriptions["sub_9"] = {"id": "sub_9", "status": "past_due", "customer": "cus_9"}
    with app.app_context():
        uid = seed_subscriber()
        out = billing.checkout.sync_subscription_status("sub_9")
        assert out["previous_status"] == "active"
        assert out["subscription_status"] == "past_due"
        assert out["role_granted"] is False
        assert roles_of(uid) == set()


def test_sync_falls_back_to_subscription_lookup(app, billing, gateway):
    gateway.subscriptions["sub_9"] = {"id": "sub_9", "status": "active", "customer": {"id": "cus_moved"}}
    with app.app_context():
        uid = seed_subscriber(status="past_due")
        out = billing.checkout.sync_subscription_status("sub_9")
        assert out["subscriber_id"] == uid
        assert roles_of(uid) == {"subscriber"}


def test_sync_errors(app, billing, gateway):
    gateway.subscriptions["sub_odd"] = {"id": "sub_odd", "status": "paused", "customer": "cus_9"}
    gateway.subscriptions["sub_orphan"] = {"id": "sub_orphan", "status": "active", "customer": "cus_nobody"}
    with app.app_context():
        seed_subscriber()
        with pytest.raises(ProviderError):
            billing.checkout.sync_subscription_status("sub_missing")
        with pytest.raises(UnexpectedState):
            billing.checkout.sync_subscription_status("sub_odd")
        with pytest.raises(NotFoundError):
            billing.checkout.sync_subscription_status("sub_orphan")
        with pytest.raises(ValidationError):
            billing.checkout.sync_subscription_status("cus_9")


@pytest.mark.parametrize("status", ["succeeded", "pending"])
def test_refund_accepted(app, billing, gateway, status):
    gateway.refund_status = status
    with app.app_context():
        out = billing.checkout.refund_payment("pi_1", None)
    assert out == {"refund_id": "re_fake1", "status": status, "payment_intent_id": "pi_1"}


def test_refund_failed_status_is_unexpected(app, billing, gateway):
    gateway.refund_status = "failed"
    with app.app_context():
        with pytest.raises(UnexpectedState):
            billing.checkout.refund_payment("pi_1", None)


def test_refund_requires_payment_intent_id(app, billing, gateway):
    with app.app_context():
        with pytest.raises(ValidationError):
            billing.checkout.refund_payment("ch_1", None)
    assert gateway.calls == []
