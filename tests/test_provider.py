from types import SimpleNamespace

import pytest
import stripe

from payrecon.billing.errors import ProviderError, ProviderTimeout
from payrecon.billing.provider import StripeGateway, as_dict, make_idempotency_key
from payrecon.billing.settings import BillingSettings


class FakeResource:
    """Records calls and replays queued results (or raises queued exceptions)."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def __call__(self, *args, **kwargs):
        self.calls.append((args, kwargs))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _client(**resources):
    groups = {}
    for dotted, fn in resources.items():
        group, method = dotted.split("__")
        groups.setdefault(group, {})[method] = fn
    return SimpleNamespace(**{g: SimpleNamespace(**m) for g, m in groups.items()})


def _gateway(**resources):
    return StripeGateway(BillingSettings(test_secret_key="sk_test_x"), client=_client(**resources))


def test_idempotency_key_is_stable():
    assert make_idempotency_key("refund", "pi_1") == make_idempotency_key("refund", "pi_1")
    assert make_idempotency_key("refund", "pi_1") != make_idempotency_key("refund", "pi_2")
    assert make_idempotency_key("x").startswith("payrecon:")


def test_as_dict_variants():
    class Obj:
        def to_dict(self):
            return {"id": "x"}

    assert as_dict(None) is None
    assert as_dict({"id": "y"}) == {"id": "y"}
    assert as_dict(Obj()) == {"id": "x"}


def test_missing_secret_key_is_a_provider_error(app):
    gateway = StripeGateway(BillingSettings())
    with app.app_context():
        with pytest.raises(ProviderError) as exc:
            gateway.find_or_create_customer("a@b.com")
    assert exc.value.provider_code == "no_api_key"


def test_find_existing_customer(app):
    lister = FakeResource({"data": [{"id": "cus_old"}]})
    creator = FakeResource()
    gateway = _gateway(customers__list=lister, customers__create=creator)
    with app.app_context():
        assert gateway.find_or_create_customer("a@b.com") == "cus_old"
    assert lister.calls[0][1]["params"] == {"email": "a@b.com", "limit": 1}
    assert creator.calls == []


def test_create_customer_with_idempotency_key(app):
    creator = FakeResource({"id": "cus_new"})
    gateway = _gateway(customers__list=FakeResource({"data": []}), customers__create=creator)
    with app.app_context():
        assert gateway.find_or_create_customer("a@b.com") == "cus_new"
    _, kwargs = creator.calls[0]
    assert kwargs["options"]["idempotency_key"] == make_idempotency_key("customer", "a@b.com")


def test_payment_intent_params(app):
    creator = FakeResource({"id": "pi_1", "client_secret": "s"})
    gateway = _gateway(payment_intents__create=creator)
    with app.app_context():
        out = gateway.create_payment_intent(amount=1000, currency="jpy", customer_id="cus_1", email="a@b.com", description="Pack")
    assert out["client_secret"] == "s"
    params = creator.calls[0][1]["params"]
    assert params["automatic_payment_methods"] == {"enabled": True}
    assert params["metadata"] == {"email": "a@b.com", "item_name": "Pack"}
    assert params["description"] == "Pack"


def test_subscription_is_created_incomplete(app):
    creator = FakeResource({"id": "sub_1", "status": "incomplete"})
    gateway = _gateway(subscriptions__create=creator)
    with app.app_context():
        gateway.create_subscription(customer_id="cus_1", price_id="price_gold", email="a@b.com")
    params = creator.calls[0][1]["params"]
    assert params["payment_behavior"] == "default_incomplete"
    assert params["items"] == [{"price": "price_gold"}]
    assert "latest_invoice.payment_intent" in params["expand"]


def test_connection_error_maps_to_timeout(app):
    gateway = _gateway(subscriptions__cancel=FakeResource(stripe.APIConnectionError("connection reset")))
    with app.app_context():
        with pytest.raises(ProviderTimeout) as exc:
            gateway.cancel_subscription("sub_1")
    assert exc.value.retryable is True


def test_stripe_error_maps_to_provider_error(app):
    err = stripe.InvalidRequestError("No such subscription: 'sub_1'", "id", code="resource_missing", http_status=404)
    gateway = _gateway(subscriptions__retrieve=FakeResource(err))
    with app.app_context():
        with pytest.raises(ProviderError) as exc:
            gateway.retrieve_subscription("sub_1")
    assert not isinstance(exc.value, ProviderTimeout)
    assert exc.value.provider_code == "resource_missing"
    assert "No such subscription" in exc.value.context["detail"]
    assert exc.value.message == "No such subscription: 'sub_1'"


def test_refund_uses_idempotency_key(app):
    creator = FakeResource({"id": "re_1", "status": "succeeded"})
    gateway = _gateway(refunds__create=creator)
    with app.app_context():
        assert gateway.create_refund("pi_1")["status"] == "succeeded"
    _, kwargs = creator.calls[0]
    assert kwargs["params"]["payment_intent"] == "pi_1"
    assert kwargs["options"]["idempotency_key"] == make_idempotency_key("refund", "pi_1")


def test_price_display_name(app):
    gateway = _gateway(prices__retrieve=FakeResource(
        {"id": "price_gold", "product": {"name": "Gold plan"}},
        {"id": "price_bare", "product": "prod_1", "nickname": None},
    ))
    with app.app_context():
        assert gateway.price_display_name("price_gold") == "Gold plan"
        assert gateway.price_display_name("price_bare") == "price_bare"


def test_retrieve_payment_intent(app):
    retriever = FakeResource({"id": "pi_1", "status": "succeeded", "customer": "cus_1"})
    gateway = _gateway(payment_intents__retrieve=retriever)
    with app.app_context():
        assert gateway.retrieve_payment_intent("pi_1")["status"] == "succeeded"
    assert retriever.calls[0][0] == ("pi_1",)
