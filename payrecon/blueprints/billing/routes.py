from flask import request, jsonify
from flask_login import current_user
from . import bp
from payrecon.billing import get_billing
from payrecon.billing.errors import InvalidActionToken
from payrecon.extensions import limiter
from payrecon.services import tokens
from payrecon.services.policy import login_required_json

# Anonymous checkout actions; cancel tokens are bound to the subscription id
ACTION_ONETIME = "onetime_intent"
ACTION_SUBSCRIPTION = "subscription"
ACTION_RECORD = "record_payment"
ACTION_CANCEL = "cancel_subscription"


def _payload() -> dict:
    # Accept JSON or classic form posts from the embedding page
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _require_token(data: dict, action: str, subject: str = "") -> None:
    if not tokens.verify(action, data.get("security"), subject):
        raise InvalidActionToken()


def _ok(**fields):
    return jsonify({"ok": True, **fields})


@bp.get("/config.json")
def config_json():
    """
    Publishable key and per-action tokens for the embedding page (safe to expose).
    """
    billing = get_billing()
    payload = {
        "mode": billing.settings.mode,
        "publishable_key": billing.settings.publishable_key,
        "currencies": list(billing.settings.allowed_currencies),
        "tokens": {
            ACTION_ONETIME: tokens.generate(ACTION_ONETIME),
            ACTION_SUBSCRIPTION: tokens.generate(ACTION_SUBSCRIPTION),
            ACTION_RECORD: tokens.generate(ACTION_RECORD),
        },
    }
    return _ok(**payload)


@bp.post("/onetime-intent")
@limiter.limit("10/minute")
def onetime_intent():
    data = _payload()
    _require_token(data, ACTION_ONETIME)
    result = get_billing().checkout.create_onetime_intent(
        data.get("email"),
        data.get("amount"),
        data.get("currency"),
        data.get("item_name") or data.get("description"),
    )
    return _ok(**result)


@bp.post("/subscription")
@limiter.limit("10/minute")
def subscription():
    data = _payload()
    _require_token(data, ACTION_SUBSCRIPTION)
    result = get_billing().checkout.create_subscription(data.get("email"), data.get("plan_id"))
    return _ok(**result)


@bp.post("/record-payment")
@limiter.limit("20/minute")
def record_payment():
    data = _payload()
    _require_token(data, ACTION_RECORD)
    result = get_billing().checkout.record_confirmed_payment(
        email=data.get("email"),
        customer_id=data.get("customer_id"),
        amount=data.get("amount"),
        currency=data.get("currency"),
        payment_intent_id=data.get("payment_intent_id"),
        subscription_id=data.get("subscription_id"),
        plan_id=data.get("plan_id"),
        description=data.get("item_name") or data.get("description"),
    )
    return _ok(message="Payment recorded.", **result.to_dict())


@bp.post("/cancel-subscription")
@limiter.limit("10/minute")
@login_required_json
def cancel_subscription():
    data = _payload()
    sub_id = (data.get("subscription_id") or "").strip()
    _require_token(data, ACTION_CANCEL, sub_id)
    result = get_billing().checkout.cancel_subscription(sub_id, current_user)
    message = (
        "The subscription was already canceled."
        if result["already_canceled"]
        else "Cancellation received. Your status will update shortly."
    )
    return _ok(message=message, **result)


@bp.get("/account.json")
@login_required_json
def account_json():
    """Own subscription status and payment history."""
    billing = get_billing()
    page = request.args.get("page", 1, type=int)
    state = billing.subscribers.get(current_user.id)
    history = billing.ledger.history(subscriber_id=current_user.id, page=page, per_page=20)

    subscription = None
    if state is not None:
        subscription = {
            "status": state.subscription_status,
            "subscription_id": state.active_subscription_id,
            "role_granted": bool(state.role_granted),
        }
        if state.active_subscription_id and state.subscription_status not in ("canceled", "none"):
            subscription["cancel_token"] = tokens.generate(ACTION_CANCEL, state.active_subscription_id)

    return _ok(
        email=current_user.email,
        subscription=subscription,
        payments=[r.to_dict() for r in history.items],
        page=history.page,
        pages=history.pages,
        total=history.total,
    )
