import json
from flask import request, jsonify, current_app
from flask_login import current_user
from . import bp
from payrecon.billing import get_billing
from payrecon.billing.errors import InvalidActionToken
from payrecon.models.ledger import LEDGER_SUCCEEDED
from payrecon.services import tokens
from payrecon.services.policy import admin_required

ACTION_ADMIN_CANCEL = "admin_cancel_subscription"
ACTION_ADMIN_SYNC = "admin_sync_subscription"
ACTION_ADMIN_REFUND = "admin_refund_payment"


def _require_token(action: str, subject: str) -> None:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = request.form.to_dict()
    if not tokens.verify(action, data.get("security"), subject):
        raise InvalidActionToken()


def _audit(action: str, target: str):
    current_app.logger.info(json.dumps({
        "event": "admin_billing_action",
        "action": action,
        "target": target,
        "admin_id": current_user.id,
    }))


def _paging():
    page = max(request.args.get("page", 1, type=int), 1)
    per_page = min(max(request.args.get("per_page", 20, type=int), 1), 100)
    return page, per_page


@bp.post("/subscriptions/<sub_id>/cancel")
@admin_required
def cancel_subscription(sub_id):
    _require_token(ACTION_ADMIN_CANCEL, sub_id)
    _audit("cancel", sub_id)
    result = get_billing().checkout.cancel_subscription(sub_id, current_user, admin=True)
    return jsonify({"ok": True, **result})


@bp.post("/subscriptions/<sub_id>/sync")
@admin_required
def sync_subscription(sub_id):
    _require_token(ACTION_ADMIN_SYNC, sub_id)
    _audit("sync", sub_id)
    result = get_billing().checkout.sync_subscription_status(sub_id)
    return jsonify({"ok": True, **result})


@bp.post("/payments/<pi_id>/refund")
@admin_required
def refund_payment(pi_id):
    _require_token(ACTION_ADMIN_REFUND, pi_id)
    _audit("refund", pi_id)
    result = get_billing().checkout.refund_payment(pi_id, current_user)
    # Ledger moves to refunded when the charge.refunded webhook lands
    return jsonify({"ok": True, **result})


@bp.get("/payments.json")
@admin_required
def payments_json():
    page, per_page = _paging()
    subscriber_id = request.args.get("subscriber_id", type=int)
    history = get_billing().ledger.history(subscriber_id=subscriber_id, page=page, per_page=per_page)

    rows = []
    for rec in history.items:
        row = rec.to_dict()
        if rec.status == LEDGER_SUCCEEDED and rec.provider_transaction_id.startswith("pi_"):
            row["refund_token"] = tokens.generate(ACTION_ADMIN_REFUND, rec.provider_transaction_id)
        rows.append(row)
    return jsonify({"ok": True, "items": rows, "page": history.page, "pages": history.pages, "total": history.total})


@bp.get("/subscribers.json")
@admin_required
def subscribers_json():
    page, per_page = _paging()
    status = (request.args.get("status") or "").strip() or None
    listing = get_billing().subscribers.list_states(status=status, page=page, per_page=per_page)

    rows = []
    for state in listing.items:
        row = state.to_dict()
        sub_id = state.active_subscription_id
        if sub_id:
            row["sync_token"] = tokens.generate(ACTION_ADMIN_SYNC, sub_id)
            if state.subscription_status != "canceled":
                row["cancel_token"] = tokens.generate(ACTION_ADMIN_CANCEL, sub_id)
        rows.append(row)
    return jsonify({"ok": True, "items": rows, "page": listing.page, "pages": listing.pages, "total": listing.total})
