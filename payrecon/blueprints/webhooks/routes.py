import json
from datetime import datetime, timezone
from flask import request, jsonify, current_app
from sqlalchemy.exc import IntegrityError, OperationalError
from . import bp
from payrecon.billing import get_billing
from payrecon.billing.errors import AuthenticityError, ProviderTimeout
from payrecon.extensions import db, limiter
from payrecon.models import BillingEventLog


def _event_log_for(event) -> BillingEventLog:
    """Fetch or create the audit row for this event id (a concurrent redelivery may win the insert)."""
    log = BillingEventLog.query.filter_by(stripe_event_id=event.event_id).first()
    if log:
        log.retries = (log.retries or 0) + 1
        db.session.commit()
        return log
    log = BillingEventLog(
        stripe_event_id=event.event_id,
        type=event.event_type,
        livemode=event.livemode,
        signature_valid=True,
        payload=event.payload,
    )
    db.session.add(log)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        log = BillingEventLog.query.filter_by(stripe_event_id=event.event_id).one()
    return log


@limiter.exempt
@bp.post("/webhook")
def stripe_webhook():
    """
    Stripe → /webhook
    Verifies the signature, dedups by event id, reconciles, and always answers
    Stripe with a status that says whether to redeliver.
    """
    billing = get_billing()
    raw_bytes = request.get_data(cache=False, as_text=False) or b""
    sig_header = request.headers.get("Stripe-Signature", "")

    # 1) Verify signature (no payload trust before this point)
    try:
        event = billing.verifier.verify(raw_bytes, sig_header)
    except AuthenticityError as e:
        current_app.logger.warning(json.dumps({
            "event": "stripe_webhook_rejected",
            "code": e.code,
            "bytes": len(raw_bytes),
        }))
        return jsonify({"received": False, "error": e.to_payload()}), e.http_status

    # 2) Idempotency guard (short-circuit if already processed)
    log = _event_log_for(event)
    if log.processed:
        return jsonify({"received": True, "processed": True, "duplicate": True}), 200

    # 3) Reconcile
    try:
        outcome = billing.reconciler.handle(event)
    except (ProviderTimeout, OperationalError) as e:
        # Retryable: let Stripe redeliver
        db.session.rollback()
        current_app.logger.exception(json.dumps({
            "event": "stripe_webhook_retryable_error",
            "event_id": event.event_id,
            "type": event.event_type,
            "error": type(e).__name__,
        }))
        return jsonify({"received": True, "processed": False, "error": {"code": "retryable_error"}}), 500
    except Exception as e:
        # Attach note and surface 200 to prevent endless Stripe retries; ops can review logs
        db.session.rollback()
        log.notes = f"handler_error:{type(e).__name__}"
        db.session.commit()
        current_app.logger.exception(json.dumps({
            "event": "stripe_webhook_handler_error",
            "event_id": event.event_id,
            "type": event.event_type,
            "error": type(e).__name__,
        }))
        return jsonify({"received": True, "processed": False}), 200

    log.processed = outcome.processed
    log.notes = outcome.action
    if outcome.processed:
        log.processed_at = datetime.now(timezone.utc)
    db.session.commit()

    return jsonify({"received": True, "processed": outcome.processed}), 200
