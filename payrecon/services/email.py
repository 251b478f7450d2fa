from typing import Optional, Dict, Any
from flask import current_app
from flask_mail import Message
from payrecon.extensions import db, mail
from payrecon.models import EmailLog
import json
import time


def _log_structured(event: str, warning: bool = False, **fields):
    """
    Minimal structured log: one JSON object per line.
    (No PII beyond recipient email; keep values simple.)
    """
    payload = {"event": event, **fields}
    if warning:
        current_app.logger.warning(json.dumps(payload))
    else:
        current_app.logger.info(json.dumps(payload))


def send_email(
    to_email: str,
    subject: str,
    body: str,
    template: str,
    user_id: Optional[int] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Plain-text mail with an EmailLog row per attempt.
    template: the notification context, e.g. 'payment_failed.customer'.
    Returns True when the transport accepted the message.
    """
    to_email = (to_email or "").strip().lower()

    elog = EmailLog(
        user_id=user_id,
        to_email=to_email,
        template=template,
        subject=subject[:200],
        status="queued",
        meta=meta or {},
    )
    db.session.add(elog)
    db.session.commit()

    # Normalize line endings for SMTP
    text = body.replace("\r\n", "\n").replace("\r", "\n")
    msg = Message(recipients=[to_email], subject=subject, body=text)

    start = time.perf_counter()
    try:
        mail.send(msg)
    except Exception as ex:
        latency_ms = int((time.perf_counter() - start) * 1000)
        elog.status = "failed"
        elog.meta = {**(meta or {}), "error": type(ex).__name__}
        db.session.commit()
        _log_structured(
            "mail_send",
            warning=True,
            template=template,
            to=to_email,
            outcome="smtp_error",
            latency_ms=latency_ms,
            smtp_error=str(ex),
        )
        return False

    latency_ms = int((time.perf_counter() - start) * 1000)
    elog.status = "sent"
    db.session.commit()
    _log_structured("mail_send", template=template, to=to_email, outcome="sent", latency_ms=latency_ms)
    return True
