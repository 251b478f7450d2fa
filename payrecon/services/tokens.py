from typing import Optional
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired
from flask import current_app


def _serializer() -> URLSafeTimedSerializer:
    secret = current_app.config["SECRET_KEY"]
    salt = current_app.config.get("ACTION_TOKEN_SALT", "billing-action-v1")
    return URLSafeTimedSerializer(secret_key=secret, salt=salt)


def generate(action: str, subject: str = "") -> str:
    """
    action: e.g. 'onetime_intent', 'admin_refund'
    subject: what the token is bound to (a user id, a subscription id, ...); '' for anonymous actions.
    """
    return _serializer().dumps({"a": action, "s": str(subject)})


def verify(action: str, token: Optional[str], subject: str = "", max_age_seconds: Optional[int] = None) -> bool:
    if not token:
        return False
    if max_age_seconds is None:
        max_age_seconds = int(current_app.config.get("ACTION_TOKEN_MAX_AGE", 60 * 60 * 12))
    try:
        data = _serializer().loads(token, max_age=max_age_seconds)
    except (BadSignature, SignatureExpired):
        return False
    if not isinstance(data, dict) or data.get("a") != action:
        return False
    return data.get("s") == str(subject)
