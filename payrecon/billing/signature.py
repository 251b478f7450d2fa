import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict

import stripe

from .errors import MalformedEvent, MissingSignature, NoSecretConfigured, SignatureMismatch

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedEvent:
    event_id: str
    event_type: str
    livemode: bool
    payload_object: Dict[str, Any]
    payload: Dict[str, Any] = field(default_factory=dict, repr=False)


class SignatureVerifier:
    """
    Authenticates Stripe webhook payloads against the test/live endpoint secrets.

    A first-pass success is only trusted when it used the secret that belongs to
    the event's own mode; otherwise the payload is re-verified with that secret.
    Timestamp tolerance (replay window) is enforced by Stripe's header check.
    """

    def __init__(self, test_secret: str | None, live_secret: str | None, tolerance: int = 300):
        self.test_secret = test_secret or ""
        self.live_secret = live_secret or ""
        self.tolerance = tolerance

    def verify(self, raw_body: bytes, signature_header: str | None) -> VerifiedEvent:
        if not signature_header:
            raise MissingSignature()
        if not self.test_secret and not self.live_secret:
            raise NoSecretConfigured()

        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedEvent("Payload is not valid UTF-8.")

        used_secret = self._first_matching_secret(payload, signature_header)

        try:
            data = json.loads(payload)
        except ValueError:
            raise MalformedEvent()
        if not isinstance(data, dict):
            raise MalformedEvent()

        livemode = bool(data.get("livemode"))
        authoritative = self.live_secret if livemode else self.test_secret
        if not authoritative:
            log.warning("webhook.mode_secret_missing", extra={"livemode": livemode})
            raise SignatureMismatch("Appropriate secret not configured.")
        if authoritative != used_secret and not self._matches(payload, signature_header, authoritative):
            log.warning("webhook.wrong_mode_secret", extra={"livemode": livemode})
            raise SignatureMismatch()

        event_id = data.get("id")
        event_type = data.get("type")
        if not event_id or not event_type:
            raise MalformedEvent()
        obj = (data.get("data") or {}).get("object") or {}
        return VerifiedEvent(
            event_id=event_id,
            event_type=event_type,
            livemode=livemode,
            payload_object=obj,
            payload=data,
        )

    def _first_matching_secret(self, payload: str, header: str) -> str:
        default = self.test_secret or self.live_secret
        candidates = [default]
        other = self.live_secret if default == self.test_secret else self.test_secret
        if other and other != default:
            candidates.append(other)
        for secret in candidates:
            if self._matches(payload, header, secret):
                return secret
        raise SignatureMismatch()

    def _matches(self, payload: str, header: str, secret: str) -> bool:
        try:
            stripe.WebhookSignature.verify_header(payload, header, secret, self.tolerance)
        except stripe.SignatureVerificationError:
            return False
        return True
