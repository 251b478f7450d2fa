"""
Billing error taxonomy.

Every error carries a stable ``code`` and a ``message`` that is safe to show a
customer. Internal detail goes to the logs, never into ``to_payload()``.
"""


class BillingError(Exception):
    code = "billing_error"
    http_status = 400
    default_message = "The request could not be completed."

    def __init__(self, message: str | None = None, **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_payload(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(BillingError):
    code = "validation_error"
    http_status = 400
    default_message = "Some of the submitted details are invalid."


class AuthenticityError(BillingError):
    code = "authenticity_error"
    http_status = 400
    default_message = "Request authenticity could not be verified."


class MissingSignature(AuthenticityError):
    code = "missing_signature"
    default_message = "Missing signature."


class NoSecretConfigured(AuthenticityError):
    code = "no_secret_configured"
    default_message = "Webhook secret not configured."


class SignatureMismatch(AuthenticityError):
    code = "signature_mismatch"
    default_message = "Webhook signature error."


class MalformedEvent(AuthenticityError):
    code = "malformed_event"
    default_message = "Malformed event payload."


class InvalidActionToken(AuthenticityError):
    code = "invalid_token"
    http_status = 403
    default_message = "Security check failed. Reload the page and try again."


class NotFoundError(BillingError):
    code = "not_found"
    http_status = 404
    default_message = "The requested record was not found."


class ProviderError(BillingError):
    code = "provider_error"
    http_status = 502
    default_message = "The payment provider returned an error."
    retryable = False

    def __init__(self, message: str | None = None, provider_code: str | None = None, **context):
        super().__init__(message, **context)
        self.provider_code = provider_code

    def to_payload(self) -> dict:
        payload = super().to_payload()
        if self.provider_code:
            payload["provider_code"] = self.provider_code
        return payload


class ProviderTimeout(ProviderError):
    code = "provider_timeout"
    http_status = 503
    default_message = "The payment provider did not respond in time. Please retry."
    retryable = True


class PersistenceConflict(BillingError):
    """Unique-key hit on a concurrent duplicate write; callers treat it as success."""
    code = "persistence_conflict"
    http_status = 200


class UnexpectedState(BillingError):
    code = "unexpected_state"
    http_status = 502
    default_message = "The payment provider returned an unexpected state."
