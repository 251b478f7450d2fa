import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from payrecon.observability import log_event
from payrecon.models.ledger import LEDGER_SUCCEEDED
from payrecon.models.subscriber import STATUS_ACTIVE, STATUS_TRIALING, SUBSCRIPTION_STATUSES
from payrecon.utils.validators import (
    clean_str,
    is_provider_id,
    is_valid_email,
    is_valid_price_id,
    normalize_currency,
    parse_amount,
)
from .errors import NotFoundError, ProviderError, ProviderTimeout, UnexpectedState, ValidationError
from .ledger import LedgerStore
from .notifications import SIGNUP_ONETIME, SIGNUP_SUBSCRIPTION, NotificationDispatcher
from .settings import BillingSettings
from .subscribers import IdentityResolver, SubscriberStore, extract_customer_id

REFUND_OK_STATUSES = ("succeeded", "pending")

# Upstream messages that mean the subscription is already gone
_ALREADY_CANCELED_MARKERS = ("no such subscription", "already canceled")


@dataclass(frozen=True)
class RecordResult:
    subscriber_id: int
    transaction_id: str
    created: bool
    notified: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _already_canceled(err: ProviderError) -> bool:
    if isinstance(err, ProviderTimeout):
        return False
    if err.provider_code == "resource_missing":
        return True
    detail = (err.context.get("detail") or err.message or "").lower()
    return any(marker in detail for marker in _ALREADY_CANCELED_MARKERS)


class CheckoutOrchestrator:
    """
    Synchronous client/admin flows against the provider.

    The create operations never touch local state; persistence only happens
    through ``record_confirmed_payment`` or the webhook, both of which share the
    ledger's idempotent upsert.
    """

    def __init__(
        self,
        settings: BillingSettings,
        gateway,
        ledger: LedgerStore,
        subscribers: SubscriberStore,
        resolver: IdentityResolver,
        notifier: NotificationDispatcher,
    ):
        self.settings = settings
        self.gateway = gateway
        self.ledger = ledger
        self.subscribers = subscribers
        self.resolver = resolver
        self.notifier = notifier

    # --- validation helpers ---
    def _email(self, email: Optional[str]) -> str:
        email = (clean_str(email, max_len=255) or "").lower()
        if not is_valid_email(email):
            raise ValidationError("Please enter a valid email address.")
        return email

    def _currency(self, currency: Optional[str]) -> str:
        cur = normalize_currency(currency) or self.settings.default_currency
        if cur not in self.settings.allowed_currencies:
            raise ValidationError("This currency is not accepted.", currency=cur)
        return cur

    def _plan(self, plan_id: Optional[str]) -> str:
        plan_id = clean_str(plan_id, max_len=255) or ""
        if not is_valid_price_id(plan_id):
            raise ValidationError("A valid plan is required.")
        if self.settings.allowed_price_ids and plan_id not in self.settings.allowed_price_ids:
            raise ValidationError("This plan is not available.", plan_id=plan_id)
        return plan_id

    # --- client flows ---
    def create_onetime_intent(
        self,
        email: Optional[str],
        amount,
        currency: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Dict[str, str]:
        email = self._email(email)
        amount_minor = parse_amount(amount)
        if amount_minor is None or amount_minor <= 0:
            raise ValidationError("Amount must be a whole number greater than zero.")
        cur = self._currency(currency)
        item = clean_str(description, max_len=500) or ""

        customer_id = self.gateway.find_or_create_customer(email)
        intent = self.gateway.create_payment_intent(
            amount=amount_minor,
            currency=cur,
            customer_id=customer_id,
            email=email,
            description=item,
        )
        log_event("checkout.intent_created", intent=intent.get("id"), customer=customer_id, amount=amount_minor)
        return {"client_secret": intent["client_secret"], "customer_id": customer_id}

    def create_subscription(self, email: Optional[str], plan_id: Optional[str]) -> Dict[str, Any]:
        email = self._email(email)
        plan_id = self._plan(plan_id)

        customer_id = self.gateway.find_or_create_customer(email)
        sub = self.gateway.create_subscription(customer_id=customer_id, price_id=plan_id, email=email)
        status = sub.get("status")
        invoice = sub.get("latest_invoice") or {}
        intent = invoice.get("payment_intent") if isinstance(invoice, dict) else None
        client_secret = None
        if isinstance(intent, dict):
            client_secret = intent.get("client_secret")
        elif isinstance(invoice, dict):
            client_secret = (invoice.get("confirmation_secret") or {}).get("client_secret")

        log_event("checkout.subscription_created", subscription=sub.get("id"), status=status, customer=customer_id)
        if status == "incomplete" and client_secret:
            return {"subscription_id": sub["id"], "client_secret": client_secret, "customer_id": customer_id}
        if status in (STATUS_ACTIVE, STATUS_TRIALING) and not intent:
            return {"subscription_id": sub["id"], "status": status, "customer_id": customer_id}
        log_event("checkout.subscription_unexpected", logging.ERROR, subscription=sub.get("id"), status=status)
        raise UnexpectedState(status=status)

    # --- provider confirmation ---
    def _retrieve(self, fetch, object_id: str, message: str) -> Dict[str, Any]:
        try:
            return fetch(object_id)
        except ProviderError as e:
            if isinstance(e, ProviderTimeout) or e.provider_code != "resource_missing":
                raise
            raise ValidationError(message, id=object_id) from e

    def _check_owner(self, obj: Dict[str, Any], customer_id: str, email: str, **context) -> None:
        if extract_customer_id(obj) != customer_id:
            log_event("checkout.record_customer_mismatch", logging.WARNING, customer=customer_id, **context)
            raise ValidationError("The payment does not belong to this customer.", **context)
        owner_email = ((obj.get("metadata") or {}).get("email") or "").strip().lower()
        if owner_email and owner_email != email:
            log_event("checkout.record_email_mismatch", logging.WARNING, customer=customer_id, **context)
            raise ValidationError("The payment does not belong to this customer.", **context)

    def _confirmed_intent(self, payment_intent_id: str, customer_id: str, email: str) -> Dict[str, Any]:
        if not is_provider_id(payment_intent_id, "pi_"):
            raise ValidationError("A valid payment id is required.")
        intent = self._retrieve(self.gateway.retrieve_payment_intent, payment_intent_id, "The payment was not found.")
        if intent.get("status") != "succeeded":
            log_event(
                "checkout.record_unconfirmed",
                logging.WARNING,
                txn=payment_intent_id,
                status=intent.get("status"),
            )
            raise ValidationError("This payment has not completed.", txn=payment_intent_id)
        self._check_owner(intent, customer_id, email, txn=payment_intent_id)
        return intent

    def _confirmed_subscription(self, subscription_id: str, customer_id: str, email: str) -> Dict[str, Any]:
        if not is_provider_id(subscription_id, "sub_"):
            raise ValidationError("A valid subscription id is required.")
        sub = self._retrieve(self.gateway.retrieve_subscription, subscription_id, "The subscription was not found.")
        if sub.get("status") not in SUBSCRIPTION_STATUSES:
            raise UnexpectedState(f"Unknown subscription status {sub.get('status')!r}.", status=sub.get("status"))
        self._check_owner(sub, customer_id, email, subscription=subscription_id)
        return sub

    def record_confirmed_payment(
        self,
        *,
        email: Optional[str],
        customer_id: Optional[str],
        amount=None,
        currency: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        plan_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> RecordResult:
        """
        Client-reported confirmation, checked against the provider before any
        write: the payment intent must have succeeded and the intent or
        subscription must belong to ``customer_id``. Amount, currency and
        subscription status are taken from the provider.

        Safe to repeat: the signup notice is sent once per transaction, by
        whichever call first links the identity to it.
        """
        payment_intent_id = clean_str(payment_intent_id)
        subscription_id = clean_str(subscription_id)
        customer_id = clean_str(customer_id)
        if not email or not customer_id or not (payment_intent_id or subscription_id):
            raise ValidationError("Missing payment details.")
        email = self._email(email)
        claimed = None
        if amount not in (None, ""):
            claimed = parse_amount(amount)
            if claimed is None or claimed < 0:
                raise ValidationError("Amount must be zero or more.")
        plan_id = clean_str(plan_id)

        intent = self._confirmed_intent(payment_intent_id, customer_id, email) if payment_intent_id else None
        sub = self._confirmed_subscription(subscription_id, customer_id, email) if subscription_id else None

        if intent is not None:
            amount_minor = intent.get("amount_received") or intent.get("amount") or 0
            provider_currency = intent.get("currency")
        else:
            amount_minor = 0
            provider_currency = sub.get("currency")
        if claimed is not None and claimed != amount_minor:
            log_event(
                "checkout.record_amount_mismatch",
                logging.WARNING,
                txn=payment_intent_id or subscription_id,
                claimed=claimed,
                amount=amount_minor,
            )
            raise ValidationError("The amount does not match the payment.")
        # Unrecognized currencies fall back to the default rather than failing a paid order
        cur = normalize_currency(provider_currency) or normalize_currency(currency)
        if cur not in self.settings.allowed_currencies:
            cur = self.settings.default_currency

        user, user_created = self.subscribers.find_or_create_user(email)
        self.subscribers.link_customer(user.id, customer_id)

        if sub is not None:
            self.subscribers.set_status(user.id, sub["status"], subscription_id=subscription_id)

        item_name = clean_str(description, max_len=500)
        if not item_name or item_name.startswith(("Subscription (", "N/A (")):
            if plan_id:
                item_name = f"Subscription ({plan_id})"
            elif subscription_id:
                item_name = "Unknown Subscription"
            else:
                item_name = item_name or ""

        txn_id = payment_intent_id or f"sub_initial_{subscription_id}"
        record, created = self.ledger.upsert(
            provider_transaction_id=txn_id,
            provider_customer_id=customer_id,
            subscriber_id=user.id,
            subscription_id=subscription_id,
            status=LEDGER_SUCCEEDED,
            amount_minor_units=amount_minor,
            currency_code=cur,
            description=item_name,
            metadata={"plan_id": plan_id, "source": "client"},
        )

        notified = False
        # The webhook may have written the row first; the notice still goes out once
        if self.ledger.claim_signup_notice(txn_id):
            context = SIGNUP_SUBSCRIPTION if subscription_id else SIGNUP_ONETIME
            self.notifier.dispatch(
                context,
                {
                    "user_id": user.id,
                    "customer_id": customer_id,
                    "payment_intent_id": payment_intent_id,
                    "subscription_id": subscription_id,
                    "plan_id": plan_id,
                    "amount": amount_minor,
                    "currency": cur,
                    "item_name": item_name,
                    "created_at": record.created_at,
                    "new_user": user_created,
                },
                customer_email=email,
            )
            notified = True

        return RecordResult(subscriber_id=user.id, transaction_id=txn_id, created=created, notified=notified)

    # --- subscription management ---
    def cancel_subscription(self, subscription_id: Optional[str], acting_user, admin: bool = False) -> Dict[str, Any]:
        """
        Ask the provider to cancel immediately. Local state follows from the
        ``customer.subscription.deleted`` webhook, not from this call.
        """
        subscription_id = clean_str(subscription_id) or ""
        if not is_provider_id(subscription_id, "sub_"):
            raise ValidationError("A valid subscription id is required.")

        if not admin:
            state = self.subscribers.get(acting_user.id)
            if state is None or state.active_subscription_id != subscription_id:
                log_event(
                    "billing.cancel_not_owned",
                    logging.WARNING,
                    user_id=acting_user.id,
                    subscription=subscription_id,
                )
                raise NotFoundError("The subscription to cancel was not found.")

        try:
            sub = self.gateway.cancel_subscription(subscription_id)
        except ProviderError as e:
            if not _already_canceled(e):
                raise
            log_event("billing.cancel_already_canceled", subscription=subscription_id)
            return {"subscription_id": subscription_id, "status": "canceled", "already_canceled": True}

        log_event(
            "billing.cancel_requested",
            subscription=subscription_id,
            user_id=getattr(acting_user, "id", None),
            admin=admin,
        )
        return {"subscription_id": subscription_id, "status": sub.get("status"), "already_canceled": False}

    def sync_subscription_status(self, subscription_id: Optional[str]) -> Dict[str, Any]:
        """Re-fetch the subscription and overwrite the local status and role."""
        subscription_id = clean_str(subscription_id) or ""
        if not is_provider_id(subscription_id, "sub_"):
            raise ValidationError("A valid subscription id is required.")

        sub = self.gateway.retrieve_subscription(subscription_id)
        status = sub.get("status")
        if status not in SUBSCRIPTION_STATUSES:
            raise UnexpectedState(f"Unknown subscription status {status!r}.", status=status)

        customer = sub.get("customer")
        customer_id = customer.get("id") if isinstance(customer, dict) else customer
        try:
            subscriber_id = self.resolver.resolve(customer_id)
        except NotFoundError:
            subscriber_id = self.resolver.resolve_by_subscription(subscription_id)
            if subscriber_id is None:
                raise

        state, previous = self.subscribers.set_status(subscriber_id, status, subscription_id=subscription_id)
        log_event("billing.sync", subscription=subscription_id, previous=previous, status=status)
        return {"previous_status": previous, **state.to_dict()}

    def refund_payment(self, payment_intent_id: Optional[str], acting_user) -> Dict[str, Any]:
        """
        Full refund. The ledger row moves to refunded when ``charge.refunded``
        arrives, not here.
        """
        payment_intent_id = clean_str(payment_intent_id) or ""
        if not is_provider_id(payment_intent_id, "pi_"):
            raise ValidationError("A valid payment id is required.")

        refund = self.gateway.create_refund(payment_intent_id)
        status = refund.get("status")
        log_event(
            "billing.refund_requested",
            txn=payment_intent_id,
            refund=refund.get("id"),
            status=status,
            user_id=getattr(acting_user, "id", None),
        )
        if status not in REFUND_OK_STATUSES:
            raise UnexpectedState(status=status)
        return {"refund_id": refund.get("id"), "status": status, "payment_intent_id": payment_intent_id}
