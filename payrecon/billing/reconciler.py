"""
Applies verified provider events to the ledger and subscriber stores.

Handlers are order-independent and safe under redelivery: ledger writes are
idempotent by transaction id, status writes are last-write-wins and re-derive
the role every time. Subscription events for anything other than the
subscriber's current subscription are acknowledged without a write while that
subscription is still live.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from payrecon.observability import log_event
from payrecon.models.ledger import LEDGER_SUCCEEDED
from payrecon.models.subscriber import (
    STATUS_ACTIVE,
    STATUS_CANCELED,
    STATUS_PAYMENT_FAILED,
    SUBSCRIPTION_STATUSES,
    SUPERSEDABLE_STATUSES,
)
from .errors import NotFoundError, ProviderError, UnexpectedState
from .ledger import LedgerStore
from .notifications import PAYMENT_FAILED, SUBSCRIPTION_CANCELED, NotificationDispatcher
from .signature import VerifiedEvent
from .subscribers import IdentityResolver, SubscriberStore, extract_customer_id

RENEWAL_REASON = "subscription_cycle"


@dataclass(frozen=True)
class ReconcileOutcome:
    processed: bool
    action: str


def _ts(value) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value else None


def _obj_id(value) -> Optional[str]:
    # Expandable fields arrive as an id or as the expanded object
    if isinstance(value, Mapping):
        return value.get("id")
    return value or None


def invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    sub = _obj_id(invoice.get("subscription"))
    if sub:
        return sub
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return _obj_id(details.get("subscription"))


def invoice_plan_id(invoice: Mapping[str, Any]) -> Optional[str]:
    lines = (invoice.get("lines") or {}).get("data") or []
    if not lines:
        return None
    price = lines[0].get("price") or {}
    if price.get("id"):
        return price["id"]
    pricing = (lines[0].get("pricing") or {}).get("price_details") or {}
    return pricing.get("price")


def subscription_plan_id(sub: Mapping[str, Any]) -> Optional[str]:
    items = (sub.get("items") or {}).get("data") or []
    if not items:
        return None
    return (items[0].get("price") or {}).get("id")


class Reconciler:
    def __init__(
        self,
        ledger: LedgerStore,
        subscribers: SubscriberStore,
        resolver: IdentityResolver,
        notifier: NotificationDispatcher,
        item_namer: Optional[Callable[[str], str]] = None,
    ):
        self.ledger = ledger
        self.subscribers = subscribers
        self.resolver = resolver
        self.notifier = notifier
        self.item_namer = item_namer
        self._handlers: Dict[str, Callable[[VerifiedEvent], ReconcileOutcome]] = {
            "payment_intent.succeeded": self._payment_intent_succeeded,
            "invoice.payment_succeeded": self._invoice_paid,
            "invoice.paid": self._invoice_paid,
            "invoice.payment_failed": self._invoice_payment_failed,
            "customer.subscription.updated": self._subscription_updated,
            "customer.subscription.deleted": self._subscription_deleted,
            "charge.refunded": self._charge_refunded,
        }

    def handle(self, event: VerifiedEvent) -> ReconcileOutcome:
        handler = self._handlers.get(event.event_type)
        if handler is None:
            log_event("webhook.unhandled_type", event_id=event.event_id, type=event.event_type)
            return ReconcileOutcome(True, "ignored")
        outcome = handler(event)
        log_event(
            "webhook.reconciled",
            event_id=event.event_id,
            type=event.event_type,
            processed=outcome.processed,
            action=outcome.action,
        )
        return outcome

    # --- helpers ---
    def _resolve(self, event: VerifiedEvent) -> Optional[int]:
        customer_id = extract_customer_id(event.payload_object)
        try:
            return self.resolver.resolve(customer_id)
        except NotFoundError:
            log_event(
                "webhook.subscriber_unresolved",
                logging.WARNING,
                event_id=event.event_id,
                type=event.event_type,
                customer=customer_id,
            )
            return None

    def _item_name(self, plan_id: Optional[str], fallback: str) -> str:
        default = f"Subscription ({plan_id or fallback})"
        if not plan_id or self.item_namer is None:
            return default
        try:
            return self.item_namer(plan_id) or default
        except ProviderError:
            # Cosmetic lookup only; the id-based name is enough for the mail
            return default

    def _customer_email(self, subscriber_id: int) -> Optional[str]:
        state = self.subscribers.get(subscriber_id)
        return state.user.email if state is not None and state.user is not None else None

    def _superseded(self, event: VerifiedEvent, subscriber_id: int, subscription_id: Optional[str]) -> bool:
        """Event is about an older subscription than the one the subscriber now holds."""
        state = self.subscribers.get(subscriber_id)
        if state is None or not subscription_id or not state.active_subscription_id:
            return False
        if state.active_subscription_id == subscription_id:
            return False
        if state.subscription_status in SUPERSEDABLE_STATUSES:
            return False
        log_event(
            "webhook.subscription_superseded",
            event_id=event.event_id,
            type=event.event_type,
            subscription=subscription_id,
            current=state.active_subscription_id,
        )
        return True

    # --- handlers ---
    def _payment_intent_succeeded(self, event: VerifiedEvent) -> ReconcileOutcome:
        intent = event.payload_object
        if intent.get("invoice"):
            # Subscription charges are recorded from the invoice events
            return ReconcileOutcome(True, "ignored_invoice_intent")
        customer_id = extract_customer_id(intent)
        subscriber_id = None
        if customer_id:
            try:
                subscriber_id = self.resolver.resolve(customer_id)
            except NotFoundError:
                subscriber_id = None
        metadata = intent.get("metadata") or {}
        _, created = self.ledger.upsert(
            provider_transaction_id=intent["id"],
            provider_customer_id=customer_id or "",
            subscriber_id=subscriber_id,
            status=LEDGER_SUCCEEDED,
            amount_minor_units=intent.get("amount_received") or intent.get("amount") or 0,
            currency_code=intent.get("currency") or "",
            description=intent.get("description") or metadata.get("item_name") or "",
            metadata={"source": "webhook"},
            created_at=_ts(intent.get("created")),
        )
        return ReconcileOutcome(True, "ledger_recorded" if created else "ledger_duplicate")

    def _invoice_paid(self, event: VerifiedEvent) -> ReconcileOutcome:
        invoice = event.payload_object
        subscription_id = invoice_subscription_id(invoice)
        reason = invoice.get("billing_reason")
        if not subscription_id or reason != RENEWAL_REASON:
            log_event("webhook.invoice_ignored", event_id=event.event_id, billing_reason=reason)
            return ReconcileOutcome(True, "ignored")

        subscriber_id = self._resolve(event)
        if subscriber_id is None:
            return ReconcileOutcome(False, "subscriber_unresolved")

        plan_id = invoice_plan_id(invoice)
        txn_id = _obj_id(invoice.get("payment_intent")) or f"invoice_{invoice['id']}"
        self.ledger.upsert(
            provider_transaction_id=txn_id,
            provider_customer_id=extract_customer_id(invoice) or "",
            subscriber_id=subscriber_id,
            subscription_id=subscription_id,
            status=LEDGER_SUCCEEDED,
            amount_minor_units=invoice.get("amount_paid") or 0,
            currency_code=invoice.get("currency") or "",
            description=f"Subscription Recurring Payment ({plan_id or subscription_id})",
            metadata={"plan_id": plan_id, "invoice_id": invoice["id"], "billing_reason": reason},
            created_at=_ts(invoice.get("created")),
        )
        self.subscribers.set_status(subscriber_id, STATUS_ACTIVE)
        return ReconcileOutcome(True, "renewal_recorded")

    def _invoice_payment_failed(self, event: VerifiedEvent) -> ReconcileOutcome:
        invoice = event.payload_object
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            return ReconcileOutcome(True, "ignored")

        subscriber_id = self._resolve(event)
        if subscriber_id is None:
            return ReconcileOutcome(False, "subscriber_unresolved")

        if self._superseded(event, subscriber_id, subscription_id):
            return ReconcileOutcome(True, "superseded_subscription")

        _, previous = self.subscribers.set_status(subscriber_id, STATUS_PAYMENT_FAILED)
        if previous == STATUS_PAYMENT_FAILED:
            return ReconcileOutcome(True, "status_unchanged")

        plan_id = invoice_plan_id(invoice)
        self.notifier.dispatch(
            PAYMENT_FAILED,
            {
                "customer_id": extract_customer_id(invoice),
                "user_id": subscriber_id,
                "subscription_id": subscription_id,
                "plan_id": plan_id,
                "amount": invoice.get("amount_due"),
                "currency": invoice.get("currency"),
                "item_name": self._item_name(plan_id, subscription_id),
            },
            customer_email=self._customer_email(subscriber_id),
        )
        return ReconcileOutcome(True, "payment_failed_recorded")

    def _subscription_updated(self, event: VerifiedEvent) -> ReconcileOutcome:
        sub = event.payload_object
        status = sub.get("status")
        if status not in SUBSCRIPTION_STATUSES:
            raise UnexpectedState(f"Unknown subscription status {status!r}.", status=status)

        subscriber_id = self._resolve(event)
        if subscriber_id is None:
            return ReconcileOutcome(False, "subscriber_unresolved")

        if self._superseded(event, subscriber_id, sub.get("id")):
            return ReconcileOutcome(True, "superseded_subscription")

        self.subscribers.set_status(subscriber_id, status, subscription_id=sub.get("id"))
        return ReconcileOutcome(True, f"status_{status}")

    def _subscription_deleted(self, event: VerifiedEvent) -> ReconcileOutcome:
        sub = event.payload_object
        subscriber_id = self._resolve(event)
        if subscriber_id is None:
            return ReconcileOutcome(False, "subscriber_unresolved")

        if self._superseded(event, subscriber_id, sub.get("id")):
            return ReconcileOutcome(True, "superseded_subscription")

        _, previous = self.subscribers.set_status(subscriber_id, STATUS_CANCELED)
        if previous == STATUS_CANCELED:
            return ReconcileOutcome(True, "status_unchanged")

        plan_id = subscription_plan_id(sub)
        self.notifier.dispatch(
            SUBSCRIPTION_CANCELED,
            {
                "customer_id": extract_customer_id(sub),
                "user_id": subscriber_id,
                "subscription_id": sub.get("id"),
                "plan_id": plan_id,
                "item_name": self._item_name(plan_id, sub.get("id") or ""),
            },
            customer_email=self._customer_email(subscriber_id),
        )
        return ReconcileOutcome(True, "status_canceled")

    def _charge_refunded(self, event: VerifiedEvent) -> ReconcileOutcome:
        charge = event.payload_object
        pi_id = _obj_id(charge.get("payment_intent"))
        if not pi_id:
            return ReconcileOutcome(True, "ignored")
        result = self.ledger.mark_refunded(pi_id)
        if result is None:
            log_event("webhook.refund_target_missing", logging.WARNING, event_id=event.event_id, txn=pi_id)
            return ReconcileOutcome(False, "refund_target_missing")
        _, changed = result
        return ReconcileOutcome(True, "ledger_refunded" if changed else "already_refunded")
