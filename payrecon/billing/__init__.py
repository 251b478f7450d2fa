"""
Billing core: composition root.

``init_billing(app)`` wires every component once per app from ``app.config``
and stores the bundle at ``app.extensions["billing"]``. Tests swap the
provider gateway with ``services.use_gateway(fake)``.
"""
from flask import current_app

from .checkout import CheckoutOrchestrator
from .ledger import LedgerStore
from .notifications import NotificationDispatcher
from .provider import StripeGateway
from .reconciler import Reconciler
from .roles import DatabaseRoleGateway
from .settings import BillingSettings
from .signature import SignatureVerifier
from .subscribers import IdentityResolver, SubscriberStore


class BillingServices:
    def __init__(self, settings: BillingSettings, gateway=None):
        self.settings = settings
        self.verifier = SignatureVerifier(
            settings.test_webhook_secret,
            settings.live_webhook_secret,
            tolerance=settings.webhook_tolerance,
        )
        self.roles = DatabaseRoleGateway(settings.subscriber_role)
        self.ledger = LedgerStore()
        self.subscribers = SubscriberStore(self.roles)
        self.resolver = IdentityResolver()
        self.notifier = NotificationDispatcher(settings)
        self.use_gateway(gateway or StripeGateway(settings))

    def use_gateway(self, gateway) -> None:
        self.gateway = gateway
        self.reconciler = Reconciler(
            self.ledger,
            self.subscribers,
            self.resolver,
            self.notifier,
            item_namer=gateway.price_display_name,
        )
        self.checkout = CheckoutOrchestrator(
            self.settings,
            gateway,
            self.ledger,
            self.subscribers,
            self.resolver,
            self.notifier,
        )


def init_billing(app) -> BillingServices:
    services = BillingServices(BillingSettings.from_config(app.config))
    app.extensions["billing"] = services
    return services


def get_billing() -> BillingServices:
    return current_app.extensions["billing"]
