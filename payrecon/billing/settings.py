from dataclasses import dataclass, field
from typing import Any, Mapping

MODE_TEST = "test"
MODE_LIVE = "live"


@dataclass(frozen=True)
class BillingSettings:
    """
    Immutable billing configuration handed to every component at construction.
    Built once per app from ``app.config``; components never read globals.
    """
    mode: str = MODE_TEST
    test_secret_key: str = ""
    live_secret_key: str = ""
    test_publishable_key: str = ""
    live_publishable_key: str = ""
    test_webhook_secret: str = ""
    live_webhook_secret: str = ""
    webhook_tolerance: int = 300
    api_version: str | None = None
    timeout_seconds: float = 10.0
    max_network_retries: int = 1
    allowed_currencies: tuple = ("jpy", "usd")
    allowed_price_ids: tuple = ()
    subscriber_role: str | None = "subscriber"
    site_name: str = ""
    site_url: str = ""
    admin_notify_email: str | None = None
    notify_toggles: Mapping[str, bool] = field(default_factory=dict)
    notify_templates: Mapping[str, Mapping[str, str]] = field(default_factory=dict)

    @property
    def is_live(self) -> bool:
        return self.mode == MODE_LIVE

    @property
    def secret_key(self) -> str:
        return self.live_secret_key if self.is_live else self.test_secret_key

    @property
    def publishable_key(self) -> str:
        return self.live_publishable_key if self.is_live else self.test_publishable_key

    @property
    def default_currency(self) -> str:
        return self.allowed_currencies[0] if self.allowed_currencies else "jpy"

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "BillingSettings":
        mode = (cfg.get("STRIPE_MODE") or MODE_TEST).lower()
        if mode not in (MODE_TEST, MODE_LIVE):
            raise ValueError(f"STRIPE_MODE must be 'test' or 'live', got {mode!r}")
        return cls(
            mode=mode,
            test_secret_key=cfg.get("STRIPE_TEST_SECRET_KEY") or "",
            live_secret_key=cfg.get("STRIPE_LIVE_SECRET_KEY") or "",
            test_publishable_key=cfg.get("STRIPE_TEST_PUBLISHABLE_KEY") or "",
            live_publishable_key=cfg.get("STRIPE_LIVE_PUBLISHABLE_KEY") or "",
            test_webhook_secret=cfg.get("STRIPE_TEST_WEBHOOK_SECRET") or "",
            live_webhook_secret=cfg.get("STRIPE_LIVE_WEBHOOK_SECRET") or "",
            webhook_tolerance=int(cfg.get("STRIPE_WEBHOOK_TOLERANCE") or 300),
            api_version=cfg.get("STRIPE_API_VERSION") or None,
            timeout_seconds=float(cfg.get("STRIPE_TIMEOUT_SECONDS") or 10),
            max_network_retries=int(cfg.get("STRIPE_MAX_NETWORK_RETRIES", 1)),
            allowed_currencies=tuple(cfg.get("ALLOWED_CURRENCIES") or ("jpy", "usd")),
            allowed_price_ids=tuple(cfg.get("ALLOWED_PRICE_IDS") or ()),
            subscriber_role=cfg.get("SUBSCRIBER_ROLE") or None,
            site_name=cfg.get("SITE_NAME") or "",
            site_url=cfg.get("APP_BASE_URL") or "",
            admin_notify_email=cfg.get("ADMIN_NOTIFY_EMAIL") or None,
            notify_toggles={
                "signup_onetime.admin": bool(cfg.get("NOTIFY_SIGNUP_ADMIN", True)),
                "signup_onetime.customer": bool(cfg.get("NOTIFY_ONETIME_CUSTOMER", False)),
                "signup_subscription.admin": bool(cfg.get("NOTIFY_SIGNUP_ADMIN", True)),
                "signup_subscription.customer": bool(cfg.get("NOTIFY_SUBSCRIPTION_CUSTOMER", False)),
                "payment_failed.admin": bool(cfg.get("NOTIFY_FAILED_ADMIN", True)),
                "payment_failed.customer": bool(cfg.get("NOTIFY_FAILED_CUSTOMER", True)),
                "subscription_canceled.admin": bool(cfg.get("NOTIFY_CANCELED_ADMIN", True)),
                "subscription_canceled.customer": bool(cfg.get("NOTIFY_CANCELED_CUSTOMER", True)),
            },
            notify_templates=dict(cfg.get("NOTIFY_TEMPLATES") or {}),
        )

    def describe(self) -> dict:
        """Which credentials are present, never their values."""
        return {
            "mode": self.mode,
            "secret_key": bool(self.secret_key),
            "publishable_key": bool(self.publishable_key),
            "test_webhook_secret": bool(self.test_webhook_secret),
            "live_webhook_secret": bool(self.live_webhook_secret),
            "subscriber_role": self.subscriber_role,
        }
