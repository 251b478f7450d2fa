import os

from dotenv import dotenv_values


def _csv(name: str, default: str = "") -> tuple:
    raw = os.getenv(name, default) or ""
    return tuple(p.strip().lower() for p in raw.split(",") if p.strip())


def _flag(name: str, default: str = "true") -> bool:
    return (os.getenv(name, default) or default).lower() == "true"


class BaseConfig:
    # Secrets (env in prod; dev/test may use defaults)
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-not-secure")

    # Database (env in prod; dev/test may use default)
    _ENV_FALLBACK = dotenv_values(".env")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or _ENV_FALLBACK.get("DATABASE_URL") or "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging / misc
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Cookies: secure-by-default
    SESSION_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"

    # Flask-Limiter default: off globally; prefer per-route limits
    RATELIMIT_DEFAULT = None

    # --- Mail ---
    MAIL_SERVER = os.getenv("MAIL_SERVER", "localhost")
    MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
    MAIL_USE_TLS = _flag("MAIL_USE_TLS", "true")
    MAIL_USE_SSL = _flag("MAIL_USE_SSL", "false")
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "Billing <no-reply@local.test>")
    MAIL_SUPPRESS_SEND = _flag("MAIL_SUPPRESS_SEND", "false")

    SITE_NAME = os.getenv("SITE_NAME", "Members")
    APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:5000")

    # --- Stripe (Billing) ---
    # One mode flag selects between two parallel credential sets.
    STRIPE_MODE = (os.getenv("STRIPE_MODE", "test") or "test").lower()
    STRIPE_TEST_SECRET_KEY = os.getenv("STRIPE_TEST_SECRET_KEY")
    STRIPE_LIVE_SECRET_KEY = os.getenv("STRIPE_LIVE_SECRET_KEY")
    STRIPE_TEST_PUBLISHABLE_KEY = os.getenv("STRIPE_TEST_PUBLISHABLE_KEY")
    STRIPE_LIVE_PUBLISHABLE_KEY = os.getenv("STRIPE_LIVE_PUBLISHABLE_KEY")
    # Webhook secrets are configured independently of the mode flag
    STRIPE_TEST_WEBHOOK_SECRET = os.getenv("STRIPE_TEST_WEBHOOK_SECRET")
    STRIPE_LIVE_WEBHOOK_SECRET = os.getenv("STRIPE_LIVE_WEBHOOK_SECRET")
    STRIPE_WEBHOOK_TOLERANCE = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300"))
    STRIPE_API_VERSION = os.getenv("STRIPE_API_VERSION", "2024-04-10")
    STRIPE_TIMEOUT_SECONDS = float(os.getenv("STRIPE_TIMEOUT_SECONDS", "10"))
    STRIPE_MAX_NETWORK_RETRIES = int(os.getenv("STRIPE_MAX_NETWORK_RETRIES", "1"))

    ALLOWED_CURRENCIES = _csv("ALLOWED_CURRENCIES", "jpy,usd")
    ALLOWED_PRICE_IDS = tuple(
        p.strip() for p in (os.getenv("ALLOWED_PRICE_IDS", "") or "").split(",") if p.strip()
    )

    # Access-control attribute mirrored from subscription status (empty → not mirrored)
    SUBSCRIBER_ROLE = os.getenv("SUBSCRIBER_ROLE", "subscriber")

    # Per-action client tokens
    ACTION_TOKEN_SALT = os.getenv("ACTION_TOKEN_SALT", "billing-action-v1")
    ACTION_TOKEN_MAX_AGE = int(os.getenv("ACTION_TOKEN_MAX_AGE", str(60 * 60 * 12)))

    # --- Notifications ---
    ADMIN_NOTIFY_EMAIL = os.getenv("ADMIN_NOTIFY_EMAIL")
    NOTIFY_SIGNUP_ADMIN = _flag("NOTIFY_SIGNUP_ADMIN", "true")
    NOTIFY_ONETIME_CUSTOMER = _flag("NOTIFY_ONETIME_CUSTOMER", "false")
    NOTIFY_SUBSCRIPTION_CUSTOMER = _flag("NOTIFY_SUBSCRIPTION_CUSTOMER", "false")
    NOTIFY_FAILED_ADMIN = _flag("NOTIFY_FAILED_ADMIN", "true")
    NOTIFY_FAILED_CUSTOMER = _flag("NOTIFY_FAILED_CUSTOMER", "true")
    NOTIFY_CANCELED_ADMIN = _flag("NOTIFY_CANCELED_ADMIN", "true")
    NOTIFY_CANCELED_CUSTOMER = _flag("NOTIFY_CANCELED_CUSTOMER", "true")
    # Optional overrides: NOTIFY_TEMPLATES = {"payment_failed": {"customer_subject": "..."}}
    NOTIFY_TEMPLATES = {}


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    MAIL_SUPPRESS_SEND = True


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING")
    # Presence is enforced in create_app(), not at import time
    SECRET_KEY = os.environ.get("SECRET_KEY")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL")
    SESSION_COOKIE_SECURE = True
    REMEMBER_COOKIE_SECURE = True
    SESSION_COOKIE_SAMESITE = os.environ.get("SESSION_COOKIE_SAMESITE", "Lax")
    MAIL_SUPPRESS_SEND = False


class TestingConfig(BaseConfig):
    TESTING = True
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    MAIL_SUPPRESS_SEND = True
    RATELIMIT_ENABLED = False


_ENV_MAP = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}


def get_config():
    env = os.environ.get("APP_ENV", "development").lower()
    return _ENV_MAP.get(env, DevelopmentConfig)
