import os
import json
from flask import Flask, request, jsonify

# Load .env only for local/dev. In prod, env vars come from the platform.
if os.getenv("APP_ENV", "development") != "production":
    from dotenv import load_dotenv
    load_dotenv(".env", override=False)


from .config import get_config
from .extensions import db, migrate, login_manager, limiter, mail
from .security import init_security
from .observability import init_logging, init_sentry


def create_app(config_object=None):
    app = Flask(__name__)

    # ---- Rate limiting storage ----
    app_env = (os.getenv("APP_ENV", "development") or "development").lower()
    use_redis = app_env in ("staging", "production")
    storage_uri = os.environ.get("REDIS_URL") if use_redis else "memory://"
    if use_redis and not storage_uri:
        # Hard fail in stage/prod so we never silently run without RL storage
        raise RuntimeError("REDIS_URL is required in staging/production for rate limiting")

    app.config["RATELIMIT_STORAGE_URI"] = storage_uri
    app.config.setdefault("RATELIMIT_DEFAULTS", ["1000 per hour"])
    app.config.setdefault("RATELIMIT_HEADERS_ENABLED", True)

    # Config: clean, explicit, class-based
    app.config.from_object(config_object or get_config())
    app.config.setdefault("APP_ENV", app_env)

    # --- Required env validation for prod-like envs (staging/production) ---
    def _require(name: str):
        val = app.config.get(name) or os.getenv(name)
        if not val:
            raise RuntimeError(f"Missing required environment variable: {name}")
        return val

    if app_env in ("staging", "production"):
        # Enforce hard requirements at startup (not at import time)
        _require("SECRET_KEY")
        _require("SQLALCHEMY_DATABASE_URI")
        mode = (app.config.get("STRIPE_MODE") or "test").upper()
        _require(f"STRIPE_{mode}_SECRET_KEY")
        _require(f"STRIPE_{mode}_WEBHOOK_SECRET")

    # --- Observability & Security ---
    init_logging(app)
    init_sentry(app)

    # Apply HTTPS, HSTS & CSP only in staging/production
    if app_env in ("staging", "production"):
        init_security(app)

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db, directory=os.path.join(os.path.dirname(app.root_path), "migrations"))
    login_manager.init_app(app)
    limiter.init_app(app)
    mail.init_app(app)

    # Billing core (settings validated here; bad STRIPE_MODE fails boot)
    from .billing import init_billing
    billing = init_billing(app)
    if not billing.settings.secret_key:
        app.logger.warning("Stripe secret key missing; billing features will not work")

    # Blueprints (explicit, consistent prefixes)
    from .blueprints.webhooks import bp as webhooks_bp
    from .blueprints.billing import bp as billing_bp
    from .blueprints.admin import bp as admin_bp

    app.register_blueprint(webhooks_bp)                                # "/webhook"
    app.register_blueprint(billing_bp, url_prefix="/billing")
    app.register_blueprint(admin_bp, url_prefix="/admin/billing")

    # Health
    @limiter.exempt
    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}, 200

    # --- Error handlers (JSON-only service) ---
    from .billing.errors import BillingError, ProviderError, UnexpectedState

    @app.errorhandler(BillingError)
    def handle_billing_error(e):
        # Safe message + stable code only; detail stays in the logs
        fields = {"event": "billing_error", "code": e.code, "path": request.path}
        if isinstance(e, ProviderError) and e.provider_code:
            fields["provider_code"] = e.provider_code
        if isinstance(e, UnexpectedState):
            app.logger.error(json.dumps({**fields, **{k: str(v) for k, v in e.context.items()}}))
        elif isinstance(e, ProviderError):
            app.logger.warning(json.dumps(fields))
        else:
            app.logger.info(json.dumps(fields))
        return jsonify({"ok": False, "error": e.to_payload()}), e.http_status

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"ok": False, "error": {"code": "not_found", "message": "Not Found"}}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"ok": False, "error": {"code": "method_not_allowed", "message": "Method Not Allowed"}}), 405

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"ok": False, "error": {"code": "server_error", "message": "Internal Server Error"}}), 500

    # 429 Too Many Requests: JSON body plus Retry-After
    @app.errorhandler(429)
    def too_many_requests(e):
        retry_after = getattr(e, "retry_after", None)
        headers = {}
        payload = {"ok": False, "error": {"code": "rate_limited", "message": "Too many requests."}}
        if retry_after is not None:
            headers["Retry-After"] = str(int(retry_after))
            payload["retry_after"] = int(retry_after)
        return (payload, 429, headers)

    # CLI commands (ops-grade utilities)
    from .cli import register_cli
    register_cli(app)

    return app
