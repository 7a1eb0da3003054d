import os
from flask import Flask, jsonify

# Outside production a local .env may supply Stripe test keys.
if os.getenv("APP_ENV", "development") != "production":
    from dotenv import load_dotenv
    load_dotenv(".env", override=False)

import stripe

from .config import get_config
from .extensions import db, migrate, csrf, limiter
from .security import init_security
from .observability import init_logging, init_sentry

PROD_LIKE = ("staging", "production")
REQUIRED_IN_PROD = ("SECRET_KEY", "DATABASE_URL", "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET")


def _app_env() -> str:
    return (os.getenv("APP_ENV", "development") or "development").lower()


def _limiter_storage(app_env: str) -> str:
    if app_env not in PROD_LIKE:
        return "memory://"
    uri = os.environ.get("REDIS_URL")
    if not uri:
        # Never run multi-worker without shared rate-limit storage
        raise RuntimeError("REDIS_URL is required in staging/production for rate limiting")
    return uri


def _check_required(app) -> None:
    missing = [name for name in REQUIRED_IN_PROD if not (os.getenv(name) or app.config.get(name))]
    if missing:
        raise RuntimeError(f"Missing required environment variable(s): {', '.join(missing)}")


def _register_error_handlers(app) -> None:
    from flask_wtf.csrf import CSRFError

    def _json_error(error: str, code: int):
        return jsonify({"error": error, "code": code}), code

    app.register_error_handler(400, lambda e: _json_error("bad_request", 400))
    app.register_error_handler(404, lambda e: _json_error("not_found", 404))
    app.register_error_handler(405, lambda e: _json_error("method_not_allowed", 405))
    app.register_error_handler(500, lambda e: _json_error("internal_error", 500))

    @app.errorhandler(CSRFError)
    def handle_csrf_error(e):
        return jsonify({"error": "csrf_failed", "detail": e.description}), 400

    @app.errorhandler(429)
    def too_many_requests(e):
        payload = {"error": "rate_limited", "code": 429}
        headers = {}
        retry_after = getattr(e, "retry_after", None)
        if retry_after is not None:
            payload["retry_after"] = int(retry_after)
            headers["Retry-After"] = str(int(retry_after))
        return payload, 429, headers


def create_app(config_overrides=None):
    app = Flask(__name__)
    app_env = _app_env()

    app.config["RATELIMIT_STORAGE_URI"] = _limiter_storage(app_env)
    app.config.setdefault("RATELIMIT_HEADERS_ENABLED", True)
    app.config.from_object(get_config())
    if config_overrides:
        app.config.update(config_overrides)

    if app_env in PROD_LIKE:
        _check_required(app)

    init_logging(app)
    init_sentry(app)
    if app_env in PROD_LIKE:
        init_security(app)

    db.init_app(app)
    migrate.init_app(app, db, directory="migrations")
    csrf.init_app(app)
    limiter.init_app(app)

    # Reconciliation pipeline, looked up per request so tests can swap parts
    from .billing import EventRouter, build_replay_guard
    app.extensions["replay_guard"] = build_replay_guard(app.config)
    app.extensions["event_router"] = EventRouter()

    from .blueprints.webhooks import bp as webhooks_bp
    from .blueprints.billing.routes import billing_bp
    app.register_blueprint(webhooks_bp, url_prefix="/webhooks")
    app.register_blueprint(billing_bp, url_prefix="/billing")

    @app.get("/healthz")
    @limiter.exempt
    def healthz():
        return {"status": "ok"}, 200

    _register_error_handlers(app)

    from .cli import register_cli
    register_cli(app)

    if app.config.get("STRIPE_SECRET_KEY"):
        stripe.api_key = app.config["STRIPE_SECRET_KEY"]
    else:
        app.logger.warning("STRIPE_SECRET_KEY missing; /billing/verify-session will fail")

    return app
