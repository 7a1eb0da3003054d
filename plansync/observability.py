import os
import json
import logging
from logging.config import dictConfig

import sentry_sdk
from pythonjsonlogger import jsonlogger
from sentry_sdk.integrations.flask import FlaskIntegration

def init_logging(app):
    """JSON lines on stderr in staging/prod; default console handler in dev/tests."""
    app_env = (os.getenv("APP_ENV", "development") or "development").lower()
    level = (app.config.get("LOG_LEVEL") or "INFO").upper()
    if app_env not in ("staging", "production"):
        logging.getLogger("plansync").setLevel(level)
        return
    dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": jsonlogger.JsonFormatter, "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s"},
        },
        "handlers": {"stderr": {"class": "logging.StreamHandler", "formatter": "json"}},
        "root": {"level": level, "handlers": ["stderr"]},
    })

def _scrub_event(event, hint):
    # Stripe payloads carry customer emails and addresses
    request = event.get("request") or {}
    request.pop("data", None)
    headers = request.get("headers") or {}
    for name in list(headers):
        if name.lower() in ("stripe-signature", "cookie", "authorization"):
            headers[name] = "[Filtered]"
    return event

def init_sentry(app):
    """Wire Sentry if SENTRY_DSN is set; no-op otherwise."""
    dsn = os.getenv("SENTRY_DSN")
    if not dsn:
        return
    try:
        sentry_sdk.init(
            dsn=dsn,
            integrations=[FlaskIntegration()],
            traces_sample_rate=float(os.getenv("SENTRY_TRACES", "0.0")),
            environment=os.getenv("APP_ENV", "development"),
            send_default_pii=False,
            before_send=_scrub_event,
        )
    except Exception as exc:
        app.logger.warning("Sentry init skipped: %s", exc)

def log_event(logger, level: int, event: str, **fields) -> None:
    """
    Emit one structured billing log line: {"event": ..., **fields}.
    None-valued fields are dropped so lines stay greppable.
    """
    payload = {"event": event}
    payload.update({k: v for k, v in fields.items() if v is not None})
    logger.log(level, json.dumps(payload, default=str))
