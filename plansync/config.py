import os

from dotenv import dotenv_values

# Local .env is a fallback for DATABASE_URL only; real env vars always win
_DOTENV = dotenv_values(".env")


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name) or default)


class BaseConfig:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-not-secure")
    WTF_CSRF_SECRET_KEY = SECRET_KEY

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or _DOTENV.get("DATABASE_URL") or "sqlite:///plansync-dev.db"
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Per-route limits only (verify-session); the webhook is never throttled
    RATELIMIT_DEFAULT = None

    # --- Stripe ---
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

    # Signature timestamp tolerance enforced by the Stripe SDK (seconds)
    WEBHOOK_SIGNATURE_TOLERANCE = _int_env("WEBHOOK_SIGNATURE_TOLERANCE", 300)
    # Events older than this are rejected as possible replays (seconds)
    WEBHOOK_MAX_EVENT_AGE = _int_env("WEBHOOK_MAX_EVENT_AGE", 600)

    # --- Replay cache: fast-path dedup only, processed_events is authoritative ---
    REPLAY_CACHE_BACKEND = os.getenv("REPLAY_CACHE_BACKEND", "memory").lower()  # memory | redis
    REPLAY_CACHE_TTL = _int_env("REPLAY_CACHE_TTL", 600)
    REPLAY_CACHE_SWEEP_INTERVAL = _int_env("REPLAY_CACHE_SWEEP_INTERVAL", 300)
    REDIS_URL = os.getenv("REDIS_URL")

    # Return-from-checkout upgrade: first retry delay, doubled per attempt
    CHECKOUT_VERIFY_BASE_DELAY = float(os.getenv("CHECKOUT_VERIFY_BASE_DELAY", "0.2"))


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING")
    # Presence is enforced by create_app(); never raise at import
    SECRET_KEY = os.environ.get("SECRET_KEY")
    WTF_CSRF_SECRET_KEY = SECRET_KEY
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL")
    # Several workers share one view of recently seen events
    REPLAY_CACHE_BACKEND = os.getenv("REPLAY_CACHE_BACKEND", "redis").lower()


class StagingConfig(ProductionConfig):
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


class TestingConfig(BaseConfig):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    WTF_CSRF_ENABLED = False
    RATELIMIT_ENABLED = False
    REPLAY_CACHE_BACKEND = "memory"
    CHECKOUT_VERIFY_BASE_DELAY = 0.0


_ENV_MAP = {
    "development": DevelopmentConfig,
    "staging": StagingConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}


def get_config():
    env = os.environ.get("APP_ENV", "development").lower()
    return _ENV_MAP.get(env, DevelopmentConfig)
