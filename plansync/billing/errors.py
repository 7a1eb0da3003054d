import logging


class ReconciliationError(Exception):
    """
    Base for every outcome of the Stripe reconciliation pipeline that is not a
    plain success. Subclasses fix the HTTP status the provider sees, the log
    level operators see, and a stable machine-readable code.
    """
    status_code = 500
    log_level = logging.ERROR
    code = "internal_error"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    @property
    def acknowledged(self) -> bool:
        """True when the provider should stop retrying (2xx response)."""
        return 200 <= self.status_code < 300


# ---- Terminal, rejected before any handler runs (400) ----

class InvalidSignature(ReconciliationError):
    status_code = 400
    code = "invalid_signature"


class MalformedPayload(ReconciliationError):
    status_code = 400
    log_level = logging.WARNING
    code = "malformed_payload"


class EventTooOld(ReconciliationError):
    status_code = 400
    log_level = logging.WARNING
    code = "event_too_old"


# ---- Benign, acknowledged without state change (200) ----

class DuplicateEvent(ReconciliationError):
    status_code = 200
    log_level = logging.INFO
    code = "duplicate"


class UnknownEventKind(ReconciliationError):
    status_code = 200
    log_level = logging.INFO
    code = "unknown_event_kind"


class UserNotFound(ReconciliationError):
    status_code = 200
    log_level = logging.WARNING
    code = "user_not_found"


class MissingUserCorrelation(ReconciliationError):
    # Acknowledged so Stripe stops retrying an unfixable event, but a lost
    # upgrade needs a human: error level.
    status_code = 200
    log_level = logging.ERROR
    code = "missing_user_correlation"


# ---- Transient, provider retries with backoff (500) ----

class StorageError(ReconciliationError):
    status_code = 500
    code = "storage_error"
