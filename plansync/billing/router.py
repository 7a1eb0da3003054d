import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from plansync.observability import log_event

from . import reconciler
from .errors import DuplicateEvent, ReconciliationError, UnknownEventKind
from .events import EventKind, PaymentEvent, parse_payload

logger = logging.getLogger(__name__)

Handler = Callable[..., Optional[str]]

DEFAULT_HANDLERS: Dict[EventKind, Handler] = {
    EventKind.CHECKOUT_COMPLETED: reconciler.apply_checkout_completed,
    EventKind.SUBSCRIPTION_UPDATED: reconciler.apply_subscription_updated,
    EventKind.SUBSCRIPTION_DELETED: reconciler.apply_subscription_deleted,
    EventKind.INVOICE_PAID: reconciler.apply_invoice_paid,
    EventKind.INVOICE_FAILED: reconciler.apply_invoice_failed,
}


@dataclass
class WebhookOutcome:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None

    @property
    def acknowledged(self) -> bool:
        return 200 <= self.status_code < 300


class EventRouter:
    """
    Dispatch a verified, non-duplicate event to its typed handler and turn the
    result into the provider-facing outcome. One event's failure never
    escapes as an exception.
    """

    def __init__(self, handlers: Optional[Dict[EventKind, Handler]] = None):
        self.handlers = dict(DEFAULT_HANDLERS if handlers is None else handlers)

    def dispatch(self, event: PaymentEvent, meta: Optional[Dict[str, Any]] = None) -> WebhookOutcome:
        ack = {"received": True, "event_id": event.id, "event_type": event.type}
        kind = event.kind
        handler = self.handlers.get(kind) if kind else None

        if handler is None:
            # Stripe adds event types over time; never an error
            self._log(UnknownEventKind("unhandled event type", event_id=event.id, event_type=event.type), meta)
            return WebhookOutcome(200, dict(ack, ignored=True))

        try:
            payload = parse_payload(event)
            user_id = handler(event, payload, meta)
        except DuplicateEvent as exc:
            self._log(exc, meta)
            return WebhookOutcome(200, dict(ack, duplicate=True), exc.context.get("user_id"))
        except ReconciliationError as exc:
            self._log(exc, meta)
            user_id = exc.context.get("user_id")
            if exc.acknowledged:
                return WebhookOutcome(200, dict(ack, note=exc.code), user_id)
            return WebhookOutcome(exc.status_code, {"error": exc.code, "event_id": event.id}, user_id)
        except Exception:
            logger.exception(
                "stripe_webhook_handler_error",
                extra={"event_id": event.id, "event_type": event.type, "kind": kind.value},
            )
            return WebhookOutcome(500, {"error": "internal_error", "event_id": event.id})

        return WebhookOutcome(200, ack, user_id)

    @staticmethod
    def _log(exc: ReconciliationError, meta: Optional[Dict[str, Any]]) -> None:
        fields = dict(exc.context)
        if meta and meta.get("request_id"):
            fields.setdefault("request_id", meta["request_id"])
        log_event(logger, exc.log_level, f"stripe_webhook_{exc.code}", message=exc.message, **fields)
