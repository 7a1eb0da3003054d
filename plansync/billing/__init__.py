from .errors import (
    ReconciliationError,
    InvalidSignature,
    MalformedPayload,
    EventTooOld,
    DuplicateEvent,
    UnknownEventKind,
    UserNotFound,
    MissingUserCorrelation,
    StorageError,
)
from .events import EventKind, PaymentEvent, parse_envelope, parse_payload
from .replay_guard import ReplayGuard, ReplayCache, InMemoryReplayCache, RedisReplayCache, build_replay_guard
from .router import EventRouter, WebhookOutcome
from .signature import verify_signature
