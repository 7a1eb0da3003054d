"""
Fast-path replay protection for Stripe webhooks.

Two checks run on every verified event:

1. freshness: events whose ``created`` is older than the configured window are
   rejected as possible replays of captured payloads;
2. recently-seen ids: a TTL cache answers "already handled?" without a DB
   round-trip.

The cache is only a latency short-circuit. It is per-process (memory) or
shared (Redis), and either way it can forget. The authoritative dedup gate is
the unique constraint on ``processed_events.event_id`` checked inside the
reconciler transaction.
"""
import threading
import time
from typing import Callable, Dict, Optional

from .errors import EventTooOld
from .events import PaymentEvent


class ReplayCache:
    """Interface for the recently-seen event id store."""

    def has(self, event_id: str) -> bool:
        raise NotImplementedError

    def put(self, event_id: str) -> None:
        raise NotImplementedError

    def add_if_absent(self, event_id: str) -> bool:
        """Atomically record ``event_id``. True if it was not already present."""
        raise NotImplementedError

    def discard(self, event_id: str) -> None:
        """Forget an id so a provider retry is processed again."""
        raise NotImplementedError


class InMemoryReplayCache(ReplayCache):
    def __init__(self, ttl: int = 600, sweep_interval: int = 300, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._seen: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def _sweep_locked(self, now: float) -> None:
        if now - self._last_sweep < self.sweep_interval:
            return
        expired = [k for k, ts in self._seen.items() if now - ts > self.ttl]
        for k in expired:
            del self._seen[k]
        self._last_sweep = now

    def _live_locked(self, event_id: str, now: float) -> bool:
        ts = self._seen.get(event_id)
        return ts is not None and now - ts <= self.ttl

    def has(self, event_id: str) -> bool:
        with self._lock:
            now = self._clock()
            self._sweep_locked(now)
            return self._live_locked(event_id, now)

    def put(self, event_id: str) -> None:
        with self._lock:
            now = self._clock()
            self._sweep_locked(now)
            self._seen[event_id] = now

    def add_if_absent(self, event_id: str) -> bool:
        with self._lock:
            now = self._clock()
            self._sweep_locked(now)
            if self._live_locked(event_id, now):
                return False
            self._seen[event_id] = now
            return True

    def discard(self, event_id: str) -> None:
        with self._lock:
            self._seen.pop(event_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)


class RedisReplayCache(ReplayCache):
    """Shared across instances; expiry is delegated to Redis key TTLs."""

    def __init__(self, client, ttl: int = 600, prefix: str = "stripe:webhook:seen:"):
        self._client = client
        self.ttl = ttl
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisReplayCache":
        import redis
        return cls(redis.Redis.from_url(url), **kwargs)

    def _key(self, event_id: str) -> str:
        return f"{self.prefix}{event_id}"

    def has(self, event_id: str) -> bool:
        return bool(self._client.exists(self._key(event_id)))

    def put(self, event_id: str) -> None:
        self._client.set(self._key(event_id), "1", ex=self.ttl)

    def add_if_absent(self, event_id: str) -> bool:
        # SET NX EX is a single atomic command
        return bool(self._client.set(self._key(event_id), "1", nx=True, ex=self.ttl))

    def discard(self, event_id: str) -> None:
        self._client.delete(self._key(event_id))


class ReplayGuard:
    def __init__(self, cache: ReplayCache, max_event_age: int = 600, clock: Callable[[], float] = time.time):
        self.cache = cache
        self.max_event_age = max_event_age
        self._clock = clock

    def check_fresh(self, event: PaymentEvent) -> None:
        age = self._clock() - event.created
        if age > self.max_event_age:
            raise EventTooOld(
                "event too old",
                event_id=event.id,
                event_type=event.type,
                event_age=int(age),
            )

    def check(self, event: PaymentEvent) -> bool:
        """
        Raise EventTooOld for stale events; otherwise return True when the id
        was already seen recently (duplicate) and record it when it was not.
        """
        self.check_fresh(event)
        return not self.cache.add_if_absent(event.id)

    def release(self, event_id: str) -> None:
        """Called when processing failed so the provider's retry is not short-circuited."""
        self.cache.discard(event_id)


def build_replay_cache(config) -> ReplayCache:
    backend = (config.get("REPLAY_CACHE_BACKEND") or "memory").lower()
    ttl = int(config.get("REPLAY_CACHE_TTL") or 600)
    if backend == "redis":
        url: Optional[str] = config.get("REDIS_URL")
        if not url:
            raise RuntimeError("REDIS_URL is required when REPLAY_CACHE_BACKEND=redis")
        return RedisReplayCache.from_url(url, ttl=ttl)
    return InMemoryReplayCache(ttl=ttl, sweep_interval=int(config.get("REPLAY_CACHE_SWEEP_INTERVAL") or 300))


def build_replay_guard(config) -> ReplayGuard:
    return ReplayGuard(
        build_replay_cache(config),
        max_event_age=int(config.get("WEBHOOK_MAX_EVENT_AGE") or 600),
    )
