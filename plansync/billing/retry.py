import logging
import time
from typing import Callable, Tuple, Type, TypeVar

from plansync.observability import log_event

from .errors import StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 3
BASE_DELAY = 0.2  # seconds; doubles per attempt

# Transient: the same call may succeed on a later attempt. Everything else is fatal.
RETRYABLE: Tuple[Type[BaseException], ...] = (StorageError,)


def retry(
    operation: Callable[[], T],
    *,
    max_attempts: int = MAX_ATTEMPTS,
    base_delay: float = BASE_DELAY,
    retryable: Tuple[Type[BaseException], ...] = RETRYABLE,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """
    Run ``operation`` up to ``max_attempts`` times, sleeping
    ``base_delay * 2**(attempt-1)`` between attempts. Only ``retryable``
    errors are retried; fatal ones and the last retryable one propagate.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except retryable as exc:
            if attempt >= max_attempts:
                log_event(logger, logging.ERROR, "retry_exhausted", operation=label, attempts=attempt, error=type(exc).__name__)
                raise
            delay = base_delay * (2 ** (attempt - 1))
            log_event(logger, logging.WARNING, "retrying", operation=label, attempt=attempt, delay=delay, error=type(exc).__name__)
            sleep(delay)
