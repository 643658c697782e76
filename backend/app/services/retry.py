from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger("whatsapp_inbox.retry")

T = TypeVar("T")


def backoff_delay(attempt: int, base: float, maximum: float, multiplier: float = 2.0) -> float:
    """Delay before retry number ``attempt`` (1-based), capped at ``maximum``."""
    if attempt < 1:
        attempt = 1
    return min(maximum, base * (multiplier ** (attempt - 1)))


def retry_with_backoff(
    fn: Callable[[], T],
    *,
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    multiplier: float = 2.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    attempts = max(1, max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as exc:
            if attempt >= attempts:
                raise
            delay = backoff_delay(attempt, initial_delay, max_delay, multiplier)
            logger.warning(
                "retry_scheduled attempt=%s max_attempts=%s delay=%.2f error=%s",
                attempt,
                attempts,
                delay,
                exc,
            )
            if on_retry:
                on_retry(attempt, exc)
            sleep(delay)
    raise RuntimeError("unreachable")
