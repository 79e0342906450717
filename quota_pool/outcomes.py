"""Classification of generation attempts into retry outcomes.

The dispatcher only decides what to do with an outcome; deciding which
outcome an upstream failure is happens here.
"""

import math
import time
from dataclasses import dataclass
from typing import Any, Optional, Union

MINUTE_WAIT_BUFFER_SECONDS = 2.0
MAX_MINUTE_WAIT_SECONDS = 62.0

_RATE_LIMIT_MARKERS = (
    "rate limit",
    "too many requests",
    "quota exceeded",
    "requests per minute",
    "resource_exhausted",
)
_DAILY_LIMIT_MARKERS = (
    "daily quota",
    "daily limit",
    "requests per day",
    "per day",
    "perday",
)


@dataclass
class Success:
    result: Any


@dataclass
class MinuteLimited:
    wait_seconds: float
    error: Exception


@dataclass
class KeyExhausted:
    error: Exception


@dataclass
class Transient:
    error: Exception


Outcome = Union[Success, MinuteLimited, KeyExhausted, Transient]


def error_status(error: object) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(error, "status", None)
    return status if isinstance(status, int) else None


def error_message(error: object) -> str:
    message = getattr(error, "message", None)
    if not message:
        message = str(error)
    return str(message).lower()


def is_daily_limit_error(error: object) -> bool:
    message = error_message(error)
    return any(marker in message for marker in _DAILY_LIMIT_MARKERS)


def is_rate_limit_error(error: object) -> bool:
    if error_status(error) == 429:
        return True
    message = error_message(error)
    if "quota" in message and "minute" in message:
        return True
    return any(marker in message for marker in _RATE_LIMIT_MARKERS)


def minute_wait_seconds(
    retry_after: Optional[float] = None, now: Optional[float] = None
) -> float:
    """Seconds to wait for a per-minute window to reopen.

    Honors an upstream retry-after hint; otherwise waits for the next
    wall-clock minute plus a small buffer. Never more than
    ``MAX_MINUTE_WAIT_SECONDS``.
    """
    if retry_after is not None and retry_after > 0:
        return min(float(retry_after), MAX_MINUTE_WAIT_SECONDS)

    current = time.time() if now is None else now
    next_minute = math.floor(current / 60.0) * 60.0 + 60.0
    wait = next_minute - current + MINUTE_WAIT_BUFFER_SECONDS
    return min(wait, MAX_MINUTE_WAIT_SECONDS)


def classify_failure(error: Exception) -> Outcome:
    """Map a failed attempt to the outcome that drives retry policy."""
    if is_daily_limit_error(error):
        return KeyExhausted(error=error)
    if is_rate_limit_error(error):
        retry_after = getattr(error, "retry_after", None)
        return MinuteLimited(
            wait_seconds=minute_wait_seconds(retry_after), error=error
        )
    return Transient(error=error)
