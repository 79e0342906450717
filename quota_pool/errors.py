"""Exceptions raised across the dispatch path."""

from typing import Optional

from quota_pool.models import DailyAllocation

QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
NO_KEYS_AVAILABLE = "NO_KEYS_AVAILABLE"
ALL_RETRIES_EXHAUSTED = "ALL_RETRIES_EXHAUSTED"
CANCELLED = "CANCELLED"


class UpstreamError(Exception):
    """A failed call to the generation API."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after


class DispatchError(Exception):
    """Terminal failure of a logical generation request.

    ``reason`` is written to be shown to the end user as-is.
    """

    def __init__(
        self,
        code: str,
        reason: str,
        allocation: Optional[DailyAllocation] = None,
    ):
        super().__init__(f"{code}: {reason}")
        self.code = code
        self.reason = reason
        self.allocation = allocation
