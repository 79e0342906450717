"""Data models for key slots and daily allocations."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, date
from typing import Dict, List, Optional

STATUS_AVAILABLE = "available"
STATUS_RATE_LIMITED = "rate_limited"
STATUS_DAILY_EXHAUSTED = "daily_exhausted"
STATUS_ERRORED = "errored"

WARNING_LOW = "LOW"
WARNING_MEDIUM = "MEDIUM"
WARNING_HIGH = "HIGH"
WARNING_CRITICAL = "CRITICAL"


@dataclass
class KeySlot:
    """One pooled credential with its live rate-limit counters."""

    index: int
    secret: str
    requests_used_today: int = 0
    requests_used_this_minute: int = 0
    leases: List[float] = field(default_factory=list)
    last_used_at: Optional[datetime] = None
    status: str = STATUS_AVAILABLE
    consecutive_error_count: int = 0

    @property
    def in_flight(self) -> int:
        """Reservations handed out and not yet reported back."""
        return len(self.leases)

    def key_prefix(self) -> str:
        if len(self.secret) <= 11:
            return self.secret
        return f"{self.secret[:8]}...{self.secret[-3:]}"


@dataclass
class PoolState:
    """Represents the state of the entire key pool."""

    slots: List[KeySlot] = field(default_factory=list)
    cursor: int = 0
    last_reset_date: Optional[date] = None


@dataclass
class FairShare:
    active_users: int
    requests_per_user: int
    total_available: int


@dataclass
class DailyAllocation:
    """Snapshot of one user's fair-share budget for today."""

    user_id: str
    model_name: str
    allocated: int
    used: int
    remaining: int
    percentage_used: float
    can_make_request: bool
    active_users: int
    warning_level: str
    should_warn: bool
    message: str

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass
class AllocationCheck:
    allowed: bool
    allocation: DailyAllocation
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "allocation": self.allocation.to_dict(),
        }


@dataclass
class SystemOverview:
    model_name: str
    total_requests_available: int
    total_requests_used: int
    requests_remaining: int
    system_usage_percentage: float
    active_users: int
    requests_per_user: int

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)
