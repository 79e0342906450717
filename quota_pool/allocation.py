"""Dynamic daily allocation of the pooled request budget across users."""

import logging
from datetime import date, datetime, timedelta, tzinfo
from typing import Optional, Protocol, cast
from zoneinfo import ZoneInfo

from quota_pool.config import Config
from quota_pool.models import (
    DailyAllocation,
    FairShare,
    SystemOverview,
    WARNING_CRITICAL,
    WARNING_HIGH,
    WARNING_LOW,
    WARNING_MEDIUM,
)

logger = logging.getLogger(__name__)


class UsageStore(Protocol):
    async def count_active_users(
        self, model_name: str, start: date, end: date
    ) -> int: ...

    async def ensure_user_allocation(
        self,
        user_id: str,
        model_name: str,
        day: date,
        allocated: int,
        active_users: int,
    ) -> int: ...

    async def increment_user_usage(
        self,
        user_id: str,
        model_name: str,
        day: date,
        total_available: int,
        key_index: Optional[int] = None,
    ) -> int: ...

    async def upsert_system_tracking(
        self,
        model_name: str,
        day: date,
        total_available: int,
        active_users: int,
        requests_per_user: int,
    ) -> None: ...

    async def get_system_tracking(self, model_name: str, day: date): ...


def calculate_requests_per_user(
    total_available: int,
    active_users: int,
    minimum_guarantee: int,
    max_users_cap: int,
) -> int:
    """Fair share of ``total_available`` for one of ``active_users`` users.

    The divisor is capped at ``max_users_cap``; past the
    cap every user keeps the minimum guarantee and the pool is
    oversubscribed. A lone user gets the whole pool, never more than it
    holds, even when that is below the minimum guarantee.
    """
    if active_users <= 1:
        return total_available
    divisor = min(active_users, max_users_cap)
    return max(minimum_guarantee, total_available // divisor)


def warning_level_for(percentage_used: float) -> str:
    if percentage_used >= 95:
        return WARNING_CRITICAL
    if percentage_used >= 80:
        return WARNING_HIGH
    if percentage_used >= 60:
        return WARNING_MEDIUM
    return WARNING_LOW


def allocation_message(remaining: int, allocated: int, active_users: int) -> str:
    if remaining <= 0:
        return (
            f"Daily limit reached ({allocated} requests). Your allocation may "
            "increase if fewer users are active."
        )
    if active_users <= 1:
        return f"You're the only active user today. Enjoy {allocated} requests."
    if active_users <= 5:
        return (
            f"{remaining}/{allocated} requests remaining. "
            f"Only {active_users} users active today."
        )
    return (
        f"{remaining}/{allocated} requests remaining today. "
        f"Shared among {active_users} active users."
    )


class AllocationEngine:
    """Splits the pool's daily capacity between today's active users.

    Nothing is cached: the active-user count moves all day, so every read
    recomputes the fair share from the store.
    """

    def __init__(self, config: Config, store: UsageStore):
        self.store = store
        self.total_available = config.total_daily_capacity
        self.min_requests_per_user = config.min_requests_per_user
        self.max_users_cap = config.max_users_cap
        self.lookback_days = config.active_user_lookback_days
        self._tz = cast(tzinfo, ZoneInfo(config.reset_timezone))

    def today(self) -> date:
        return datetime.now(self._tz).date()

    async def count_active_users(self, model_name: str, day: date) -> int:
        active = await self.store.count_active_users(model_name, day, day)
        if active == 0 and self.lookback_days > 0:
            # right after rollover nobody is active yet; use recent history
            active = await self.store.count_active_users(
                model_name,
                day - timedelta(days=self.lookback_days),
                day - timedelta(days=1),
            )
        return active

    async def compute_fair_share(
        self, model_name: str, day: Optional[date] = None
    ) -> FairShare:
        day = day or self.today()
        active_users = max(await self.count_active_users(model_name, day), 1)
        requests_per_user = calculate_requests_per_user(
            self.total_available,
            active_users,
            self.min_requests_per_user,
            self.max_users_cap,
        )

        await self.store.upsert_system_tracking(
            model_name,
            day,
            self.total_available,
            active_users,
            requests_per_user,
        )
        return FairShare(
            active_users=active_users,
            requests_per_user=requests_per_user,
            total_available=self.total_available,
        )

    async def get_user_allocation(
        self, user_id: str, model_name: str
    ) -> DailyAllocation:
        day = self.today()
        share = await self.compute_fair_share(model_name, day)
        allocated = share.requests_per_user
        used = await self.store.ensure_user_allocation(
            user_id, model_name, day, allocated, share.active_users
        )

        remaining = max(0, allocated - used)
        percentage_used = round(used / allocated * 100, 2) if allocated > 0 else 100.0
        warning_level = warning_level_for(percentage_used)

        return DailyAllocation(
            user_id=user_id,
            model_name=model_name,
            allocated=allocated,
            used=used,
            remaining=remaining,
            percentage_used=percentage_used,
            can_make_request=used < allocated,
            active_users=share.active_users,
            warning_level=warning_level,
            should_warn=warning_level != WARNING_LOW,
            message=allocation_message(remaining, allocated, share.active_users),
        )

    async def record_user_request(
        self, user_id: str, model_name: str, key_index: Optional[int] = None
    ) -> int:
        day = self.today()
        used = await self.store.increment_user_usage(
            user_id, model_name, day, self.total_available, key_index=key_index
        )
        logger.debug(
            "Tracked request for user %s on %s (%s): %d today",
            user_id,
            model_name,
            day.isoformat(),
            used,
        )
        return used

    async def get_system_overview(self, model_name: str) -> SystemOverview:
        day = self.today()
        share = await self.compute_fair_share(model_name, day)
        tracking = await self.store.get_system_tracking(model_name, day)
        total_used = tracking.total_requests_used if tracking else 0
        total = share.total_available

        return SystemOverview(
            model_name=model_name,
            total_requests_available=total,
            total_requests_used=total_used,
            requests_remaining=max(0, total - total_used),
            system_usage_percentage=round(total_used / total * 100, 2) if total else 0.0,
            active_users=share.active_users,
            requests_per_user=share.requests_per_user,
        )
