"""Key pool management."""

import asyncio
import logging
import time
from datetime import datetime, timedelta, tzinfo
from typing import Dict, Optional, cast
from zoneinfo import ZoneInfo

from quota_pool.config import Config
from quota_pool.models import (
    KeySlot,
    PoolState,
    STATUS_AVAILABLE,
    STATUS_DAILY_EXHAUSTED,
    STATUS_ERRORED,
    STATUS_RATE_LIMITED,
)
from quota_pool.outcomes import is_daily_limit_error, is_rate_limit_error

logger = logging.getLogger(__name__)


class KeyPool:
    """Round-robin pool of API keys with per-minute and per-day limits.

    Every mutation runs under one lock, and ``select_key`` reserves a unit
    of the chosen slot's capacity until the outcome is recorded, so two
    concurrent callers can never both be handed the last unit of a slot.
    """

    def __init__(self, config: Config):
        self.pool: PoolState = PoolState()
        self.rpm_limit = config.rpm_limit
        self.rpd_limit = config.rpd_limit
        self.error_ban_threshold = config.error_ban_threshold
        self.lease_timeout_seconds = config.lease_timeout_seconds
        self._clock = time.monotonic
        self._tz = cast(tzinfo, ZoneInfo(config.reset_timezone))
        self._lock: asyncio.Lock = asyncio.Lock()

        for index, secret in enumerate(config.api_keys):
            self.pool.slots.append(KeySlot(index=index, secret=secret))

        self.pool.last_reset_date = datetime.now(self._tz).date()
        logger.info("Initialized key pool with %d keys", len(self.pool.slots))

    async def select_key(self) -> Optional[KeySlot]:
        async with self._lock:
            size = len(self.pool.slots)
            for _ in range(size):
                slot = self.pool.slots[self.pool.cursor]
                self.pool.cursor = (self.pool.cursor + 1) % size
                if self._is_available(slot):
                    slot.leases.append(self._clock())
                    return slot

        logger.warning("No available keys found")
        return None

    async def record_success(self, index: int) -> None:
        async with self._lock:
            slot = self._slot(index)
            if slot is None:
                return

            self._release(slot)
            slot.requests_used_today += 1
            slot.requests_used_this_minute += 1
            slot.last_used_at = datetime.now()
            slot.consecutive_error_count = 0
            slot.status = self._compute_status(slot)

            logger.debug(
                "Key %d used successfully. Daily: %d/%d, Minute: %d/%d",
                index,
                slot.requests_used_today,
                self.rpd_limit,
                slot.requests_used_this_minute,
                self.rpm_limit,
            )

    async def record_failure(self, index: int, error: object) -> None:
        async with self._lock:
            slot = self._slot(index)
            if slot is None:
                return

            self._release(slot)
            slot.consecutive_error_count += 1
            slot.last_used_at = datetime.now()

            if is_daily_limit_error(error):
                slot.status = STATUS_DAILY_EXHAUSTED
                logger.warning("Key %d daily limit exceeded", index)
            elif slot.consecutive_error_count >= self.error_ban_threshold:
                slot.status = STATUS_ERRORED
                logger.error(
                    "Key %d banned after %d consecutive errors: %s",
                    index,
                    slot.consecutive_error_count,
                    error,
                )
            elif is_rate_limit_error(error):
                slot.status = STATUS_RATE_LIMITED
                logger.warning("Key %d rate limited", index)
            else:
                slot.status = self._compute_status(slot)
                logger.error("Key %d error: %s", index, error)

    async def release_key(self, index: int) -> None:
        """Give back a reservation whose call never reached the upstream."""
        async with self._lock:
            slot = self._slot(index)
            if slot is not None:
                self._release(slot)

    def has_available_key(self) -> bool:
        return any(self._is_available(slot) for slot in self.pool.slots)

    async def reset_slot(self, index: int) -> bool:
        async with self._lock:
            slot = self._slot(index)
            if slot is None:
                return False

            slot.requests_used_today = 0
            slot.requests_used_this_minute = 0
            slot.leases.clear()
            slot.consecutive_error_count = 0
            slot.status = STATUS_AVAILABLE
            logger.info("Key %d reset manually", index)
            return True

    async def reacquire(self, index: int) -> Optional[KeySlot]:
        """Reserve the same slot again after waiting out its minute window.

        The upstream told us how long to wait, so its word replaces the
        local minute counter for this slot and ``rate_limited`` is cleared.
        Banned or daily-exhausted slots are not handed back.
        """
        async with self._lock:
            slot = self._slot(index)
            if slot is None or slot.status in (STATUS_ERRORED, STATUS_DAILY_EXHAUSTED):
                return None
            if (
                slot.consecutive_error_count >= self.error_ban_threshold
                or slot.requests_used_today + slot.in_flight >= self.rpd_limit
            ):
                return None

            slot.status = STATUS_AVAILABLE
            slot.leases.append(self._clock())
            return slot

    async def on_minute_boundary(self) -> None:
        async with self._lock:
            cutoff = self._clock() - self.lease_timeout_seconds
            for slot in self.pool.slots:
                slot.requests_used_this_minute = 0
                live = [leased_at for leased_at in slot.leases if leased_at > cutoff]
                if len(live) < len(slot.leases):
                    logger.warning(
                        "Key %d: expired %d unreported reservations",
                        slot.index,
                        len(slot.leases) - len(live),
                    )
                    slot.leases = live
                if slot.status == STATUS_RATE_LIMITED:
                    slot.status = self._compute_status(slot)

    async def on_day_boundary(self) -> None:
        async with self._lock:
            for slot in self.pool.slots:
                slot.requests_used_today = 0
                slot.requests_used_this_minute = 0
                slot.consecutive_error_count = 0
                slot.status = STATUS_AVAILABLE

            self.pool.last_reset_date = datetime.now(self._tz).date()
        logger.info("All keys daily stats reset")

    async def check_and_reset_daily(self) -> bool:
        """Run the day reset if the date rolled over since the last one."""
        today = datetime.now(self._tz).date()
        if self.pool.last_reset_date and today <= self.pool.last_reset_date:
            return False
        await self.on_day_boundary()
        return True

    def get_status(self) -> Dict[str, object]:
        slots = self.pool.slots
        size = len(slots)
        next_reset = None
        if self.pool.last_reset_date:
            next_reset_date = self.pool.last_reset_date + timedelta(days=1)
            next_reset = next_reset_date.isoformat()

        return {
            "total_keys": size,
            "active_keys": sum(1 for slot in slots if slot.status != STATUS_ERRORED),
            "available_keys": sum(1 for slot in slots if self._is_available(slot)),
            "exhausted_keys": sum(
                1 for slot in slots if slot.status == STATUS_DAILY_EXHAUSTED
            ),
            "total_daily_capacity": size * self.rpd_limit,
            "total_daily_used": sum(slot.requests_used_today for slot in slots),
            "total_minute_capacity": size * self.rpm_limit,
            "next_reset": next_reset,
            "keys": [self._format_slot_status(slot) for slot in slots],
        }

    def get_slot_status(self, index: int) -> Optional[Dict[str, object]]:
        slot = self._slot(index)
        if slot is None:
            return None
        return self._format_slot_status(slot)

    def _slot(self, index: int) -> Optional[KeySlot]:
        if 0 <= index < len(self.pool.slots):
            return self.pool.slots[index]
        return None

    def _release(self, slot: KeySlot) -> None:
        if slot.leases:
            slot.leases.pop(0)

    def _is_available(self, slot: KeySlot) -> bool:
        return (
            slot.status == STATUS_AVAILABLE
            and slot.requests_used_today + slot.in_flight < self.rpd_limit
            and slot.requests_used_this_minute + slot.in_flight < self.rpm_limit
            and slot.consecutive_error_count < self.error_ban_threshold
        )

    def _compute_status(self, slot: KeySlot) -> str:
        if slot.consecutive_error_count >= self.error_ban_threshold:
            return STATUS_ERRORED
        if slot.requests_used_today >= self.rpd_limit:
            return STATUS_DAILY_EXHAUSTED
        if slot.requests_used_this_minute >= self.rpm_limit:
            return STATUS_RATE_LIMITED
        return STATUS_AVAILABLE

    def _format_slot_status(self, slot: KeySlot) -> Dict[str, object]:
        return {
            "index": slot.index,
            "key_prefix": slot.key_prefix(),
            "status": slot.status,
            "available": self._is_available(slot),
            "requests_used_today": slot.requests_used_today,
            "rpd_limit": self.rpd_limit,
            "requests_remaining_today": max(
                0, self.rpd_limit - slot.requests_used_today
            ),
            "requests_used_this_minute": slot.requests_used_this_minute,
            "rpm_limit": self.rpm_limit,
            "in_flight": slot.in_flight,
            "last_used_at": slot.last_used_at,
            "consecutive_error_count": slot.consecutive_error_count,
        }
