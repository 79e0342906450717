"""Request dispatch with key rotation, quota waits and backoff.

One logical request runs this loop:

1. Admission through the quota gate (falling back to other models if the
   primary model's share is spent)
2. ``select_key()`` -> no key means NO_KEYS_AVAILABLE, right away. After a
   minute wait the same slot is taken back with ``reacquire()`` first
3. Call the upstream with the slot's secret
4. Success: record on the slot and on the user, return
5. Failure, by outcome:
   - MinuteLimited: wait for the minute window, retry without spending
     an attempt
   - KeyExhausted: spend an attempt, rotate to another key
   - Transient: spend an attempt, exponential backoff
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence

from quota_pool.errors import (
    ALL_RETRIES_EXHAUSTED,
    CANCELLED,
    NO_KEYS_AVAILABLE,
    QUOTA_EXCEEDED,
    DispatchError,
)
from quota_pool.key_pool import KeyPool
from quota_pool.models import DailyAllocation, KeySlot
from quota_pool.outcomes import (
    KeyExhausted,
    MinuteLimited,
    Outcome,
    Success,
    classify_failure,
)
from quota_pool.quota_gate import QuotaGate

logger = logging.getLogger(__name__)

GenerateFn = Callable[[str, str, Any], Awaitable[Any]]
ProgressFn = Callable[[str], None]
SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class DispatchResult:
    result: Any
    model_name: str
    key_index: int
    attempts: int
    rate_limit_waits: int = 0
    allocation: Optional[DailyAllocation] = None


def _notify(on_progress: Optional[ProgressFn], message: str) -> None:
    if on_progress is not None:
        on_progress(message)


class RequestDispatcher:
    def __init__(
        self,
        key_pool: KeyPool,
        generate: GenerateFn,
        quota_gate: Optional[QuotaGate] = None,
        max_retries: int = 3,
        max_rate_limit_waits: int = 10,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.key_pool = key_pool
        self.generate = generate
        self.quota_gate = quota_gate
        self.max_retries = max_retries
        self.max_rate_limit_waits = max_rate_limit_waits
        self.sleep = sleep

    async def dispatch(
        self,
        payload: Any,
        model_name: str,
        user_id: Optional[str] = None,
        on_progress: Optional[ProgressFn] = None,
        fallback_models: Sequence[str] = (),
        max_retries: Optional[int] = None,
        estimated_cost: int = 1,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> DispatchResult:
        model_name, allocation = await self._admit(
            user_id, model_name, fallback_models, estimated_cost
        )
        retries = max_retries if max_retries is not None else self.max_retries

        attempt = 1
        rate_limit_waits = 0
        last_error: Optional[Exception] = None
        waited_index: Optional[int] = None

        while attempt <= retries:
            if should_cancel is not None and should_cancel():
                raise DispatchError(
                    CANCELLED, "Request cancelled before the next attempt."
                )

            slot = None
            if waited_index is not None:
                slot = await self.key_pool.reacquire(waited_index)
                waited_index = None
            if slot is None:
                slot = await self.key_pool.select_key()
            if slot is None:
                raise DispatchError(
                    NO_KEYS_AVAILABLE,
                    "No available API keys. All keys are rate limited or exhausted.",
                    allocation=allocation,
                )

            outcome = await self._attempt(slot, model_name, payload)

            if isinstance(outcome, Success):
                await self.key_pool.record_success(slot.index)
                if user_id is not None and self.quota_gate is not None:
                    await self._track_user(
                        self.quota_gate, user_id, model_name, slot.index
                    )
                logger.debug(
                    "Generated with key %d on attempt %d", slot.index, attempt
                )
                return DispatchResult(
                    result=outcome.result,
                    model_name=model_name,
                    key_index=slot.index,
                    attempts=attempt,
                    rate_limit_waits=rate_limit_waits,
                    allocation=allocation,
                )

            await self.key_pool.record_failure(slot.index, outcome.error)
            last_error = outcome.error
            logger.warning(
                "Key %d failed on attempt %d/%d (%s): %s",
                slot.index,
                attempt,
                retries,
                type(outcome).__name__,
                outcome.error,
            )

            if isinstance(outcome, MinuteLimited):
                rate_limit_waits += 1
                if rate_limit_waits > self.max_rate_limit_waits:
                    break
                _notify(on_progress, "Minute quota exceeded. Smart retry in progress...")
                await self._wait_for_rate_limit(outcome.wait_seconds, on_progress)
                waited_index = slot.index
                continue

            if isinstance(outcome, KeyExhausted):
                _notify(
                    on_progress, "Daily quota exceeded. Switching to backup API key..."
                )
            elif attempt < retries:
                backoff = 2 ** (attempt - 1)
                _notify(on_progress, f"Retrying in {backoff}s... ({attempt}/{retries})")
                await self.sleep(backoff)

            attempt += 1

        logger.error("All retry attempts failed for %s: %s", model_name, last_error)
        raise DispatchError(
            ALL_RETRIES_EXHAUSTED,
            f"All retry attempts failed. Last error: {last_error or 'Unknown error'}",
            allocation=allocation,
        )

    async def _admit(
        self,
        user_id: Optional[str],
        model_name: str,
        fallback_models: Sequence[str],
        estimated_cost: int,
    ):
        if user_id is None or self.quota_gate is None:
            return model_name, None

        check = await self.quota_gate.can_proceed(user_id, model_name, estimated_cost)
        if check.allowed:
            return model_name, check.allocation

        for fallback in fallback_models:
            if fallback == model_name:
                continue
            fallback_check = await self.quota_gate.can_proceed(
                user_id, fallback, estimated_cost
            )
            if fallback_check.allowed:
                logger.info(
                    "User %s over quota on %s, falling back to %s",
                    user_id,
                    model_name,
                    fallback,
                )
                return fallback, fallback_check.allocation

        raise DispatchError(
            QUOTA_EXCEEDED, check.reason or "Daily request limit exceeded.", check.allocation
        )

    async def _attempt(self, slot: KeySlot, model_name: str, payload: Any) -> Outcome:
        try:
            result = await self.generate(slot.secret, model_name, payload)
        except asyncio.CancelledError:
            await self.key_pool.release_key(slot.index)
            raise
        except Exception as exc:
            return classify_failure(exc)
        return Success(result=result)

    async def _track_user(
        self, gate: QuotaGate, user_id: str, model_name: str, key_index: int
    ) -> None:
        try:
            await gate.engine.record_user_request(
                user_id, model_name, key_index=key_index
            )
        except Exception:
            # usage tracking is best-effort once the upstream call succeeded
            logger.exception("Failed to track usage for user %s", user_id)

    async def _wait_for_rate_limit(
        self, wait_seconds: float, on_progress: Optional[ProgressFn]
    ) -> None:
        seconds = math.ceil(wait_seconds)
        logger.info("Waiting %ds for rate limit reset", seconds)

        if on_progress is None:
            await self.sleep(wait_seconds)
            return

        for remaining in range(seconds, 0, -1):
            on_progress(f"Quota limit reached. Waiting {remaining}s for reset...")
            await self.sleep(1)
        on_progress("Resuming generation...")
