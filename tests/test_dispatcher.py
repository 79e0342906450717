import asyncio
from typing import Any, List, Optional, Tuple

import pytest

from quota_pool.allocation import AllocationEngine
from quota_pool.config import Config
from quota_pool.dispatcher import RequestDispatcher
from quota_pool.errors import (
    ALL_RETRIES_EXHAUSTED,
    CANCELLED,
    NO_KEYS_AVAILABLE,
    QUOTA_EXCEEDED,
    DispatchError,
    UpstreamError,
)
from quota_pool.key_pool import KeyPool
from quota_pool.models import (
    STATUS_AVAILABLE,
    STATUS_DAILY_EXHAUSTED,
    AllocationCheck,
    DailyAllocation,
)
from quota_pool.outcomes import MAX_MINUTE_WAIT_SECONDS
from quota_pool.quota_gate import QuotaGate

MODEL = "gemini-2.5-flash"
FALLBACK = "gemini-2.0-flash"
PAYLOAD = {"contents": [{"parts": [{"text": "hello"}]}]}
RESPONSE = {"candidates": [{"content": {"parts": [{"text": "hi"}]}}]}


def minute_error(retry_after: Optional[float] = 5) -> UpstreamError:
    return UpstreamError("Resource has been exhausted", 429, retry_after=retry_after)


def daily_error() -> UpstreamError:
    return UpstreamError(
        "Quota exceeded for metric [GenerateRequestsPerDayPerProjectPerModel-FreeTier]",
        429,
    )


class ScriptedGenerate:
    """Plays back results or exceptions in order, repeating the last one."""

    def __init__(self, *steps: Any):
        self.steps = list(steps)
        self.calls: List[Tuple[str, str]] = []

    async def __call__(self, secret: str, model_name: str, payload: Any) -> Any:
        self.calls.append((secret, model_name))
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if isinstance(step, BaseException):
            raise step
        return step


class FakeSleep:
    """Records sleeps; each one lets the minute window roll over."""

    def __init__(self, pool: Optional[KeyPool] = None):
        self.pool = pool
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.pool is not None:
            await self.pool.on_minute_boundary()


def make_pool(keys: int = 1, **overrides) -> KeyPool:
    config = Config(api_keys=[f"key{i}" for i in range(keys)], **overrides)
    return KeyPool(config)


def make_gate(store, **overrides) -> QuotaGate:
    config = Config(
        api_keys=["key0"], rpd_limit=10, min_requests_per_user=1, **overrides
    )
    return QuotaGate(AllocationEngine(config, store))


@pytest.mark.asyncio
async def test_dispatch_success():
    pool = make_pool(2)
    generate = ScriptedGenerate(RESPONSE)
    sleep = FakeSleep()
    dispatcher = RequestDispatcher(pool, generate, sleep=sleep)

    result = await dispatcher.dispatch(PAYLOAD, MODEL)

    assert result.result == RESPONSE
    assert result.key_index == 0
    assert result.attempts == 1
    assert result.model_name == MODEL
    assert generate.calls == [("key0", MODEL)]
    assert pool.pool.slots[0].requests_used_today == 1
    assert pool.pool.slots[0].in_flight == 0
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_dispatch_tracks_user_usage(store):
    gate = make_gate(store)
    dispatcher = RequestDispatcher(
        make_pool(), ScriptedGenerate(RESPONSE), quota_gate=gate, sleep=FakeSleep()
    )

    result = await dispatcher.dispatch(PAYLOAD, MODEL, user_id="u1")

    assert result.allocation is not None
    assert result.allocation.used == 0
    assert await store.get_user_usage("u1", MODEL, gate.engine.today()) == 1
    assert await store.count_usage_records("u1", MODEL) == 1


@pytest.mark.asyncio
async def test_no_keys_fails_immediately():
    pool = make_pool(2)
    for slot in pool.pool.slots:
        slot.status = STATUS_DAILY_EXHAUSTED
    generate = ScriptedGenerate(RESPONSE)
    sleep = FakeSleep()
    dispatcher = RequestDispatcher(pool, generate, sleep=sleep)

    with pytest.raises(DispatchError) as exc_info:
        await dispatcher.dispatch(PAYLOAD, MODEL)

    assert exc_info.value.code == NO_KEYS_AVAILABLE
    assert generate.calls == []
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_minute_limit_waits_and_retries_same_attempt():
    pool = make_pool()
    sleep = FakeSleep(pool)
    generate = ScriptedGenerate(minute_error(), RESPONSE)
    dispatcher = RequestDispatcher(pool, generate, sleep=sleep)

    result = await dispatcher.dispatch(PAYLOAD, MODEL)

    assert result.result == RESPONSE
    assert result.attempts == 1
    assert result.rate_limit_waits == 1
    assert sleep.calls == [5]
    assert all(wait <= MAX_MINUTE_WAIT_SECONDS for wait in sleep.calls)


@pytest.mark.asyncio
async def test_short_minute_wait_reuses_same_key_before_tick():
    pool = make_pool()
    sleep = FakeSleep()
    generate = ScriptedGenerate(minute_error(retry_after=0.05), RESPONSE)
    dispatcher = RequestDispatcher(pool, generate, sleep=sleep)

    result = await dispatcher.dispatch(PAYLOAD, MODEL)

    assert result.result == RESPONSE
    assert result.attempts == 1
    assert result.rate_limit_waits == 1
    assert generate.calls == [("key0", MODEL), ("key0", MODEL)]
    assert sleep.calls == [0.05]
    slot = pool.pool.slots[0]
    assert slot.status == STATUS_AVAILABLE
    assert slot.in_flight == 0
    assert slot.requests_used_today == 1


@pytest.mark.asyncio
async def test_minute_wait_moves_on_when_waited_key_is_banned():
    pool = make_pool(2, error_ban_threshold=1)
    sleep = FakeSleep()
    generate = ScriptedGenerate(minute_error(retry_after=1), RESPONSE)
    dispatcher = RequestDispatcher(pool, generate, sleep=sleep)

    result = await dispatcher.dispatch(PAYLOAD, MODEL)

    assert result.key_index == 1
    assert generate.calls == [("key0", MODEL), ("key1", MODEL)]
    assert sleep.calls == [1]


@pytest.mark.asyncio
async def test_minute_wait_without_hint_is_bounded():
    pool = make_pool()
    sleep = FakeSleep(pool)
    generate = ScriptedGenerate(minute_error(retry_after=None), RESPONSE)
    dispatcher = RequestDispatcher(pool, generate, sleep=sleep)

    await dispatcher.dispatch(PAYLOAD, MODEL)

    assert len(sleep.calls) == 1
    assert 0 < sleep.calls[0] <= MAX_MINUTE_WAIT_SECONDS


@pytest.mark.asyncio
async def test_minute_waits_do_not_spend_retry_budget():
    pool = make_pool()
    sleep = FakeSleep(pool)
    generate = ScriptedGenerate(minute_error(), minute_error(), minute_error(), RESPONSE)
    dispatcher = RequestDispatcher(pool, generate, max_retries=1, sleep=sleep)

    result = await dispatcher.dispatch(PAYLOAD, MODEL)

    assert result.result == RESPONSE
    assert result.attempts == 1
    assert result.rate_limit_waits == 3
    assert len(generate.calls) == 4


@pytest.mark.asyncio
async def test_minute_waits_are_bounded():
    pool = make_pool()
    sleep = FakeSleep(pool)
    generate = ScriptedGenerate(minute_error())
    dispatcher = RequestDispatcher(
        pool, generate, max_rate_limit_waits=2, sleep=sleep
    )

    with pytest.raises(DispatchError) as exc_info:
        await dispatcher.dispatch(PAYLOAD, MODEL)

    assert exc_info.value.code == ALL_RETRIES_EXHAUSTED
    assert len(generate.calls) == 3
    assert len(sleep.calls) == 2


@pytest.mark.asyncio
async def test_daily_exhaustion_rotates_to_next_key():
    pool = make_pool(2)
    sleep = FakeSleep()
    generate = ScriptedGenerate(daily_error(), RESPONSE)
    dispatcher = RequestDispatcher(pool, generate, sleep=sleep)

    result = await dispatcher.dispatch(PAYLOAD, MODEL)

    assert result.key_index == 1
    assert result.attempts == 2
    assert generate.calls == [("key0", MODEL), ("key1", MODEL)]
    assert pool.pool.slots[0].status == STATUS_DAILY_EXHAUSTED
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_transient_errors_back_off_exponentially():
    pool = make_pool()
    sleep = FakeSleep()
    generate = ScriptedGenerate(UpstreamError("Internal error", 500))
    dispatcher = RequestDispatcher(pool, generate, max_retries=3, sleep=sleep)

    with pytest.raises(DispatchError) as exc_info:
        await dispatcher.dispatch(PAYLOAD, MODEL)

    assert exc_info.value.code == ALL_RETRIES_EXHAUSTED
    assert exc_info.value.reason == "All retry attempts failed. Last error: Internal error"
    assert sleep.calls == [1, 2]
    assert len(generate.calls) == 3
    assert pool.pool.slots[0].status == STATUS_AVAILABLE
    assert pool.pool.slots[0].in_flight == 0


@pytest.mark.asyncio
async def test_transient_error_then_success():
    pool = make_pool(2)
    sleep = FakeSleep()
    generate = ScriptedGenerate(UpstreamError("Bad gateway", 502), RESPONSE)
    dispatcher = RequestDispatcher(pool, generate, sleep=sleep)

    result = await dispatcher.dispatch(PAYLOAD, MODEL)

    assert result.attempts == 2
    assert result.key_index == 1
    assert sleep.calls == [1]


@pytest.mark.asyncio
async def test_per_call_retry_override():
    pool = make_pool()
    generate = ScriptedGenerate(UpstreamError("Internal error", 500))
    dispatcher = RequestDispatcher(pool, generate, max_retries=5, sleep=FakeSleep())

    with pytest.raises(DispatchError):
        await dispatcher.dispatch(PAYLOAD, MODEL, max_retries=2)

    assert len(generate.calls) == 2


@pytest.mark.asyncio
async def test_quota_denial_never_touches_keys(store):
    gate = make_gate(store)
    for _ in range(10):
        await gate.engine.record_user_request("u1", MODEL)
    pool = make_pool()
    generate = ScriptedGenerate(RESPONSE)
    dispatcher = RequestDispatcher(pool, generate, quota_gate=gate, sleep=FakeSleep())

    with pytest.raises(DispatchError) as exc_info:
        await dispatcher.dispatch(PAYLOAD, MODEL, user_id="u1")

    assert exc_info.value.code == QUOTA_EXCEEDED
    assert "10/10" in exc_info.value.reason
    assert exc_info.value.allocation is not None
    assert generate.calls == []
    assert pool.pool.slots[0].in_flight == 0


@pytest.mark.asyncio
async def test_quota_denial_falls_back_to_other_model(store):
    gate = make_gate(store)
    for _ in range(10):
        await gate.engine.record_user_request("u1", MODEL)
    generate = ScriptedGenerate(RESPONSE)
    dispatcher = RequestDispatcher(
        make_pool(), generate, quota_gate=gate, sleep=FakeSleep()
    )

    result = await dispatcher.dispatch(
        PAYLOAD, MODEL, user_id="u1", fallback_models=[FALLBACK]
    )

    assert result.model_name == FALLBACK
    assert generate.calls == [("key0", FALLBACK)]
    assert await store.get_user_usage("u1", FALLBACK, gate.engine.today()) == 1


@pytest.mark.asyncio
async def test_cancel_before_attempt():
    pool = make_pool()
    generate = ScriptedGenerate(RESPONSE)
    dispatcher = RequestDispatcher(pool, generate, sleep=FakeSleep())

    with pytest.raises(DispatchError) as exc_info:
        await dispatcher.dispatch(PAYLOAD, MODEL, should_cancel=lambda: True)

    assert exc_info.value.code == CANCELLED
    assert generate.calls == []


@pytest.mark.asyncio
async def test_cancelled_call_releases_reservation():
    pool = make_pool()
    dispatcher = RequestDispatcher(
        pool, ScriptedGenerate(asyncio.CancelledError()), sleep=FakeSleep()
    )

    with pytest.raises(asyncio.CancelledError):
        await dispatcher.dispatch(PAYLOAD, MODEL)

    slot = pool.pool.slots[0]
    assert slot.in_flight == 0
    assert slot.requests_used_today == 0


@pytest.mark.asyncio
async def test_progress_countdown_during_minute_wait():
    pool = make_pool()
    sleep = FakeSleep(pool)
    messages: List[str] = []
    dispatcher = RequestDispatcher(
        pool, ScriptedGenerate(minute_error(retry_after=3), RESPONSE), sleep=sleep
    )

    await dispatcher.dispatch(PAYLOAD, MODEL, on_progress=messages.append)

    assert messages == [
        "Minute quota exceeded. Smart retry in progress...",
        "Quota limit reached. Waiting 3s for reset...",
        "Quota limit reached. Waiting 2s for reset...",
        "Quota limit reached. Waiting 1s for reset...",
        "Resuming generation...",
    ]
    assert sleep.calls == [1, 1, 1]


@pytest.mark.asyncio
async def test_progress_on_key_switch_and_backoff():
    pool = make_pool(3)
    messages: List[str] = []
    generate = ScriptedGenerate(
        daily_error(), UpstreamError("Internal error", 500), RESPONSE
    )
    dispatcher = RequestDispatcher(pool, generate, sleep=FakeSleep())

    await dispatcher.dispatch(PAYLOAD, MODEL, on_progress=messages.append)

    assert messages == [
        "Daily quota exceeded. Switching to backup API key...",
        "Retrying in 2s... (2/3)",
    ]


class FailingTrackingGate:
    class _Engine:
        async def record_user_request(self, *args, **kwargs):
            raise RuntimeError("database is locked")

    def __init__(self):
        self.engine = self._Engine()

    async def can_proceed(self, user_id, model_name, estimated_cost=1):
        allocation = DailyAllocation(
            user_id=user_id,
            model_name=model_name,
            allocated=10,
            used=0,
            remaining=10,
            percentage_used=0.0,
            can_make_request=True,
            active_users=1,
            warning_level="LOW",
            should_warn=False,
            message="",
        )
        return AllocationCheck(allowed=True, allocation=allocation)


@pytest.mark.asyncio
async def test_tracking_failure_still_returns_result():
    pool = make_pool()
    dispatcher = RequestDispatcher(
        pool,
        ScriptedGenerate(RESPONSE),
        quota_gate=FailingTrackingGate(),
        sleep=FakeSleep(),
    )

    result = await dispatcher.dispatch(PAYLOAD, MODEL, user_id="u1")

    assert result.result == RESPONSE
    assert pool.pool.slots[0].requests_used_today == 1
