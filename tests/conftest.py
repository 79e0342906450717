from typing import List

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from quota_pool.allocation import AllocationEngine
from quota_pool.config import Config
from quota_pool.dispatcher import RequestDispatcher
from quota_pool.gemini_client import GeminiClient
from quota_pool.key_pool import KeyPool
from quota_pool.main import app as main_app
from quota_pool.quota_gate import QuotaGate
from quota_pool.store import CounterStore

GEMINI_BASE_URL = "https://gemini.example.test"

STATE_ATTRS = (
    "config",
    "http_client",
    "store",
    "key_pool",
    "allocation_engine",
    "quota_gate",
    "dispatcher",
)


@pytest_asyncio.fixture
async def store() -> CounterStore:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    counter_store = CounterStore(engine)
    await counter_store.create_tables()
    try:
        yield counter_store
    finally:
        await engine.dispose()


@pytest.fixture
def config() -> Config:
    return Config(
        api_keys=["test_key_1", "test_key_2", "test_key_3"],
        rpd_limit=200,
        gemini_base_url=GEMINI_BASE_URL,
    )


class RecordingSleep:
    """Stands in for asyncio.sleep; every call lets the minute window roll."""

    def __init__(self, key_pool: KeyPool):
        self.key_pool = key_pool
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await self.key_pool.on_minute_boundary()


@pytest_asyncio.fixture
async def app(config, store):
    """The app with its state wired the way the lifespan does, minus the ticker."""
    http_client = httpx.AsyncClient(base_url=config.gemini_base_url)
    key_pool = KeyPool(config)
    allocation_engine = AllocationEngine(config, store)
    quota_gate = QuotaGate(allocation_engine)

    main_app.state.config = config
    main_app.state.http_client = http_client
    main_app.state.store = store
    main_app.state.key_pool = key_pool
    main_app.state.allocation_engine = allocation_engine
    main_app.state.quota_gate = quota_gate
    main_app.state.dispatcher = RequestDispatcher(
        key_pool,
        GeminiClient(http_client).generate_content,
        quota_gate=quota_gate,
        max_retries=config.max_retries,
        max_rate_limit_waits=config.max_rate_limit_waits,
        sleep=RecordingSleep(key_pool),
    )

    yield main_app

    await http_client.aclose()
    for name in STATE_ATTRS:
        if hasattr(main_app.state, name):
            delattr(main_app.state, name)


@pytest_asyncio.fixture
async def client(app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as async_client:
        yield async_client
