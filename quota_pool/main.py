"""FastAPI application for the Gemini quota and key pool service."""

import logging
from contextlib import asynccontextmanager
from typing import Dict

import httpx
from fastapi import FastAPI, Request
from starlette.responses import JSONResponse

from quota_pool.admin import admin_router
from quota_pool.allocation import AllocationEngine
from quota_pool.allocation_routes import allocation_router
from quota_pool.config import load_config
from quota_pool.dispatcher import RequestDispatcher
from quota_pool.errors import (
    ALL_RETRIES_EXHAUSTED,
    CANCELLED,
    NO_KEYS_AVAILABLE,
    QUOTA_EXCEEDED,
    DispatchError,
)
from quota_pool.gemini_client import GeminiClient
from quota_pool.key_pool import KeyPool
from quota_pool.quota_gate import QuotaGate
from quota_pool.scheduler import PoolTicker
from quota_pool.sdk_support import sdk_router
from quota_pool.store import init_store

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    QUOTA_EXCEEDED: (429, "RESOURCE_EXHAUSTED"),
    NO_KEYS_AVAILABLE: (503, "UNAVAILABLE"),
    ALL_RETRIES_EXHAUSTED: (502, "UNAVAILABLE"),
    CANCELLED: (499, "CANCELLED"),
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle: startup and shutdown."""
    config = load_config()

    logging.basicConfig(level=getattr(logging, config.log_level))

    http_client = httpx.AsyncClient(
        base_url=config.gemini_base_url,
        timeout=httpx.Timeout(10.0, read=300.0, write=30.0),
        limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
    )
    store = await init_store(config.database_url)

    key_pool = KeyPool(config)
    allocation_engine = AllocationEngine(config, store)
    quota_gate = QuotaGate(allocation_engine)
    gemini_client = GeminiClient(http_client)
    dispatcher = RequestDispatcher(
        key_pool,
        gemini_client.generate_content,
        quota_gate=quota_gate,
        max_retries=config.max_retries,
        max_rate_limit_waits=config.max_rate_limit_waits,
    )
    ticker = PoolTicker(key_pool)
    ticker.start()

    app.state.config = config
    app.state.http_client = http_client
    app.state.store = store
    app.state.key_pool = key_pool
    app.state.allocation_engine = allocation_engine
    app.state.quota_gate = quota_gate
    app.state.dispatcher = dispatcher

    logger.info("Quota pool started with %d keys", config.key_count)

    yield

    await ticker.stop()
    await http_client.aclose()
    await store.close()
    logger.info("Quota pool stopped")


app = FastAPI(title="Gemini Quota & Key Pool", lifespan=lifespan)

app.include_router(admin_router)
app.include_router(allocation_router)
app.include_router(sdk_router)


def dispatch_error_response(exc: DispatchError) -> JSONResponse:
    status_code, status = ERROR_STATUS.get(exc.code, (500, "INTERNAL"))
    headers = {"Retry-After": "60"} if exc.code == NO_KEYS_AVAILABLE else None
    content: Dict[str, object] = {
        "error": {
            "code": status_code,
            "message": exc.reason,
            "status": status,
            "reason": exc.code,
        }
    }
    if exc.allocation is not None:
        content["allocation"] = exc.allocation.to_dict()
    return JSONResponse(content=content, status_code=status_code, headers=headers)


@app.get("/")
async def root(request: Request) -> Dict[str, object]:
    status = request.app.state.key_pool.get_status()
    return {
        "service": "Gemini Quota & Key Pool",
        "status": "running",
        "keys_available": status["available_keys"],
        "total_keys": status["total_keys"],
    }


@app.get("/health")
async def health_check(request: Request) -> Dict[str, object]:
    """Health check endpoint with key pool status."""
    key_pool = request.app.state.key_pool
    status = key_pool.get_status()
    return {
        "status": "healthy" if key_pool.has_available_key() else "degraded",
        "keys_available": status["available_keys"],
        "total_keys": status["total_keys"],
    }


@app.post("/v1beta/models/{model}:generateContent")
async def generate_content(request: Request, model: str):
    """Generate through the quota gate and the key pool.

    The caller is identified by the ``X-User-Id`` header; anonymous calls
    skip admission and are not charged to any user.
    """
    config = request.app.state.config
    dispatcher = request.app.state.dispatcher
    payload = await request.json()
    user_id = request.headers.get("x-user-id") or None

    def on_progress(message: str) -> None:
        logger.debug("[%s] %s", user_id or "anonymous", message)

    try:
        outcome = await dispatcher.dispatch(
            payload,
            model,
            user_id=user_id,
            on_progress=on_progress,
            fallback_models=config.fallback_models,
        )
    except DispatchError as exc:
        return dispatch_error_response(exc)

    return JSONResponse(
        content=outcome.result,
        headers={
            "x-key-index": str(outcome.key_index),
            "x-model": outcome.model_name,
        },
    )


def run() -> None:
    import uvicorn

    config = load_config()
    uvicorn.run(
        "quota_pool.main:app",
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )
