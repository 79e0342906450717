"""SDK support endpoints for clients that call the Gemini SDK directly.

Provides key allocation/release API so SDK clients can borrow real API keys
from the pool, use them directly with the SDK, and report the outcome back.
The quota gate is applied at allocation time exactly as for proxied calls.
"""

from typing import Dict

from fastapi import APIRouter, HTTPException, Request
from starlette.responses import JSONResponse

from quota_pool.errors import UpstreamError

sdk_router = APIRouter(prefix="/sdk", tags=["sdk"])


def _slot_index(key_pool, body: Dict[str, object]) -> int:
    index = body.get("key_index")
    if not isinstance(index, int) or isinstance(index, bool):
        raise HTTPException(status_code=400, detail="key_index is required")
    if key_pool.get_slot_status(index) is None:
        raise HTTPException(status_code=404, detail=f"Key {index} not found")
    return index


@sdk_router.post("/allocate-key")
async def allocate_key(request: Request) -> JSONResponse:
    """Allocate an available API key from the pool.

    Body: {"user_id": "u1", "model": "gemini-2.5-flash"}

    Returns the real API key for direct SDK use.
    The caller MUST report usage via /sdk/report-usage after each API call,
    and report errors via /sdk/report-error on failures.
    A reservation never reported back lapses after ``LEASE_TIMEOUT_SECONDS``.
    """
    key_pool = request.app.state.key_pool
    quota_gate = request.app.state.quota_gate
    config = request.app.state.config
    body = await request.json()
    user_id = body.get("user_id")
    model = body.get("model") or config.default_model

    allocation = None
    if user_id:
        check = await quota_gate.can_proceed(str(user_id), model)
        if not check.allowed:
            raise HTTPException(status_code=429, detail=check.reason)
        allocation = check.allocation.to_dict()

    selected = await key_pool.select_key()
    if selected is None:
        raise HTTPException(
            status_code=503,
            detail="All API keys exhausted",
            headers={"Retry-After": "60"},
        )

    return JSONResponse(
        content={
            "key_index": selected.index,
            "api_key": selected.secret,
            "model": model,
            "allocation": allocation,
        }
    )


@sdk_router.post("/report-usage")
async def report_usage(request: Request) -> Dict[str, object]:
    """Report successful API usage for a previously allocated key.

    Body: {"key_index": 0, "user_id": "u1", "model": "gemini-2.5-flash"}
    """
    key_pool = request.app.state.key_pool
    engine = request.app.state.allocation_engine
    config = request.app.state.config
    body = await request.json()
    index = _slot_index(key_pool, body)

    await key_pool.record_success(index)

    user_id = body.get("user_id")
    if user_id:
        model = body.get("model") or config.default_model
        used = await engine.record_user_request(str(user_id), model, key_index=index)
        return {"status": "recorded", "requests_used_today": used}
    return {"status": "recorded"}


@sdk_router.post("/report-error")
async def report_error(request: Request) -> Dict[str, str]:
    """Report an API error for a previously allocated key.

    Body: {"key_index": 0, "status_code": 429, "message": "..."}
    """
    key_pool = request.app.state.key_pool
    body = await request.json()
    index = _slot_index(key_pool, body)

    status_code = body.get("status_code")
    error = UpstreamError(
        str(body.get("message") or "reported error"),
        status_code=status_code if isinstance(status_code, int) else None,
    )
    await key_pool.record_failure(index, error)
    return {"status": "recorded"}
