"""Per-user allocation endpoints."""

from typing import Dict, Optional

from fastapi import APIRouter, HTTPException, Request

allocation_router = APIRouter(prefix="/allocation", tags=["allocation"])


def _user_id(request: Request) -> str:
    user_id = request.headers.get("x-user-id", "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return user_id


@allocation_router.get("/daily")
async def get_daily_allocation(
    request: Request, model: Optional[str] = None
) -> Dict[str, object]:
    """Get the caller's fair-share allocation for today."""
    engine = request.app.state.allocation_engine
    model = model or request.app.state.config.default_model
    allocation = await engine.get_user_allocation(_user_id(request), model)
    return allocation.to_dict()


@allocation_router.get("/can-request")
async def can_user_make_request(
    request: Request, model: Optional[str] = None
) -> Dict[str, object]:
    """Check admission without charging the caller."""
    quota_gate = request.app.state.quota_gate
    model = model or request.app.state.config.default_model
    check = await quota_gate.can_proceed(_user_id(request), model)
    return check.to_dict()


@allocation_router.get("/system-overview")
async def get_system_overview(
    request: Request, model: Optional[str] = None
) -> Dict[str, object]:
    engine = request.app.state.allocation_engine
    model = model or request.app.state.config.default_model
    overview = await engine.get_system_overview(model)
    return overview.to_dict()
