"""Admin endpoints for the key pool and usage overview."""

from typing import Dict

from fastapi import APIRouter, HTTPException, Request

admin_router = APIRouter(prefix="/admin", tags=["admin"])


@admin_router.get("/status")
async def get_all_status(request: Request) -> Dict[str, object]:
    """Get status of all API keys in the pool."""
    key_pool = request.app.state.key_pool
    return key_pool.get_status()


@admin_router.get("/status/{index}")
async def get_key_status(request: Request, index: int) -> Dict[str, object]:
    """Get status of a specific key slot."""
    key_pool = request.app.state.key_pool
    status = key_pool.get_slot_status(index)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Key {index} not found")
    return status


@admin_router.post("/keys/{index}/reset")
async def reset_key(request: Request, index: int) -> Dict[str, str]:
    """Zero one slot's counters and make it available again."""
    key_pool = request.app.state.key_pool
    if not await key_pool.reset_slot(index):
        raise HTTPException(status_code=404, detail=f"Key {index} not found")
    return {"message": f"Key {index} reset successfully"}


@admin_router.post("/reset")
async def reset_counters(request: Request) -> Dict[str, str]:
    """Reset daily counters for all keys."""
    key_pool = request.app.state.key_pool
    await key_pool.on_day_boundary()
    return {"message": "Counters reset successfully"}
