"""Health check router."""

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from autodidact.config import VERSION, settings
from autodidact.repos.db import get_pool

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Health status with a real DB round-trip when tasks live in Postgres."""
    if settings.TASK_STORE == "memory":
        return {"status": "ok", "db": "not_used"}
    try:
        pool = await get_pool()
        await pool.fetchval("SELECT 1")
    except Exception:
        return JSONResponse({"status": "degraded", "db": "unreachable"}, status_code=503)
    return {"status": "ok", "db": "connected"}


@router.get("/health/version")
async def health_version() -> dict:
    return {"version": VERSION}
