"""Health check and monitoring endpoints."""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from bbqueue.errors import RemoteExecutionFailure

router = APIRouter(prefix="/api/v1")

VERSION = "0.1.0"


@router.get("/health")
async def health() -> JSONResponse:
    """Basic health check: is Redis reachable?"""
    from bbqueue.main import get_gateway, get_stats

    try:
        redis_ok = await get_gateway().ping()
    except RemoteExecutionFailure:
        redis_ok = False

    snapshot = get_stats().snapshot()
    result = {
        "status": "ok" if redis_ok else "degraded",
        "version": VERSION,
        "uptime_seconds": snapshot["uptime_seconds"],
        "redis_reachable": redis_ok,
    }
    return JSONResponse(content=result, status_code=200 if redis_ok else 503)


@router.get("/stats")
async def stats() -> dict:
    """Gateway statistics.

    The ``active_queues`` section lists queues touched through this gateway
    within the last ``window_seconds``.
    """
    from bbqueue.main import get_stats

    return get_stats().snapshot()
