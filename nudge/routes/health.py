"""
Health check endpoints.
"""

import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from nudge.config import settings
from nudge.services.infrastructure.encryption_service import validate_encryption_config

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "nudge"}


@router.get("/readyz")
async def readyz(request: Request):
    """Readiness: Redis reachable and consent configuration present."""
    checks = {}
    overall_ok = True

    t0 = time.time()
    try:
        redis_ok = await request.app.state.services.redis.ping()
        checks["redis"] = {"ok": bool(redis_ok), "latency_ms": round((time.time() - t0) * 1000, 1)}
        overall_ok = overall_ok and bool(redis_ok)
    except Exception as e:
        checks["redis"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        overall_ok = False

    config_issues = []
    if not settings.GOOGLE_CLIENT_ID:
        config_issues.append("GOOGLE_CLIENT_ID not set")
    if not settings.GOOGLE_CLIENT_SECRET:
        config_issues.append("GOOGLE_CLIENT_SECRET not set")
    if not settings.ENCRYPTION_KEY:
        config_issues.append("ENCRYPTION_KEY not set")
    elif not validate_encryption_config():
        config_issues.append("ENCRYPTION_KEY invalid")

    checks["config"] = {"ok": not config_issues}
    if config_issues:
        checks["config"]["issues"] = config_issues
        overall_ok = False

    body = {"status": "ready" if overall_ok else "not_ready", "checks": checks}
    return JSONResponse(status_code=200 if overall_ok else 503, content=body)
