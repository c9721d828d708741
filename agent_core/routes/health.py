"""
Liveness and readiness endpoints.
"""

import time

from fastapi import APIRouter, Request

from agent_core.config import settings
from agent_core.db.pool import db_health_check

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "agent-core"}


@router.get("/readyz")
async def readyz(request: Request):
    """
    Readiness check: database pool, gateway configuration and background tasks.

    A missing database is reported but does not fail readiness, since
    messages are still handled from the ephemeral cache.
    """
    checks = {}
    overall_ok = True

    t0 = time.time()
    if settings.database_configured():
        try:
            db_health = await db_health_check()
            is_healthy = db_health.get("healthy", False)
            checks["database"] = {
                "ok": is_healthy,
                "latency_ms": round((time.time() - t0) * 1000, 1),
            }
            if "pool_stats" in db_health:
                checks["database"]["pool_stats"] = db_health["pool_stats"]
            if not is_healthy:
                checks["database"]["error"] = db_health.get("error", "Database unhealthy")
            overall_ok = overall_ok and is_healthy
        except Exception as e:
            checks["database"] = {
                "ok": False,
                "error": f"{type(e).__name__}: {e}",
                "latency_ms": round((time.time() - t0) * 1000, 1),
            }
            overall_ok = False
    else:
        checks["database"] = {"ok": True, "mode": "ephemeral_cache_only"}

    config_issues = []
    if not settings.OPENAI_API_KEY:
        config_issues.append("OPENAI_API_KEY not set")
    if not settings.gateway_configured():
        config_issues.append("Gateway credentials not set")
    checks["configuration"] = {
        "ok": not config_issues,
        "issues": config_issues or None,
        "environment": settings.environment,
    }
    overall_ok = overall_ok and not config_issues

    runtime = getattr(request.app.state, "runtime", None)
    if runtime is not None:
        checks["background_tasks"] = runtime.tasks.stats()

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    """Detailed database pool health information."""
    return await db_health_check()
