# app/routes/health.py
"""
Health check endpoints: liveness, readiness of every dependency the
pipeline needs, and merge queue monitoring.
"""

import time

from fastapi import APIRouter, Request

from app.config import settings
from app.db.pool import db_health_check
from app.services.recording.transcoder import check_transcoder_available
from app.services.storage.storage_service import storage_service

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "proctoring-recording-pipeline"}


@router.get("/readyz")
async def readyz(request: Request):
    """
    Readiness check: database pool, storage backend, transcoder, merge queue.
    """
    checks = {}
    overall_ok = True

    # 1) Database pool
    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)

        checks["database"] = {
            "ok": is_healthy,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }

        if "pool_stats" in db_health:
            pool_stats = db_health["pool_stats"]
            checks["database"].update(
                {
                    "pool_size": pool_stats.get("pool_size", 0),
                    "pool_available": pool_stats.get("pool_available", 0),
                }
            )

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

    # 2) Storage backend selection
    try:
        checks["storage"] = {"ok": True, **storage_service.describe()}
    except Exception as e:
        checks["storage"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        overall_ok = False

    # 3) Transcoder binaries
    transcoder = getattr(request.app.state, "transcoder", None) or check_transcoder_available()
    checks["transcoder"] = transcoder
    overall_ok = overall_ok and transcoder["ok"]

    # 4) Merge queue
    queue = getattr(request.app.state, "merge_queue", None)
    if queue is None:
        checks["merge_queue"] = {"ok": False, "error": "Merge queue not running"}
        overall_ok = False
    else:
        queue_status = queue.get_status()
        checks["merge_queue"] = {
            "ok": True,
            "queued": queue_status["queued"],
            "processing": queue_status["processing"],
        }

    checks["configuration"] = {"ok": True, "environment": settings.environment}

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    """Detailed database pool health information."""
    return await db_health_check()


@router.get("/health/merge-queue")
async def merge_queue_health(request: Request):
    """Queue depth, in-flight count and per-job retry state."""
    queue = getattr(request.app.state, "merge_queue", None)
    if queue is None:
        return {"running": False, "error": "Merge queue not running"}
    return {"running": True, **queue.get_status()}
