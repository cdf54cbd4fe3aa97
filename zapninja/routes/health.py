"""
Health check endpoints.
Readiness covers the queue broker, the database pool (when configured) and
the supervised sessions.
"""

import time

from fastapi import APIRouter, Depends

from zapninja.config import settings
from zapninja.infrastructure.observability.logging import log_health_check
from zapninja.routes.deps import get_services
from zapninja.services.container import ServiceContainer

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "zapninja-orchestrator"}


@router.get("/readyz")
async def readyz(services: ServiceContainer = Depends(get_services)):
    checks = {}
    overall_ok = True

    # 1) Queue broker
    t0 = time.time()
    try:
        broker_ok = await services.orchestrator.broker.ping()
        latency_ms = round((time.time() - t0) * 1000, 1)
        checks["broker"] = {"ok": broker_ok, "latency_ms": latency_ms}
        log_health_check("broker", broker_ok, latency_ms)
        overall_ok = overall_ok and broker_ok
    except Exception as e:
        checks["broker"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        overall_ok = False

    # 2) Database pool, only when a database is configured
    if settings.DATABASE_URL and services.database is not None:
        t0 = time.time()
        try:
            db_health = await services.database.health_check()
            is_healthy = db_health.get("healthy", False)
            latency_ms = round((time.time() - t0) * 1000, 1)
            checks["database"] = {"ok": is_healthy, "latency_ms": latency_ms}
            if not is_healthy:
                checks["database"]["error"] = db_health.get("error", "Database unhealthy")
            log_health_check("database", is_healthy, latency_ms, checks["database"].get("error"))
            overall_ok = overall_ok and is_healthy
        except Exception as e:
            checks["database"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
            overall_ok = False
    else:
        checks["database"] = {"ok": True, "configured": False}

    # 3) Supervised sessions (informational)
    processes = services.supervisor.get_running_processes()
    checks["sessions"] = {
        "ok": True,
        "count": len(processes),
        "ports": services.port_allocator.get_port_statistics(),
    }

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
