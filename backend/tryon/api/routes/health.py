"""Liveness and readiness for the load balancer."""

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from tryon.api.deps import get_ledger, get_registry
from tryon.providers.registry import ProviderRegistry
from tryon.services.credit_ledger import CreditLedger

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """503 while draining after SIGTERM."""
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(status_code=503, content={"status": "shutting_down"})
    return {"status": "healthy"}


@router.get("/ready")
async def readiness_check(
    ledger: CreditLedger = Depends(get_ledger),
    registry: ProviderRegistry = Depends(get_registry),
):
    """Ready when the ledger's database and lock store answer and a provider can take work."""
    checks = {"database": False, "redis": False, "providers": False}

    try:
        async with ledger.session_factory() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as exc:
        logger.error("readiness_database_failed", error=str(exc))

    try:
        await ledger.lock.redis.ping()
        checks["redis"] = True
    except Exception as exc:
        logger.error("readiness_redis_failed", error=str(exc))

    states = await registry.snapshot()
    checks["providers"] = any(state.enabled and state.active for state in states)
    if not checks["providers"]:
        logger.warning("readiness_no_active_provider", providers=[state.name for state in states])

    ready = all(checks.values())
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ready" if ready else "degraded", "checks": checks},
    )
