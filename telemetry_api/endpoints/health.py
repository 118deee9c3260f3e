"""Health and readiness endpoints."""

from fastapi import APIRouter, Depends, HTTPException

from common.db import check_connection

from ..dependencies import get_services
from ..repository.executor import run_blocking
from ..services import TelemetryServices

router = APIRouter(tags=["health"])


@router.get("/health")
def health():
    """Liveness probe, ok mientras el proceso esté vivo."""
    return {"status": "ok"}


@router.get("/ready")
async def ready(services: TelemetryServices = Depends(get_services)):
    """Readiness probe, verifica conectividad con la BD."""
    if not await run_blocking(check_connection, services.engine):
        raise HTTPException(status_code=503, detail="not ready")
    return {"status": "ready"}


@router.get("/health/ingest")
def ingest_health(services: TelemetryServices = Depends(get_services)):
    """Estado de los componentes de ingesta y broadcast.

    No expone URLs ni credenciales, solo el backend elegido y contadores.
    """
    return {
        "status": "ok",
        "redis": services.uses_redis,
        "cache_backend": services.cache.backend.backend_name,
        "hub": services.hub.get_stats(),
        "worker": services.worker.get_stats() if services.worker else None,
    }
