"""Aplicación FastAPI del servicio de telemetría.

Ejecutar con:
    uvicorn telemetry_api.main:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from common.config import get_settings
from common.logging_config import configure_logging

from .endpoints import (
    device_log_router,
    device_sse_router,
    device_status_router,
    health_router,
    server_time_router,
)
from .services import TelemetryServices, build_services

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: Optional[TelemetryServices] = getattr(app.state, "services", None)
    if services is None:
        settings = get_settings()
        configure_logging(settings.log_level)
        services = await build_services(settings)
        app.state.services = services

    await services.start()
    logger.info(
        "[STARTUP] Telemetry service ready redis=%s worker=%s",
        services.uses_redis,
        services.worker is not None,
    )
    try:
        yield
    finally:
        await services.close()


def create_app(services: Optional[TelemetryServices] = None) -> FastAPI:
    app = FastAPI(title="IoT Telemetry Service", version="0.1.0", lifespan=lifespan)
    if services is not None:
        app.state.services = services

    app.include_router(health_router)
    app.include_router(device_log_router, prefix=API_PREFIX)
    app.include_router(device_sse_router, prefix=API_PREFIX)
    app.include_router(device_status_router, prefix=API_PREFIX)
    app.include_router(server_time_router, prefix=API_PREFIX)
    return app


app = create_app()
