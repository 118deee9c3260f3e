"""Routers HTTP del servicio de telemetría."""

from .device_log import router as device_log_router
from .device_sse import router as device_sse_router
from .device_status import router as device_status_router
from .health import router as health_router
from .server_time import router as server_time_router

__all__ = [
    "device_log_router",
    "device_sse_router",
    "device_status_router",
    "health_router",
    "server_time_router",
]
