"""Acceso a BD de los colaboradores del pipeline (dispositivos, tokens, métricas)."""

from .device_repository import DeviceRecord, DeviceRepository
from .executor import run_blocking

__all__ = ["DeviceRecord", "DeviceRepository", "run_blocking"]
