"""Pipeline de ingesta de logs de dispositivo."""

from .ingestion import IngestionPipeline
from .models import DeviceLogRequest, IngestResult, IngestStatus, SensorReading

__all__ = [
    "IngestionPipeline",
    "DeviceLogRequest",
    "IngestResult",
    "IngestStatus",
    "SensorReading",
]
