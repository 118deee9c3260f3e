"""Modelos del pipeline de ingesta de logs de dispositivo."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

# 9999-12-31T23:59:59Z, último instante representable por datetime
MAX_TIMESTAMP = 253402300799


class SensorReading(BaseModel):
    """Lectura individual reportada por el dispositivo."""
    sensor_id: str = Field(..., min_length=1, max_length=64)
    value: float
    # Epoch en segundos (admite fracción); si falta o es 0 se usa la hora de ingesta
    timestamp: Optional[float] = Field(default=None, ge=0, le=MAX_TIMESTAMP)

    @field_validator("value")
    @classmethod
    def validate_value(cls, v: float) -> float:
        if math.isnan(v) or math.isinf(v):
            raise ValueError("value must be a finite number")
        return v


class DeviceLogRequest(BaseModel):
    """Lote de lecturas de un dispositivo, con su credencial."""
    credential: str = ""
    device_id: str = Field(..., min_length=1, max_length=64)
    group_id: str = Field(..., min_length=1, max_length=64)
    sensors: List[SensorReading] = Field(default_factory=list)
    firmware_version: Optional[str] = Field(default=None, max_length=64)

    def sensor_ids(self) -> List[str]:
        return sorted({reading.sensor_id for reading in self.sensors})

    def redacted(self) -> dict:
        """Versión serializable sin la credencial (para logs y dead-letter)."""
        data = self.model_dump(mode="json")
        data["credential"] = "***" if self.credential else ""
        return data


class IngestStatus(str, Enum):
    ACCEPTED = "accepted"
    QUEUED = "queued"
    NO_CREDENTIAL = "no_credential"
    BAD_CREDENTIAL = "bad_credential"
    DEVICE_NOT_FOUND = "device_not_found"
    OWNERSHIP_MISMATCH = "ownership_mismatch"
    PROCESSING_FAILED = "processing_failed"
    UNEXPECTED = "unexpected"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]

    @property
    def message(self) -> str:
        return _MESSAGES[self]

    @property
    def is_retryable(self) -> bool:
        return self in (IngestStatus.PROCESSING_FAILED, IngestStatus.UNEXPECTED)


_HTTP_STATUS = {
    IngestStatus.ACCEPTED: 201,
    IngestStatus.QUEUED: 202,
    IngestStatus.NO_CREDENTIAL: 403,
    IngestStatus.BAD_CREDENTIAL: 403,
    IngestStatus.DEVICE_NOT_FOUND: 404,
    IngestStatus.OWNERSHIP_MISMATCH: 403,
    IngestStatus.PROCESSING_FAILED: 500,
    IngestStatus.UNEXPECTED: 500,
}

_MESSAGES = {
    IngestStatus.ACCEPTED: "Created",
    IngestStatus.QUEUED: "Accepted",
    IngestStatus.NO_CREDENTIAL: "Error: bad token",
    IngestStatus.BAD_CREDENTIAL: "Error: bad token",
    IngestStatus.DEVICE_NOT_FOUND: "Error: device not found",
    IngestStatus.OWNERSHIP_MISMATCH: "Error: user does not own device, group or sensors",
    IngestStatus.PROCESSING_FAILED: "Error: processing failed",
    IngestStatus.UNEXPECTED: "Error: internal error",
}


@dataclass(frozen=True)
class IngestResult:
    status: IngestStatus
    inserted: int = 0
    dropped: int = 0
    cache_hit: bool = False
