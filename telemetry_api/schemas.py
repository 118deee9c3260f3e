from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from .pipeline.models import DeviceLogRequest, SensorReading


class DeviceLogIn(BaseModel):
    """Body de POST /devices/log."""
    device_id: str = Field(..., min_length=1, max_length=64)
    group_id: str = Field(..., min_length=1, max_length=64)
    sensors: List[SensorReading] = Field(default_factory=list)
    firmware_version: Optional[str] = Field(default=None, max_length=64)
    # Encolar y responder 202 sin esperar la persistencia
    fast: bool = False

    def to_request(self, credential: str) -> DeviceLogRequest:
        return DeviceLogRequest(
            credential=credential,
            device_id=self.device_id,
            group_id=self.group_id,
            sensors=self.sensors,
            firmware_version=self.firmware_version,
        )


class DeviceStatusIn(BaseModel):
    """Body de POST /devices/{device_id}/status."""
    firmware_version: Optional[str] = Field(default=None, max_length=64)


class FirmwareNotice(BaseModel):
    notice: str = "update required"
    firmware_id: str
    unix_time: int


class ServerTimeOut(BaseModel):
    unix_time: int
