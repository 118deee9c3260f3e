"""Eventos que viajan por el bus de broadcast hacia los dashboards.

Unión discriminada por ``type``. El formato en el cable es JSON con
claves camelCase (lo consumen clientes web vía SSE).
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

CONNECTED_EVENT = "connected"
NEW_SENSORS_EVENT = "new sensors"
STATUS_EVENT = "status"

CHANNEL_PREFIX = "device:"


def device_channel(device_id: str) -> str:
    """Nombre del canal de broadcast de un dispositivo."""
    return f"{CHANNEL_PREFIX}{device_id}"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SensorValuePoint(_CamelModel):
    value: float
    timestamp: datetime


class GroupSensorValues(_CamelModel):
    group_sensor_id: str = Field(alias="groupSensorId")
    values: List[SensorValuePoint] = Field(default_factory=list)


class ConnectedEvent(_CamelModel):
    type: Literal["connected"] = CONNECTED_EVENT
    message: str


class NewSensorsEvent(_CamelModel):
    type: Literal["new sensors"] = NEW_SENSORS_EVENT
    device_id: str = Field(alias="deviceId")
    last_value_at: datetime = Field(alias="lastValueAt")
    active_firmware_version: Optional[str] = Field(default=None, alias="activeFirmwareVersion")
    sensors: List[GroupSensorValues] = Field(default_factory=list)


class StatusEvent(_CamelModel):
    type: Literal["status"] = STATUS_EVENT
    device_id: str = Field(alias="deviceId")
    active_firmware_version: Optional[str] = Field(default=None, alias="activeFirmwareVersion")


BroadcastEvent = Annotated[
    Union[ConnectedEvent, NewSensorsEvent, StatusEvent],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter = TypeAdapter(BroadcastEvent)


def connected_event(device_id: str) -> ConnectedEvent:
    return ConnectedEvent(message=f"Monitoring device {device_id}")


def encode_event(event: BaseModel) -> str:
    return event.model_dump_json(by_alias=True)


def decode_event(payload: Union[str, bytes]) -> BroadcastEvent:
    """Parsea un evento del bus.

    Raises:
        pydantic.ValidationError si el payload no es un evento conocido
    """
    return _event_adapter.validate_json(payload)


def to_stream_payload(event: BaseModel, channel: str) -> dict:
    """Dict listo para enviar por SSE: el evento más el canal de origen."""
    data = event.model_dump(mode="json", by_alias=True)
    data["channelId"] = channel
    return data


def describe_event(event: BroadcastEvent) -> str:
    """Resumen corto para logs."""
    if isinstance(event, NewSensorsEvent):
        count = sum(len(s.values) for s in event.sensors)
        return f"{event.type} device={event.device_id} values={count}"
    if isinstance(event, StatusEvent):
        return f"{event.type} device={event.device_id} fw={event.active_firmware_version}"
    if isinstance(event, ConnectedEvent):
        return f"{event.type} {event.message}"
    raise TypeError(f"Unknown broadcast event: {type(event).__name__}")
