"""Authorization - Entradas de autorización y errores de ownership.

Define la forma que comparten la caché de autorización y el validador
de ownership contra BD.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Tuple


class AuthorizationReason(str, Enum):
    """Motivos de rechazo del validador de ownership."""
    BAD_CREDENTIAL = "bad_credential"
    DEVICE_NOT_FOUND = "device_not_found"
    # No se distingue qué chequeo falló (dispositivo, grupo o sensores)
    OWNERSHIP_MISMATCH = "ownership_mismatch"


class AuthorizationError(Exception):
    """Rechazo de autorización de una petición de ingesta."""

    def __init__(self, reason: AuthorizationReason):
        super().__init__(reason.value)
        self.reason = reason


@dataclass(frozen=True)
class AuthorizationEntry:
    """Resultado de una validación de ownership.

    Attributes:
        device_id: Dispositivo validado
        group_id: Grupo contra el que se validó
        sensor_ids: Sensores validados como propios (ordenados, sin duplicados)
        group_sensor_ids: sensor_id -> id de group_sensor usado para guardar valores
        user_id: Cuenta dueña del dispositivo
    """
    device_id: str
    group_id: str
    sensor_ids: Tuple[str, ...]
    group_sensor_ids: Dict[str, str] = field(default_factory=dict)
    user_id: str = ""

    @classmethod
    def build(
        cls,
        device_id: str,
        group_id: str,
        sensor_ids: Iterable[str],
        group_sensor_ids: Dict[str, str],
        user_id: str,
    ) -> "AuthorizationEntry":
        return cls(
            device_id=device_id,
            group_id=group_id,
            sensor_ids=tuple(sorted(set(sensor_ids))),
            group_sensor_ids=dict(group_sensor_ids),
            user_id=user_id,
        )

    def to_json(self) -> str:
        return json.dumps(
            {
                "device_id": self.device_id,
                "group_id": self.group_id,
                "sensor_ids": list(self.sensor_ids),
                "group_sensor_ids": self.group_sensor_ids,
                "user_id": self.user_id,
            }
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "AuthorizationEntry":
        """Reconstruye la entrada desde JSON.

        Raises:
            ValueError/KeyError/TypeError si el payload está corrupto
        """
        data = json.loads(raw)
        group_sensor_ids = data["group_sensor_ids"]
        if not isinstance(group_sensor_ids, dict):
            raise TypeError("group_sensor_ids must be an object")
        return cls(
            device_id=str(data["device_id"]),
            group_id=str(data["group_id"]),
            sensor_ids=tuple(str(s) for s in data["sensor_ids"]),
            group_sensor_ids={str(k): str(v) for k, v in group_sensor_ids.items()},
            user_id=str(data.get("user_id", "")),
        )
