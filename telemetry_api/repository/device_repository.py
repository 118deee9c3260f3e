"""Acceso a BD de dispositivos, credenciales, firmwares y métricas.

Cada operación abre su propia transacción (``engine.begin()``): las
ramas del pipeline corren en paralelo y no comparten conexión.

Se usan expresiones de SQLAlchemy Core en lugar de SQL literal para que
las mismas consultas sirvan en PostgreSQL (producción) y SQLite (tests).
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, FrozenSet, Iterable, Optional

from sqlalchemy import and_, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from common.schema import (
    device_groups,
    devices,
    firmwares,
    group_sensors,
    metrics,
    sensors,
    user_tokens,
)

from ..auth.tokens import hash_token

logger = logging.getLogger(__name__)

# Un dispositivo sin valores en este intervalo se considera offline
ONLINE_DEVICE_THRESHOLD = timedelta(seconds=90)

EMBEDDED_FIRMWARE_DESCRIPTION = "Firmware reported by device"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite devuelve datetimes naive aunque la columna sea timezone=True
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class DeviceRecord:
    """Dispositivo con los ids de grupos y sensores que le pertenecen."""
    id: str
    user_id: str
    name: str = ""
    group_ids: FrozenSet[str] = field(default_factory=frozenset)
    sensor_ids: FrozenSet[str] = field(default_factory=frozenset)
    last_value_at: Optional[datetime] = None
    active_group_id: Optional[str] = None
    active_firmware_version: Optional[str] = None

    def is_online(self, now: Optional[datetime] = None) -> bool:
        if self.last_value_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now - self.last_value_at <= ONLINE_DEVICE_THRESHOLD


class DeviceRepository:

    def __init__(self, engine: Engine):
        self._engine = engine

    # ------------------------------------------------------------------
    # Credenciales y ownership
    # ------------------------------------------------------------------

    def resolve_credential(self, credential: str, context: str) -> Optional[str]:
        """Retorna el user_id dueño de la credencial en ese contexto, o None."""
        if not credential:
            return None

        stmt = select(user_tokens.c.user_id).where(
            and_(
                user_tokens.c.token_hash == hash_token(credential),
                user_tokens.c.context == context,
            )
        )
        with self._engine.begin() as conn:
            row = conn.execute(stmt).first()
        return row.user_id if row else None

    def get_device(self, device_id: str) -> Optional[DeviceRecord]:
        with self._engine.begin() as conn:
            row = conn.execute(
                select(
                    devices.c.id,
                    devices.c.user_id,
                    devices.c.name,
                    devices.c.last_value_at,
                    devices.c.active_group_id,
                    firmwares.c.version.label("active_firmware_version"),
                )
                .select_from(
                    devices.outerjoin(
                        firmwares, firmwares.c.id == devices.c.active_firmware_id
                    )
                )
                .where(devices.c.id == device_id)
            ).first()

            if row is None:
                return None

            group_ids = conn.execute(
                select(device_groups.c.id).where(device_groups.c.device_id == device_id)
            ).scalars().all()
            sensor_ids = conn.execute(
                select(sensors.c.id).where(sensors.c.device_id == device_id)
            ).scalars().all()

        return DeviceRecord(
            id=row.id,
            user_id=row.user_id,
            name=row.name,
            group_ids=frozenset(group_ids),
            sensor_ids=frozenset(sensor_ids),
            last_value_at=_as_utc(row.last_value_at),
            active_group_id=row.active_group_id,
            active_firmware_version=row.active_firmware_version,
        )

    def user_owns_device(self, user_id: str, device_id: str) -> bool:
        stmt = select(devices.c.id).where(
            and_(devices.c.id == device_id, devices.c.user_id == user_id)
        )
        with self._engine.begin() as conn:
            return conn.execute(stmt).first() is not None

    def get_group_sensor_ids(
        self, group_id: str, sensor_ids: Iterable[str]
    ) -> Dict[str, str]:
        """Mapea sensor_id -> group_sensor_id para los sensores activos del grupo.

        Los sensores que no pertenecen al grupo no aparecen en el resultado.
        """
        wanted = sorted(set(sensor_ids))
        if not wanted:
            return {}

        stmt = select(group_sensors.c.sensor_id, group_sensors.c.id).where(
            and_(
                group_sensors.c.group_id == group_id,
                group_sensors.c.sensor_id.in_(wanted),
                group_sensors.c.active.is_(True),
            )
        )
        with self._engine.begin() as conn:
            rows = conn.execute(stmt).all()
        return {row.sensor_id: row.id for row in rows}

    # ------------------------------------------------------------------
    # Estado del dispositivo
    # ------------------------------------------------------------------

    def set_device_active_group(self, device_id: str, group_id: str) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                update(devices)
                .where(devices.c.id == device_id)
                .values(active_group_id=group_id)
            )

    def update_device_liveness(
        self, device_id: str, now: Optional[datetime] = None
    ) -> datetime:
        now = now or datetime.now(timezone.utc)
        with self._engine.begin() as conn:
            conn.execute(
                update(devices)
                .where(devices.c.id == device_id)
                .values(last_value_at=now)
            )
        return now

    def update_active_firmware(self, device_id: str, version: str) -> str:
        """Registra la versión reportada como firmware activo.

        Si el dispositivo no tenía esa versión registrada se crea como
        firmware embebido. Retorna el id del firmware.
        """
        with self._engine.begin() as conn:
            firmware_id = conn.execute(
                select(firmwares.c.id).where(
                    and_(firmwares.c.device_id == device_id, firmwares.c.version == version)
                )
            ).scalar()

            if firmware_id is None:
                firmware_id = uuid.uuid4().hex
                conn.execute(
                    insert(firmwares).values(
                        id=firmware_id,
                        device_id=device_id,
                        version=version,
                        description=EMBEDDED_FIRMWARE_DESCRIPTION,
                        embedded=True,
                    )
                )
                logger.info(
                    "[FIRMWARE] Registered embedded firmware device_id=%s version=%s",
                    device_id,
                    version,
                )

            conn.execute(
                update(devices)
                .where(devices.c.id == device_id)
                .values(active_firmware_id=firmware_id)
            )
        return firmware_id

    def get_firmware_id_for_update(self, device_id: str) -> Optional[str]:
        """Retorna el firmware asignado si difiere del activo, o None."""
        stmt = select(
            devices.c.assigned_firmware_id, devices.c.active_firmware_id
        ).where(devices.c.id == device_id)
        with self._engine.begin() as conn:
            row = conn.execute(stmt).first()

        if row is None or row.assigned_firmware_id is None:
            return None
        if row.assigned_firmware_id == row.active_firmware_id:
            return None
        return row.assigned_firmware_id

    # ------------------------------------------------------------------
    # Métricas
    # ------------------------------------------------------------------

    def record_metric(
        self, name: str, user_id: str, amount: int, bucket: datetime
    ) -> None:
        """Suma ``amount`` al contador (name, user, bucket), creándolo si falta."""
        where = and_(
            metrics.c.name == name,
            metrics.c.user_id == user_id,
            metrics.c.timestamp == bucket,
        )
        increment = update(metrics).where(where).values(value=metrics.c.value + amount)

        with self._engine.begin() as conn:
            if conn.execute(increment).rowcount:
                return

        try:
            with self._engine.begin() as conn:
                conn.execute(
                    insert(metrics).values(
                        name=name, user_id=user_id, timestamp=bucket, value=amount
                    )
                )
        except IntegrityError:
            # Otro request creó el bucket en paralelo
            with self._engine.begin() as conn:
                conn.execute(increment)
