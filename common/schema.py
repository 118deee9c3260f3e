"""Esquema relacional del servicio de telemetría.

Tablas mínimas que el pipeline de ingesta consume: cuentas, credenciales,
dispositivos con sus grupos y sensores, valores de sensores, métricas
agregadas por minuto y firmwares.

Los identificadores son strings opacos (ids externos del dispositivo).
"""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
)

metadata = MetaData()


users = Table(
    "users",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("email", String(255), nullable=True),
)

# Solo se guarda el hash SHA-256 del token, nunca el token en claro.
user_tokens = Table(
    "user_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), ForeignKey("users.id"), nullable=False),
    Column("token_hash", String(64), nullable=False, index=True),
    Column("context", String(32), nullable=False),
    UniqueConstraint("user_id", "context", name="uq_user_tokens_user_context"),
)

firmwares = Table(
    "firmwares",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("device_id", String(64), nullable=False),
    Column("version", String(64), nullable=False),
    Column("description", String(255), nullable=True),
    Column("embedded", Boolean, nullable=False, default=False),
    UniqueConstraint("device_id", "version", name="uq_firmwares_device_version"),
)

devices = Table(
    "devices",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", String(64), ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("last_value_at", DateTime(timezone=True), nullable=True),
    Column("active_group_id", String(64), nullable=True),
    Column("active_firmware_id", String(64), nullable=True),
    Column("assigned_firmware_id", String(64), nullable=True),
)

device_groups = Table(
    "device_groups",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("device_id", String(64), ForeignKey("devices.id"), nullable=False),
    Column("name", String(255), nullable=False),
)

sensors = Table(
    "sensors",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("device_id", String(64), ForeignKey("devices.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("unit", String(32), nullable=True),
)

group_sensors = Table(
    "group_sensors",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("group_id", String(64), ForeignKey("device_groups.id"), nullable=False),
    Column("sensor_id", String(64), ForeignKey("sensors.id"), nullable=False),
    Column("active", Boolean, nullable=False, default=True),
    UniqueConstraint("group_id", "sensor_id", name="uq_group_sensors_group_sensor"),
)

# Append-only: sin dedup ni upsert.
sensor_values = Table(
    "sensor_values",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("group_sensor_id", String(64), ForeignKey("group_sensors.id"), nullable=False),
    Column("timestamp", DateTime(timezone=True), nullable=False, index=True),
    Column("value", Float, nullable=False),
)

metrics = Table(
    "metrics",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(64), nullable=False),
    Column("user_id", String(64), nullable=False),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Column("value", Integer, nullable=False, default=0),
    UniqueConstraint("name", "user_id", "timestamp", name="uq_metrics_name_user_ts"),
)
