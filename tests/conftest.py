"""Fixtures compartidos: BD SQLite en archivo temporal con datos semilla.

Datos:
- U1 (token log T1, sesión SESSION-U1) dueño de D1
  - D1: grupos G1 (S1, S2) y G1B (S3); sensores S1, S2, S3
  - firmware activo 1.0.0, asignado 2.0.0
- U2 (token log T2, sesión SESSION-U2) dueño de D2 (grupo G2, sensor S9)
"""

from __future__ import annotations

import dataclasses
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import insert

from common.config import Settings
from common.db import create_db_engine, ensure_schema
from common.schema import (
    device_groups,
    devices,
    firmwares,
    group_sensors,
    sensors,
    user_tokens,
    users,
)
from telemetry_api.auth.authorization_cache import AuthorizationCache
from telemetry_api.auth.cache_backends import InMemoryCacheBackend
from telemetry_api.auth.ownership_validator import OwnershipValidator
from telemetry_api.auth.tokens import hash_token
from telemetry_api.broadcast.bus import InMemoryPubSubBus
from telemetry_api.broadcast.publisher import EventPublisher
from telemetry_api.metrics.ingestion_metrics import MetricsRecorder
from telemetry_api.persistence.sensor_value_writer import SensorValueWriter
from telemetry_api.pipeline.ingestion import IngestionPipeline
from telemetry_api.pipeline.models import DeviceLogRequest, SensorReading
from telemetry_api.repository.device_repository import DeviceRepository


TOKEN_U1 = "T1-device-token"
TOKEN_U2 = "T2-device-token"
SESSION_U1 = "SESSION-U1"
SESSION_U2 = "SESSION-U2"

FIXED_NOW = datetime(2026, 3, 1, 12, 30, 45, tzinfo=timezone.utc)


BASE_SETTINGS = Settings(
    database_url="sqlite:///./telemetry-test.db",
    redis_url="redis://localhost:6379/15",
    use_redis=False,
    authz_cache_ttl_seconds=90,
    publish_timeout_seconds=0.5,
    sse_keepalive_seconds=0.2,
    sse_queue_size=100,
    log_queue_stream="test:log_jobs",
    log_queue_group="test_workers",
    log_queue_dead_letter_stream="test:log_jobs:dead",
    log_worker_enabled=True,
    log_worker_max_retries=3,
    log_worker_batch_size=10,
    log_level="DEBUG",
)


def make_settings(**overrides) -> Settings:
    return dataclasses.replace(BASE_SETTINGS, **overrides)


class FakeClock:
    """Reloj monotónico controlable para expiraciones de caché."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _seed(engine) -> None:
    with engine.begin() as conn:
        conn.execute(insert(users), [{"id": "U1", "email": "u1@example.com"},
                                     {"id": "U2", "email": "u2@example.com"}])
        conn.execute(
            insert(user_tokens),
            [
                {"user_id": "U1", "token_hash": hash_token(TOKEN_U1), "context": "log"},
                {"user_id": "U1", "token_hash": hash_token(SESSION_U1), "context": "session"},
                {"user_id": "U2", "token_hash": hash_token(TOKEN_U2), "context": "log"},
                {"user_id": "U2", "token_hash": hash_token(SESSION_U2), "context": "session"},
            ],
        )
        conn.execute(
            insert(firmwares),
            [
                {"id": "FW-OLD", "device_id": "D1", "version": "1.0.0", "embedded": False},
                {"id": "FW-NEW", "device_id": "D1", "version": "2.0.0", "embedded": False},
            ],
        )
        conn.execute(
            insert(devices),
            [
                {
                    "id": "D1",
                    "user_id": "U1",
                    "name": "Boiler room",
                    "active_firmware_id": "FW-OLD",
                    "assigned_firmware_id": "FW-NEW",
                },
                {
                    "id": "D2",
                    "user_id": "U2",
                    "name": "Greenhouse",
                    "active_firmware_id": None,
                    "assigned_firmware_id": None,
                },
            ],
        )
        conn.execute(
            insert(device_groups),
            [
                {"id": "G1", "device_id": "D1", "name": "main"},
                {"id": "G1B", "device_id": "D1", "name": "aux"},
                {"id": "G2", "device_id": "D2", "name": "main"},
            ],
        )
        conn.execute(
            insert(sensors),
            [
                {"id": "S1", "device_id": "D1", "name": "temperature", "unit": "C"},
                {"id": "S2", "device_id": "D1", "name": "humidity", "unit": "%"},
                {"id": "S3", "device_id": "D1", "name": "pressure", "unit": "hPa"},
                {"id": "S9", "device_id": "D2", "name": "soil", "unit": "%"},
            ],
        )
        conn.execute(
            insert(group_sensors),
            [
                {"id": "GS1", "group_id": "G1", "sensor_id": "S1", "active": True},
                {"id": "GS2", "group_id": "G1", "sensor_id": "S2", "active": True},
                {"id": "GS3", "group_id": "G1B", "sensor_id": "S3", "active": True},
                {"id": "GS9", "group_id": "G2", "sensor_id": "S9", "active": True},
            ],
        )


# =============================================================================
# BD Y REPOSITORIO
# =============================================================================

@pytest.fixture
def db_engine(tmp_path):
    """Engine SQLite en archivo (el pipeline accede desde varios threads)."""
    settings = make_settings(database_url=f"sqlite:///{tmp_path / 'telemetry.db'}")
    engine = create_db_engine(settings)
    ensure_schema(engine)
    _seed(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def repository(db_engine) -> DeviceRepository:
    return DeviceRepository(db_engine)


@pytest.fixture
def spy_repository(repository):
    """Repositorio real envuelto en un MagicMock para contar llamadas."""
    return MagicMock(wraps=repository)


# =============================================================================
# CACHÉ, BUS Y PIPELINE
# =============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache_backend(clock) -> InMemoryCacheBackend:
    return InMemoryCacheBackend(clock=clock)


@pytest.fixture
def cache(cache_backend) -> AuthorizationCache:
    return AuthorizationCache(cache_backend, ttl_seconds=90)


@pytest.fixture
def bus() -> InMemoryPubSubBus:
    return InMemoryPubSubBus()


@pytest.fixture
def publisher(bus) -> EventPublisher:
    return EventPublisher(bus)


@pytest.fixture
def make_pipeline(cache, spy_repository, db_engine, publisher):
    """Factory de pipeline; permite reemplazar colaboradores por dobles."""

    def _make(**overrides) -> IngestionPipeline:
        repo = overrides.pop("repository", spy_repository)
        kwargs = dict(
            cache=cache,
            validator=OwnershipValidator(repo),
            repository=repo,
            writer=SensorValueWriter(db_engine),
            publisher=publisher,
            metrics=MetricsRecorder(repo),
            publish_timeout_seconds=0.5,
            clock=lambda: FIXED_NOW,
        )
        kwargs.update(overrides)
        return IngestionPipeline(**kwargs)

    return _make


@pytest.fixture
def pipeline(make_pipeline) -> IngestionPipeline:
    return make_pipeline()


def make_request(
    credential: str = TOKEN_U1,
    device_id: str = "D1",
    group_id: str = "G1",
    readings=(("S1", 21.5), ("S2", 40.0)),
    firmware_version=None,
) -> DeviceLogRequest:
    return DeviceLogRequest(
        credential=credential,
        device_id=device_id,
        group_id=group_id,
        sensors=[SensorReading(sensor_id=s, value=v) for s, v in readings],
        firmware_version=firmware_version,
    )
