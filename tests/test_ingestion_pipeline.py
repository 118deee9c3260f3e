"""Tests del pipeline de ingesta (BD SQLite + caché y bus en memoria)."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import ValidationError
from sqlalchemy import select

from common.schema import devices, firmwares, metrics, sensor_values
from telemetry_api.broadcast.events import NewSensorsEvent, decode_event, device_channel
from telemetry_api.pipeline.models import IngestStatus, SensorReading

from conftest import FIXED_NOW, TOKEN_U1, TOKEN_U2, make_request


def _sensor_value_rows(engine):
    with engine.begin() as conn:
        return conn.execute(
            select(sensor_values.c.group_sensor_id, sensor_values.c.value)
            .order_by(sensor_values.c.id)
        ).all()


def _device_row(engine, device_id="D1"):
    with engine.begin() as conn:
        return conn.execute(select(devices).where(devices.c.id == device_id)).first()


AUTH_CALLS = ("resolve_credential", "get_device", "get_group_sensor_ids")


def _auth_call_count(spy) -> int:
    return sum(getattr(spy, name).call_count for name in AUTH_CALLS)


# =============================================================================
# FLUJO FELIZ
# =============================================================================

class TestHappyPath:

    @pytest.mark.asyncio
    async def test_first_request_validates_and_persists(self, pipeline, db_engine):
        result = await pipeline.ingest(make_request())

        assert result.status is IngestStatus.ACCEPTED
        assert result.status.http_status == 201
        assert result.inserted == 2
        assert result.cache_hit is False
        assert _sensor_value_rows(db_engine) == [("GS1", 21.5), ("GS2", 40.0)]

    @pytest.mark.asyncio
    async def test_second_request_hits_cache_without_db_auth(
        self, pipeline, spy_repository, cache, clock
    ):
        await pipeline.ingest(make_request())
        calls_after_first = _auth_call_count(spy_repository)
        assert calls_after_first == 3

        clock.advance(60)
        result = await pipeline.ingest(make_request())

        assert result.status is IngestStatus.ACCEPTED
        assert result.cache_hit is True
        assert _auth_call_count(spy_repository) == calls_after_first

        # El hit extendió el TTL: sigue vivo 89s después del refresh
        clock.advance(89)
        assert await cache.get(TOKEN_U1, "D1") is not None

    @pytest.mark.asyncio
    async def test_device_state_updated(self, pipeline, db_engine):
        await pipeline.ingest(make_request())

        row = _device_row(db_engine)
        assert row.active_group_id == "G1"
        assert row.last_value_at.replace(tzinfo=timezone.utc) == FIXED_NOW

    @pytest.mark.asyncio
    async def test_metric_bucket_incremented(self, pipeline, db_engine):
        await pipeline.ingest(make_request())
        await pipeline.ingest(make_request(readings=(("S1", 1.0), ("S2", 2.0))))

        with db_engine.begin() as conn:
            rows = conn.execute(select(metrics)).all()

        assert len(rows) == 1
        assert rows[0].name == "SENSOR_VALUES_PER_MINUTE"
        assert rows[0].user_id == "U1"
        assert rows[0].value == 4
        assert rows[0].timestamp.replace(tzinfo=timezone.utc) == FIXED_NOW.replace(second=0)

    @pytest.mark.asyncio
    async def test_explicit_timestamp_is_kept(self, pipeline, db_engine):
        request = make_request(readings=())
        request.sensors.append(SensorReading(sensor_id="S1", value=3.0, timestamp=1_700_000_000))

        # Cambia el set de sensores -> revalidación, y luego persiste
        result = await pipeline.ingest(request)

        assert result.status is IngestStatus.ACCEPTED
        with db_engine.begin() as conn:
            ts = conn.execute(select(sensor_values.c.timestamp)).scalar()
        expected = datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)
        assert ts.replace(tzinfo=timezone.utc) == expected

    @pytest.mark.asyncio
    async def test_fractional_timestamp_is_kept(self, pipeline, db_engine):
        request = make_request(readings=())
        request.sensors.append(SensorReading(sensor_id="S1", value=3.0, timestamp=1_700_000_000.5))

        result = await pipeline.ingest(request)

        assert result.status is IngestStatus.ACCEPTED
        with db_engine.begin() as conn:
            ts = conn.execute(select(sensor_values.c.timestamp)).scalar()
        expected = datetime.fromtimestamp(1_700_000_000.5, tz=timezone.utc)
        assert ts.replace(tzinfo=timezone.utc) == expected

    @pytest.mark.asyncio
    async def test_zero_timestamp_uses_ingest_time(self, pipeline, db_engine):
        request = make_request(readings=())
        request.sensors.append(SensorReading(sensor_id="S1", value=3.0, timestamp=0))

        await pipeline.ingest(request)

        with db_engine.begin() as conn:
            ts = conn.execute(select(sensor_values.c.timestamp)).scalar()
        assert ts.replace(tzinfo=timezone.utc) == FIXED_NOW

    def test_out_of_range_timestamp_is_rejected(self):
        with pytest.raises(ValidationError):
            SensorReading(sensor_id="S1", value=1.0, timestamp=1_700_000_000_000_000)

    @pytest.mark.asyncio
    async def test_firmware_version_registers_embedded_firmware(self, pipeline, db_engine):
        await pipeline.ingest(make_request(firmware_version="3.1.0"))

        with db_engine.begin() as conn:
            fw = conn.execute(
                select(firmwares).where(firmwares.c.version == "3.1.0")
            ).first()
        assert fw is not None
        assert fw.embedded is True
        assert _device_row(db_engine).active_firmware_id == fw.id

    @pytest.mark.asyncio
    async def test_duplicate_batches_are_appended(self, pipeline, db_engine):
        await pipeline.ingest(make_request())
        await pipeline.ingest(make_request())
        assert len(_sensor_value_rows(db_engine)) == 4


# =============================================================================
# RECHAZOS
# =============================================================================

class TestRejections:

    @pytest.mark.asyncio
    async def test_missing_credential(self, pipeline, spy_repository):
        result = await pipeline.ingest(make_request(credential=""))
        assert result.status is IngestStatus.NO_CREDENTIAL
        assert result.status.http_status == 403
        assert _auth_call_count(spy_repository) == 0

    @pytest.mark.asyncio
    async def test_bad_credential(self, pipeline, db_engine):
        result = await pipeline.ingest(make_request(credential="bogus"))
        assert result.status is IngestStatus.BAD_CREDENTIAL
        assert result.status.message == "Error: bad token"
        assert _sensor_value_rows(db_engine) == []

    @pytest.mark.asyncio
    async def test_unknown_device(self, pipeline):
        result = await pipeline.ingest(make_request(device_id="D404"))
        assert result.status is IngestStatus.DEVICE_NOT_FOUND
        assert result.status.http_status == 404

    @pytest.mark.asyncio
    async def test_foreign_sensor_rejects_without_writes(self, pipeline, db_engine):
        result = await pipeline.ingest(make_request(readings=(("S1", 1.0), ("S9", 2.0))))

        assert result.status is IngestStatus.OWNERSHIP_MISMATCH
        assert result.status.message == "Error: user does not own device, group or sensors"
        assert _sensor_value_rows(db_engine) == []
        assert _device_row(db_engine).last_value_at is None

    @pytest.mark.asyncio
    async def test_other_account_credential(self, pipeline):
        result = await pipeline.ingest(make_request(credential=TOKEN_U2))
        assert result.status is IngestStatus.OWNERSHIP_MISMATCH

    @pytest.mark.asyncio
    async def test_cached_entry_not_reused_for_bigger_sensor_set(
        self, pipeline, spy_repository
    ):
        await pipeline.ingest(make_request())
        before = _auth_call_count(spy_repository)

        result = await pipeline.ingest(
            make_request(readings=(("S1", 1.0), ("S2", 2.0), ("S9", 3.0)))
        )

        assert result.status is IngestStatus.OWNERSHIP_MISMATCH
        assert _auth_call_count(spy_repository) > before


# =============================================================================
# MAPEO PARCIAL
# =============================================================================

class TestPartialMapping:

    @pytest.mark.asyncio
    async def test_unmapped_sensor_is_dropped(self, pipeline, db_engine):
        """S3 pertenece a D1 pero no a G1: se descarta, el resto se guarda."""
        result = await pipeline.ingest(
            make_request(readings=(("S1", 1.0), ("S2", 2.0), ("S3", 3.0)))
        )

        assert result.status is IngestStatus.ACCEPTED
        assert result.inserted == 2
        assert result.dropped == 1
        assert [r.group_sensor_id for r in _sensor_value_rows(db_engine)] == ["GS1", "GS2"]


# =============================================================================
# FALLAS DE COMPONENTES
# =============================================================================

class TestFailures:

    @pytest.mark.asyncio
    async def test_cache_outage_falls_back_to_db(self, make_pipeline, db_engine):
        from telemetry_api.auth.authorization_cache import AuthorizationCache

        backend = AsyncMock()
        backend.get.side_effect = ConnectionError("redis down")
        backend.set.side_effect = ConnectionError("redis down")
        pipeline = make_pipeline(cache=AuthorizationCache(backend))

        result = await pipeline.ingest(make_request())

        assert result.status is IngestStatus.ACCEPTED
        assert len(_sensor_value_rows(db_engine)) == 2

    @pytest.mark.asyncio
    async def test_broadcast_failure_does_not_fail_request(self, make_pipeline, db_engine):
        publisher = MagicMock()
        publisher.publish = AsyncMock(side_effect=ConnectionError("bus down"))
        pipeline = make_pipeline(publisher=publisher)

        result = await pipeline.ingest(make_request())

        assert result.status is IngestStatus.ACCEPTED
        assert len(_sensor_value_rows(db_engine)) == 2
        publisher.publish.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_broadcast_timeout_does_not_fail_request(self, make_pipeline):
        async def slow_publish(device_id, event):
            await asyncio.sleep(5)

        publisher = MagicMock()
        publisher.publish = slow_publish
        pipeline = make_pipeline(publisher=publisher, publish_timeout_seconds=0.05)

        result = await asyncio.wait_for(pipeline.ingest(make_request()), timeout=2)

        assert result.status is IngestStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_metric_failure_does_not_fail_request(self, make_pipeline, spy_repository):
        spy_repository.record_metric.side_effect = RuntimeError("metrics table locked")
        pipeline = make_pipeline()

        result = await pipeline.ingest(make_request())

        assert result.status is IngestStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_write_failure_is_processing_failed_without_rollback(
        self, make_pipeline, db_engine
    ):
        writer = MagicMock()
        writer.write_many.side_effect = RuntimeError("disk full")
        pipeline = make_pipeline(writer=writer)

        result = await pipeline.ingest(make_request())

        assert result.status is IngestStatus.PROCESSING_FAILED
        assert result.status.http_status == 500
        # La rama de dispositivo no se revierte
        assert _device_row(db_engine).last_value_at is not None

    @pytest.mark.asyncio
    async def test_device_update_failure_is_processing_failed(
        self, make_pipeline, spy_repository, db_engine
    ):
        spy_repository.update_device_liveness.side_effect = RuntimeError("deadlock")
        pipeline = make_pipeline()

        result = await pipeline.ingest(make_request())

        assert result.status is IngestStatus.PROCESSING_FAILED
        # Los valores sí quedaron escritos
        assert len(_sensor_value_rows(db_engine)) == 2

    @pytest.mark.asyncio
    async def test_validator_db_error_is_unexpected(self, make_pipeline, spy_repository):
        spy_repository.get_device.side_effect = RuntimeError("connection reset")
        pipeline = make_pipeline()

        result = await pipeline.ingest(make_request())

        assert result.status is IngestStatus.UNEXPECTED


# =============================================================================
# BROADCAST
# =============================================================================

class TestBroadcast:

    @pytest.mark.asyncio
    async def test_new_sensors_event_published(self, pipeline, bus):
        await bus.subscribe(device_channel("D1"))

        await pipeline.ingest(make_request(firmware_version="1.0.0"))

        channel, payload = await bus.get_message(timeout=1)
        event = decode_event(payload)
        assert channel == "device:D1"
        assert isinstance(event, NewSensorsEvent)
        assert event.device_id == "D1"
        assert event.last_value_at == FIXED_NOW
        assert event.active_firmware_version == "1.0.0"
        assert [s.group_sensor_id for s in event.sensors] == ["GS1", "GS2"]
        assert event.sensors[0].values[0].value == 21.5

    @pytest.mark.asyncio
    async def test_readings_grouped_by_group_sensor(self, pipeline, bus):
        await bus.subscribe(device_channel("D1"))
        request = make_request(readings=())
        request.sensors.extend(
            [
                SensorReading(sensor_id="S1", value=1.0, timestamp=100),
                SensorReading(sensor_id="S2", value=2.0, timestamp=100),
                SensorReading(sensor_id="S1", value=3.0, timestamp=160),
            ]
        )

        await pipeline.ingest(request)

        _, payload = await bus.get_message(timeout=1)
        event = decode_event(payload)
        assert [(s.group_sensor_id, len(s.values)) for s in event.sensors] == [
            ("GS1", 2),
            ("GS2", 1),
        ]

    @pytest.mark.asyncio
    async def test_nothing_published_for_rejected_request(self, pipeline, bus):
        await bus.subscribe(device_channel("D1"))

        await pipeline.ingest(make_request(credential="bogus"))

        assert await bus.get_message(timeout=0.05) is None
