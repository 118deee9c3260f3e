"""Pipeline de ingesta de logs de dispositivo.

FLUJO:
1. Sin credencial -> NO_CREDENTIAL
2. Caché de autorización (hit válido -> extiende TTL, sin BD)
3. Miss -> validación de ownership contra BD, y se cachea el resultado
4. Mapeo sensor_id -> group_sensor_id (los no mapeados se descartan)
5. En paralelo: actualizar dispositivo, persistir valores, métrica, broadcast

Solo (device update, persistencia) definen el éxito de la petición.
Métricas y broadcast son best-effort: se loguean y nunca fallan la ingesta.
No hay rollback entre ramas: una falla parcial puede dejar la otra escrita.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from ..auth.authorization import AuthorizationEntry, AuthorizationError, AuthorizationReason
from ..auth.authorization_cache import AuthorizationCache
from ..auth.ownership_validator import OwnershipValidator
from ..broadcast.events import GroupSensorValues, NewSensorsEvent, SensorValuePoint
from ..broadcast.publisher import EventPublisher
from ..metrics.ingestion_metrics import SENSOR_VALUES_PER_MINUTE, MetricsRecorder
from ..persistence.sensor_value_writer import ResolvedReading, SensorValueWriter
from ..repository.device_repository import DeviceRepository
from ..repository.executor import run_blocking
from .models import DeviceLogRequest, IngestResult, IngestStatus

logger = logging.getLogger(__name__)

_REJECTIONS = {
    AuthorizationReason.BAD_CREDENTIAL: IngestStatus.BAD_CREDENTIAL,
    AuthorizationReason.DEVICE_NOT_FOUND: IngestStatus.DEVICE_NOT_FOUND,
    AuthorizationReason.OWNERSHIP_MISMATCH: IngestStatus.OWNERSHIP_MISMATCH,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IngestionPipeline:

    def __init__(
        self,
        *,
        cache: AuthorizationCache,
        validator: OwnershipValidator,
        repository: DeviceRepository,
        writer: SensorValueWriter,
        publisher: EventPublisher,
        metrics: MetricsRecorder,
        publish_timeout_seconds: float = 2.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._cache = cache
        self._validator = validator
        self._repository = repository
        self._writer = writer
        self._publisher = publisher
        self._metrics = metrics
        self._publish_timeout = publish_timeout_seconds
        self._clock = clock

    async def ingest(self, request: DeviceLogRequest) -> IngestResult:
        """Procesa un lote. Nunca lanza: todo error termina en un IngestStatus."""
        try:
            return await self._ingest(request)
        except Exception:
            logger.exception(
                "[INGEST] Unexpected error device_id=%s group_id=%s",
                request.device_id,
                request.group_id,
            )
            return IngestResult(IngestStatus.UNEXPECTED)

    async def _ingest(self, request: DeviceLogRequest) -> IngestResult:
        if not request.credential:
            return IngestResult(IngestStatus.NO_CREDENTIAL)

        sensor_ids = request.sensor_ids()

        try:
            entry, cache_hit = await self._authorize(request, sensor_ids)
        except AuthorizationError as e:
            logger.info(
                "[INGEST] Rejected device_id=%s group_id=%s reason=%s",
                request.device_id,
                request.group_id,
                e.reason.value,
            )
            return IngestResult(_REJECTIONS[e.reason])

        now = self._clock()
        readings, dropped = self._resolve_readings(request, entry, now)
        if dropped:
            logger.warning(
                "[INGEST] Dropped unmapped readings device_id=%s group_id=%s dropped=%d",
                request.device_id,
                request.group_id,
                dropped,
            )

        device_result, write_result, _, _ = await asyncio.gather(
            self._update_device(request, now),
            run_blocking(self._writer.write_many, readings),
            self._record_metric(entry.user_id, len(readings), now),
            self._publish(request, readings, now),
            return_exceptions=True,
        )

        failed = False
        for branch, result in (("device_update", device_result), ("write", write_result)):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                failed = True
                logger.error(
                    "[INGEST] Persistence failed branch=%s device_id=%s group_id=%s",
                    branch,
                    request.device_id,
                    request.group_id,
                    exc_info=result,
                )

        if failed:
            return IngestResult(IngestStatus.PROCESSING_FAILED, dropped=dropped, cache_hit=cache_hit)

        logger.debug(
            "[INGEST] Accepted device_id=%s inserted=%d cache_hit=%s",
            request.device_id,
            write_result,
            cache_hit,
        )
        return IngestResult(
            IngestStatus.ACCEPTED,
            inserted=write_result,
            dropped=dropped,
            cache_hit=cache_hit,
        )

    async def _authorize(
        self, request: DeviceLogRequest, sensor_ids: List[str]
    ) -> Tuple[AuthorizationEntry, bool]:
        cached = await self._cache.get(request.credential, request.device_id)
        if self._cache.is_valid(cached, request.device_id, request.group_id, sensor_ids):
            await self._cache.refresh_ttl(request.credential, request.device_id)
            logger.debug("[INGEST] Cache hit device_id=%s", request.device_id)
            return cached, True

        entry = await self._validator.validate(
            request.credential, request.device_id, request.group_id, sensor_ids
        )
        await self._cache.put(request.credential, request.device_id, entry)
        return entry, False

    @staticmethod
    def _resolve_readings(
        request: DeviceLogRequest, entry: AuthorizationEntry, now: datetime
    ) -> Tuple[List[ResolvedReading], int]:
        readings = []
        dropped = 0
        for reading in request.sensors:
            group_sensor_id = entry.group_sensor_ids.get(reading.sensor_id)
            if group_sensor_id is None:
                dropped += 1
                continue
            if not reading.timestamp:
                timestamp = now
            else:
                timestamp = datetime.fromtimestamp(reading.timestamp, tz=timezone.utc)
            readings.append(ResolvedReading(group_sensor_id, timestamp, reading.value))
        return readings, dropped

    async def _update_device(self, request: DeviceLogRequest, now: datetime) -> None:
        await run_blocking(
            self._repository.set_device_active_group, request.device_id, request.group_id
        )
        await run_blocking(self._repository.update_device_liveness, request.device_id, now)
        if request.firmware_version:
            await run_blocking(
                self._repository.update_active_firmware,
                request.device_id,
                request.firmware_version,
            )

    async def _record_metric(self, user_id: str, amount: int, now: datetime) -> None:
        # MetricsRecorder ya absorbe y loguea sus errores
        await self._metrics.record(SENSOR_VALUES_PER_MINUTE, user_id, amount, now)

    async def _publish(
        self, request: DeviceLogRequest, readings: List[ResolvedReading], now: datetime
    ) -> Optional[int]:
        if not readings:
            return None

        event = build_new_sensors_event(request.device_id, readings, now, request.firmware_version)
        try:
            return await asyncio.wait_for(
                self._publisher.publish(request.device_id, event),
                timeout=self._publish_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "[INGEST] Broadcast timed out device_id=%s timeout=%.1fs",
                request.device_id,
                self._publish_timeout,
            )
        except Exception as e:
            logger.warning("[INGEST] Broadcast failed device_id=%s err=%s", request.device_id, e)
        return None


def build_new_sensors_event(
    device_id: str,
    readings: List[ResolvedReading],
    last_value_at: datetime,
    firmware_version: Optional[str] = None,
) -> NewSensorsEvent:
    """Agrupa las lecturas persistidas por group_sensor, en orden de llegada."""
    grouped: "OrderedDict[str, List[SensorValuePoint]]" = OrderedDict()
    for reading in readings:
        grouped.setdefault(reading.group_sensor_id, []).append(
            SensorValuePoint(value=reading.value, timestamp=reading.timestamp)
        )

    return NewSensorsEvent(
        device_id=device_id,
        last_value_at=last_value_at,
        active_firmware_version=firmware_version,
        sensors=[
            GroupSensorValues(group_sensor_id=gs_id, values=values)
            for gs_id, values in grouped.items()
        ],
    )
