"""Contenedor de servicios del proceso.

Todos los componentes se construyen explícitamente al arrancar la app
(lifespan de FastAPI) y se inyectan: no hay singletons a nivel módulo.

Si Redis está deshabilitado o no responde al arrancar se usan las
variantes en memoria (caché, bus y cola), con un warning en logs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
from sqlalchemy.engine import Engine

from common.config import Settings
from common.db import create_db_engine

from .auth.authorization_cache import AuthorizationCache
from .auth.cache_backends import CacheBackend, InMemoryCacheBackend, RedisCacheBackend
from .auth.ownership_validator import OwnershipValidator
from .broadcast.bus import InMemoryPubSubBus, PubSubBus, RedisPubSubBus
from .broadcast.publisher import EventPublisher
from .broadcast.subscriber import EventHub
from .jobs.job_queue import InMemoryJobQueue, LogJobQueue, RedisStreamJobQueue
from .jobs.models import LogWorkerConfig
from .jobs.worker import LogWorker
from .metrics.ingestion_metrics import MetricsRecorder
from .persistence.sensor_value_writer import SensorValueWriter
from .pipeline.ingestion import IngestionPipeline
from .repository.device_repository import DeviceRepository

logger = logging.getLogger(__name__)


@dataclass
class TelemetryServices:
    settings: Settings
    engine: Engine
    repository: DeviceRepository
    cache: AuthorizationCache
    validator: OwnershipValidator
    publisher: EventPublisher
    hub: EventHub
    pipeline: IngestionPipeline
    job_queue: Optional[LogJobQueue] = None
    worker: Optional[LogWorker] = None
    redis_client: Optional[aioredis.Redis] = None
    bus: Optional[PubSubBus] = None

    @property
    def uses_redis(self) -> bool:
        return self.redis_client is not None

    async def start(self) -> None:
        await self.hub.start()
        if self.worker is not None:
            await self.worker.start()

    async def close(self) -> None:
        if self.worker is not None:
            await self.worker.stop()
        await self.hub.stop()
        if self.bus is not None:
            try:
                await self.bus.close()
            except Exception as e:
                logger.warning("[SERVICES] Error closing bus: %s", e)
        if self.redis_client is not None:
            try:
                await self.redis_client.aclose()
            except Exception as e:
                logger.warning("[SERVICES] Error closing Redis: %s", e)
        self.engine.dispose()
        logger.info("[SERVICES] Closed")


def assemble_services(
    settings: Settings,
    engine: Engine,
    cache_backend: CacheBackend,
    bus: PubSubBus,
    job_queue: Optional[LogJobQueue] = None,
    redis_client: Optional[aioredis.Redis] = None,
) -> TelemetryServices:
    """Conecta los componentes a partir de backends ya creados."""
    repository = DeviceRepository(engine)
    cache = AuthorizationCache(cache_backend, ttl_seconds=settings.authz_cache_ttl_seconds)
    validator = OwnershipValidator(repository)
    publisher = EventPublisher(bus)
    hub = EventHub(bus, queue_size=settings.sse_queue_size)

    pipeline = IngestionPipeline(
        cache=cache,
        validator=validator,
        repository=repository,
        writer=SensorValueWriter(engine),
        publisher=publisher,
        metrics=MetricsRecorder(repository),
        publish_timeout_seconds=settings.publish_timeout_seconds,
    )

    worker = None
    if job_queue is not None and settings.log_worker_enabled:
        worker = LogWorker(job_queue, pipeline, LogWorkerConfig.from_settings(settings))

    return TelemetryServices(
        settings=settings,
        engine=engine,
        repository=repository,
        cache=cache,
        validator=validator,
        publisher=publisher,
        hub=hub,
        pipeline=pipeline,
        job_queue=job_queue,
        worker=worker,
        redis_client=redis_client,
        bus=bus,
    )


def build_in_memory_services(settings: Settings, engine: Engine) -> TelemetryServices:
    return assemble_services(
        settings,
        engine,
        cache_backend=InMemoryCacheBackend(),
        bus=InMemoryPubSubBus(),
        job_queue=InMemoryJobQueue(),
    )


async def _connect_redis(settings: Settings) -> Optional[aioredis.Redis]:
    if not settings.use_redis:
        logger.info("[SERVICES] Redis disabled by config, using in-memory backends")
        return None

    client = aioredis.Redis.from_url(
        settings.redis_url,
        socket_connect_timeout=5.0,
        health_check_interval=30,
    )
    try:
        await client.ping()
    except Exception as e:
        logger.warning(
            "[SERVICES] Redis unavailable (%s), falling back to in-memory backends", e
        )
        await client.aclose()
        return None

    logger.info("[REDIS] Connected: %s", settings.redis_url.split("@")[-1])
    return client


async def build_services(
    settings: Settings, engine: Optional[Engine] = None
) -> TelemetryServices:
    engine = engine or create_db_engine(settings)

    client = await _connect_redis(settings)
    if client is None:
        return build_in_memory_services(settings, engine)

    return assemble_services(
        settings,
        engine,
        cache_backend=RedisCacheBackend(client),
        bus=RedisPubSubBus(client),
        job_queue=RedisStreamJobQueue(
            client,
            stream=settings.log_queue_stream,
            group=settings.log_queue_group,
            dead_letter_stream=settings.log_queue_dead_letter_stream,
        ),
        redis_client=client,
    )
