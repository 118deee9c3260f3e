"""LogWorker - Procesa en background los logs encolados con ``fast``.

Ejecuta exactamente el mismo pipeline que la ruta síncrona.

POLÍTICA:
- ACCEPTED -> ack
- Rechazo de autorización -> dead-letter inmediato (reintentar no sirve)
- PROCESSING_FAILED / UNEXPECTED -> reintento hasta max_retries,
  luego dead-letter
- Error de la cola (ack, xadd) -> se sigue con el resto del lote; el job
  queda pendiente y ``reclaim`` lo reentrega tras ``reclaim_idle_ms``
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import List, Optional

from ..pipeline.ingestion import IngestionPipeline
from ..pipeline.models import IngestStatus
from .job_queue import LogJobQueue
from .models import LogJob, LogWorkerConfig, LogWorkerStats

logger = logging.getLogger(__name__)


class LogWorker:

    def __init__(
        self,
        queue: LogJobQueue,
        pipeline: IngestionPipeline,
        config: Optional[LogWorkerConfig] = None,
    ):
        self._queue = queue
        self._pipeline = pipeline
        self._config = config or LogWorkerConfig()
        self._stats = LogWorkerStats()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._running:
            return
        await self._queue.ensure_ready()
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "[LOG_WORKER] Started queue=%s max_retries=%d",
            self._queue.backend_name,
            self._config.max_retries,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("[LOG_WORKER] Stopped stats=%s", self._stats.to_dict())

    async def _run_loop(self) -> None:
        last_reclaim: Optional[float] = None
        while self._running:
            try:
                now = time.monotonic()
                if last_reclaim is None or now - last_reclaim >= self._config.reclaim_interval_seconds:
                    last_reclaim = now
                    stale = await self._queue.reclaim(
                        self._config.batch_size, self._config.reclaim_idle_ms
                    )
                    self._stats.jobs_reclaimed += len(stale)
                    await self._process_batch(stale)

                jobs = await self._queue.fetch(self._config.batch_size, self._config.block_ms)
                await self._process_batch(jobs)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._stats.last_error = str(e)
                logger.error("[LOG_WORKER] Loop error: %s", e)
                await asyncio.sleep(self._config.error_backoff_seconds)

    async def _process_batch(self, jobs: List[LogJob]) -> None:
        for job in jobs:
            try:
                await self.process_job(job)
            except Exception as e:
                # Sin ack el job queda pendiente y reclaim lo vuelve a entregar
                self._stats.jobs_failed += 1
                self._stats.last_error = str(e)
                logger.error(
                    "[LOG_WORKER] Job failed job_id=%s device_id=%s err=%s",
                    job.job_id,
                    job.request.device_id,
                    e,
                )

    async def process_job(self, job: LogJob) -> IngestStatus:
        self._stats.jobs_processed += 1
        result = await self._pipeline.ingest(job.request)
        status = result.status

        if status is IngestStatus.ACCEPTED:
            await self._queue.ack(job)
            self._stats.jobs_succeeded += 1
            return status

        if status.is_retryable and job.attempts < self._config.max_retries:
            new_id = await self._queue.retry(job)
            self._stats.jobs_retried += 1
            logger.warning(
                "[LOG_WORKER] RETRY job_id=%s new_id=%s device_id=%s attempt=%d/%d status=%s",
                job.job_id,
                new_id,
                job.request.device_id,
                job.attempts + 1,
                self._config.max_retries,
                status.value,
            )
            return status

        await self._queue.dead_letter(job, status.value)
        self._stats.jobs_dead_lettered += 1
        logger.error(
            "[LOG_WORKER] Dead-lettered job_id=%s device_id=%s attempts=%d status=%s",
            job.job_id,
            job.request.device_id,
            job.attempts,
            status.value,
        )
        return status

    def get_stats(self) -> dict:
        return {
            **self._stats.to_dict(),
            "running": self._running,
            "queue": self._queue.backend_name,
        }
