"""Modelos de la cola de ingesta diferida ("fast" logs)."""

from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Optional

from common.config import Settings

from ..pipeline.models import DeviceLogRequest


@dataclass
class LogJob:
    """Un lote de ingesta encolado.

    Attributes:
        job_id: Id del mensaje en la cola
        request: Petición original (con credencial)
        attempts: Reintentos ya consumidos
        enqueued_at: Epoch de encolado
    """
    job_id: str
    request: DeviceLogRequest
    attempts: int = 0
    enqueued_at: float = field(default_factory=time.time)

    def to_fields(self) -> dict:
        return {
            "payload": self.request.model_dump_json(),
            "attempts": str(self.attempts),
            "enqueued_at": str(self.enqueued_at),
        }

    @classmethod
    def from_fields(cls, job_id: str, fields: dict) -> "LogJob":
        """Reconstruye el job desde los campos del stream.

        Raises:
            pydantic.ValidationError / KeyError / ValueError si está corrupto
        """
        return cls(
            job_id=job_id,
            request=DeviceLogRequest.model_validate_json(fields["payload"]),
            attempts=int(fields.get("attempts", 0)),
            enqueued_at=float(fields.get("enqueued_at", 0) or 0),
        )


@dataclass
class LogWorkerConfig:
    """Configuración del worker de logs diferidos."""
    batch_size: int = 10
    block_ms: int = 2000
    max_retries: int = 3
    error_backoff_seconds: float = 1.0
    # Entradas sin ack más viejas que esto se consideran abandonadas
    reclaim_idle_ms: int = 60000
    reclaim_interval_seconds: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "LogWorkerConfig":
        return cls(
            batch_size=settings.log_worker_batch_size,
            max_retries=settings.log_worker_max_retries,
        )


@dataclass
class LogWorkerStats:
    jobs_processed: int = 0
    jobs_succeeded: int = 0
    jobs_retried: int = 0
    jobs_dead_lettered: int = 0
    jobs_reclaimed: int = 0
    jobs_failed: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "jobs_processed": self.jobs_processed,
            "jobs_succeeded": self.jobs_succeeded,
            "jobs_retried": self.jobs_retried,
            "jobs_dead_lettered": self.jobs_dead_lettered,
            "jobs_reclaimed": self.jobs_reclaimed,
            "jobs_failed": self.jobs_failed,
            "last_error": self.last_error,
        }
