"""Métricas de uso por cuenta (contadores por bucket de tiempo).

La métrica principal es SENSOR_VALUES_PER_MINUTE: cantidad de valores
ingeridos por usuario en cada minuto. Los errores se loguean y nunca
llegan al llamador: una métrica perdida no debe fallar una ingesta.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from ..repository.device_repository import DeviceRepository
from ..repository.executor import run_blocking

logger = logging.getLogger(__name__)

SENSOR_VALUES_PER_MINUTE = "SENSOR_VALUES_PER_MINUTE"


def metric_bucket(name: str, now: Optional[datetime] = None) -> datetime:
    """Trunca ``now`` a la granularidad que indica el sufijo de la métrica."""
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    if name.endswith("_PER_DAY"):
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if name.endswith("_PER_HOUR"):
        return now.replace(minute=0, second=0, microsecond=0)
    return now.replace(second=0, microsecond=0)


class MetricsRecorder:

    def __init__(self, repository: DeviceRepository):
        self._repository = repository

    async def record(
        self,
        name: str,
        user_id: str,
        amount: int,
        now: Optional[datetime] = None,
    ) -> bool:
        if amount <= 0:
            return True
        bucket = metric_bucket(name, now)
        try:
            await run_blocking(self._repository.record_metric, name, user_id, amount, bucket)
            return True
        except Exception as e:
            logger.warning(
                "[METRICS] record failed name=%s user_id=%s amount=%d err=%s",
                name,
                user_id,
                amount,
                e,
            )
            return False
