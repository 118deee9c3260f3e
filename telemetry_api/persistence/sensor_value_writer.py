"""Escritura masiva de valores de sensores.

Un solo INSERT multi-fila por lote (executemany) dentro de una
transacción. Append-only: no hay dedup, reenvíos del dispositivo
generan filas repetidas.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from sqlalchemy import insert
from sqlalchemy.engine import Engine

from common.schema import sensor_values

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedReading:
    """Lectura lista para persistir, ya mapeada a su group_sensor."""
    group_sensor_id: str
    timestamp: datetime
    value: float


class SensorValueWriter:

    def __init__(self, engine: Engine):
        self._engine = engine

    def write_many(self, readings: Sequence[ResolvedReading]) -> int:
        """Inserta todas las lecturas. Retorna la cantidad insertada."""
        if not readings:
            return 0

        rows = [
            {
                "group_sensor_id": r.group_sensor_id,
                "timestamp": r.timestamp,
                "value": r.value,
            }
            for r in readings
        ]

        with self._engine.begin() as conn:
            conn.execute(insert(sensor_values), rows)

        logger.debug("[SENSOR_VALUES] Inserted rows=%d", len(rows))
        return len(rows)
