"""Colas de jobs de ingesta.

- RedisStreamJobQueue: Redis Streams con consumer group (varios workers).
- InMemoryJobQueue: fallback de un proceso.

Las dos exponen la misma interfaz: enqueue / fetch / reclaim / ack /
retry / dead_letter.
"""

from __future__ import annotations

import asyncio
import json
import logging
import socket
import time
import uuid
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import ResponseError

from ..pipeline.models import DeviceLogRequest
from .models import LogJob

logger = logging.getLogger(__name__)


def _decode(value) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


class LogJobQueue(ABC):

    async def ensure_ready(self) -> None:
        pass

    @abstractmethod
    async def enqueue(self, request: DeviceLogRequest, attempts: int = 0) -> str:
        pass

    @abstractmethod
    async def fetch(self, count: int, block_ms: int) -> List[LogJob]:
        pass

    @abstractmethod
    async def ack(self, job: LogJob) -> None:
        pass

    @abstractmethod
    async def dead_letter(self, job: LogJob, error: str) -> None:
        pass

    async def reclaim(self, count: int, min_idle_ms: int) -> List[LogJob]:
        """Recupera jobs entregados pero nunca confirmados (worker caído)."""
        return []

    async def retry(self, job: LogJob) -> str:
        """Re-encola con un intento más y confirma el mensaje original."""
        job_id = await self.enqueue(job.request, attempts=job.attempts + 1)
        await self.ack(job)
        return job_id

    @property
    def backend_name(self) -> str:
        return type(self).__name__


class RedisStreamJobQueue(LogJobQueue):

    def __init__(
        self,
        client: aioredis.Redis,
        stream: str,
        group: str,
        dead_letter_stream: str,
        consumer_name: Optional[str] = None,
        max_len: int = 100000,
    ):
        self._client = client
        self._stream = stream
        self._group = group
        self._dead_letter_stream = dead_letter_stream
        self._consumer = consumer_name or f"{socket.gethostname()}-{uuid.uuid4().hex[:6]}"
        self._max_len = max_len

    async def ensure_ready(self) -> None:
        try:
            await self._client.xgroup_create(self._stream, self._group, id="0", mkstream=True)
            logger.info("[LOG_QUEUE] Created group=%s stream=%s", self._group, self._stream)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def enqueue(self, request: DeviceLogRequest, attempts: int = 0) -> str:
        job = LogJob(job_id="", request=request, attempts=attempts)
        msg_id = await self._client.xadd(
            self._stream,
            job.to_fields(),
            maxlen=self._max_len,
            approximate=True,
        )
        return _decode(msg_id)

    async def fetch(self, count: int, block_ms: int) -> List[LogJob]:
        response = await self._client.xreadgroup(
            self._group,
            self._consumer,
            {self._stream: ">"},
            count=count,
            block=block_ms,
        )
        jobs = []
        for _stream, messages in response or []:
            jobs.extend(await self._parse_messages(messages))
        return jobs

    async def reclaim(self, count: int, min_idle_ms: int) -> List[LogJob]:
        """XAUTOCLAIM de entradas pendientes de cualquier consumer del grupo.

        Cubre workers que murieron (o fallaron al confirmar) con jobs en su PEL.
        """
        response = await self._client.xautoclaim(
            self._stream,
            self._group,
            self._consumer,
            min_idle_time=min_idle_ms,
            start_id="0-0",
            count=count,
        )
        # Redis >= 7 agrega la lista de ids borrados como tercer elemento
        messages = response[1] if response else []
        jobs = await self._parse_messages(messages)
        if jobs:
            logger.warning("[LOG_QUEUE] Reclaimed stale jobs count=%d", len(jobs))
        return jobs

    async def _parse_messages(self, messages) -> List[LogJob]:
        jobs = []
        for msg_id, data in messages:
            msg_id = _decode(msg_id)
            if data is None:
                # Entrada borrada del stream pero aún en el PEL
                await self._client.xack(self._stream, self._group, msg_id)
                continue
            fields = {_decode(k): _decode(v) for k, v in data.items()}
            try:
                jobs.append(LogJob.from_fields(msg_id, fields))
            except (ValidationError, KeyError, ValueError) as e:
                await self._dead_letter_raw(msg_id, fields, f"malformed job: {e}")
        return jobs

    async def ack(self, job: LogJob) -> None:
        await self._client.xack(self._stream, self._group, job.job_id)
        await self._client.xdel(self._stream, job.job_id)

    async def dead_letter(self, job: LogJob, error: str) -> None:
        await self._client.xadd(
            self._dead_letter_stream,
            {
                "original_id": job.job_id,
                "payload": json.dumps(job.request.redacted()),
                "error": error[:1000],
                "attempts": str(job.attempts),
                "failed_at": str(time.time()),
            },
            maxlen=self._max_len,
            approximate=True,
        )
        await self.ack(job)

    async def _dead_letter_raw(self, msg_id: str, fields: Dict[str, str], error: str) -> None:
        logger.warning("[LOG_QUEUE] Malformed job msg_id=%s err=%s", msg_id, error)
        await self._client.xadd(
            self._dead_letter_stream,
            {
                "original_id": msg_id,
                # Sin parsear no se puede redactar la credencial: no se copia
                "payload": "",
                "error": error[:1000],
                "attempts": fields.get("attempts", "0"),
                "failed_at": str(time.time()),
            },
            maxlen=self._max_len,
            approximate=True,
        )
        await self._client.xack(self._stream, self._group, msg_id)
        await self._client.xdel(self._stream, msg_id)


class InMemoryJobQueue(LogJobQueue):

    def __init__(self, max_size: int = 10000):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_size)
        self.dead_letters: List[dict] = []
        self.acked: List[str] = []

    async def enqueue(self, request: DeviceLogRequest, attempts: int = 0) -> str:
        job = LogJob(job_id=uuid.uuid4().hex, request=request, attempts=attempts)
        # QueueFull se propaga: el endpoint cae a ingesta síncrona
        self._queue.put_nowait(job)
        return job.job_id

    async def fetch(self, count: int, block_ms: int) -> List[LogJob]:
        try:
            first = await asyncio.wait_for(self._queue.get(), timeout=block_ms / 1000)
        except asyncio.TimeoutError:
            return []

        jobs = [first]
        while len(jobs) < count:
            try:
                jobs.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        return jobs

    async def ack(self, job: LogJob) -> None:
        self.acked.append(job.job_id)

    async def dead_letter(self, job: LogJob, error: str) -> None:
        self.dead_letters.append(
            {
                "original_id": job.job_id,
                "payload": job.request.redacted(),
                "error": error,
                "attempts": job.attempts,
            }
        )
        await self.ack(job)

    def qsize(self) -> int:
        return self._queue.qsize()
