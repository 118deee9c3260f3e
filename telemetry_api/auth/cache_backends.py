"""Backends de almacenamiento para la caché de autorización.

- RedisCacheBackend: producción, compartido entre procesos.
- InMemoryCacheBackend: fallback si Redis no está disponible (un proceso).
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis


class CacheBackend(ABC):
    """Key-value con TTL. Las escrituras sobrescriben sin condiciones."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        pass

    @abstractmethod
    async def expire(self, key: str, ttl_seconds: int) -> bool:
        """Extiende el TTL sin tocar el contenido. False si la clave no existe."""
        pass

    @property
    def backend_name(self) -> str:
        return type(self).__name__


class RedisCacheBackend(CacheBackend):

    def __init__(self, client: aioredis.Redis):
        self._client = client

    async def get(self, key: str) -> Optional[str]:
        raw = await self._client.get(key)
        if raw is None:
            return None
        if isinstance(raw, bytes):
            return raw.decode("utf-8")
        return str(raw)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        # SET con EX: valor y expiración en una sola operación atómica
        await self._client.set(key, value, ex=ttl_seconds)

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self._client.expire(key, ttl_seconds))


class InMemoryCacheBackend(CacheBackend):
    """Caché TTL en memoria del proceso.

    Args:
        clock: Reloj monotónico en segundos (inyectable para tests)
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[str, float]] = {}

    def _live(self, key: str) -> Optional[Tuple[str, float]]:
        item = self._data.get(key)
        if item is None:
            return None
        if item[1] <= self._clock():
            self._data.pop(key, None)
            return None
        return item

    async def get(self, key: str) -> Optional[str]:
        item = self._live(key)
        return item[0] if item is not None else None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._data[key] = (value, self._clock() + ttl_seconds)

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        item = self._live(key)
        if item is None:
            return False
        self._data[key] = (item[0], self._clock() + ttl_seconds)
        return True
