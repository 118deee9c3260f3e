"""Bus pub/sub para el broadcast de eventos por dispositivo.

- RedisPubSubBus: Redis PUB/SUB, compartido entre todas las réplicas.
- InMemoryPubSubBus: fallback de un solo proceso (dev/tests, o Redis caído).

Semántica best-effort: si nadie escucha el canal el mensaje se pierde.
La parte suscriptora usa una única conexión compartida por todo el
proceso (ver EventHub).
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional, Set, Tuple

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

BusMessage = Tuple[str, str]


def _decode(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class PubSubBus(ABC):

    @abstractmethod
    async def publish(self, channel: str, payload: str) -> int:
        """Publica y retorna cuántos receptores lo recibieron."""
        pass

    @abstractmethod
    async def subscribe(self, *channels: str) -> None:
        pass

    @abstractmethod
    async def unsubscribe(self, *channels: str) -> None:
        pass

    @abstractmethod
    async def get_message(self, timeout: float) -> Optional[BusMessage]:
        """Espera hasta ``timeout`` segundos por (canal, payload)."""
        pass

    @abstractmethod
    async def reset(self) -> None:
        """Descarta la conexión suscriptora actual (tras un error)."""
        pass

    async def close(self) -> None:
        pass

    @property
    def backend_name(self) -> str:
        return type(self).__name__


class RedisPubSubBus(PubSubBus):

    def __init__(self, client: aioredis.Redis):
        self._client = client
        self._pubsub = client.pubsub(ignore_subscribe_messages=True)

    async def publish(self, channel: str, payload: str) -> int:
        return int(await self._client.publish(channel, payload))

    async def subscribe(self, *channels: str) -> None:
        if channels:
            await self._pubsub.subscribe(*channels)

    async def unsubscribe(self, *channels: str) -> None:
        if channels:
            await self._pubsub.unsubscribe(*channels)

    async def get_message(self, timeout: float) -> Optional[BusMessage]:
        if not self._pubsub.subscribed:
            # get_message sin canales suscritos falla en redis-py
            await asyncio.sleep(timeout)
            return None

        message = await self._pubsub.get_message(
            ignore_subscribe_messages=True, timeout=timeout
        )
        if message is None or message.get("type") != "message":
            return None
        return _decode(message["channel"]), _decode(message["data"])

    async def reset(self) -> None:
        old = self._pubsub
        self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        try:
            await old.aclose()
        except Exception as e:
            logger.debug("[BUS] Error closing stale pubsub: %s", e)

    async def close(self) -> None:
        await self._pubsub.aclose()


class InMemoryPubSubBus(PubSubBus):

    def __init__(self):
        self._channels: Set[str] = set()
        self._queue: asyncio.Queue = asyncio.Queue()

    async def publish(self, channel: str, payload: str) -> int:
        if channel not in self._channels:
            return 0
        self._queue.put_nowait((channel, payload))
        return 1

    async def subscribe(self, *channels: str) -> None:
        self._channels.update(channels)

    async def unsubscribe(self, *channels: str) -> None:
        self._channels.difference_update(channels)

    async def get_message(self, timeout: float) -> Optional[BusMessage]:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def reset(self) -> None:
        pass

    @property
    def subscribed_channels(self) -> Set[str]:
        return set(self._channels)
