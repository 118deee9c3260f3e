"""Publicación de eventos de dispositivo en el bus."""

from __future__ import annotations

import logging

from .bus import PubSubBus
from .events import BroadcastEvent, describe_event, device_channel, encode_event

logger = logging.getLogger(__name__)


class EventPublisher:

    def __init__(self, bus: PubSubBus):
        self._bus = bus

    async def publish(self, device_id: str, event: BroadcastEvent) -> int:
        """Publica en ``device:{id}``. Retorna receptores alcanzados.

        Los errores del bus se propagan; el llamador decide si los ignora.
        """
        channel = device_channel(device_id)
        receivers = await self._bus.publish(channel, encode_event(event))
        logger.debug(
            "[BROADCAST] Published channel=%s receivers=%d %s",
            channel,
            receivers,
            describe_event(event),
        )
        return receivers
