"""EventHub - Distribución de eventos del bus a conexiones SSE.

Una sola suscripción al bus por proceso, con conteo de referencias por
canal: el canal ``device:{id}`` se suscribe al llegar la primera
conexión interesada y se desuscribe cuando se va la última.

Cada conexión recibe los eventos en su propia cola acotada. Si un
cliente lento la llena se descarta el evento más viejo; el lector del
bus nunca se bloquea por un cliente.

Si el bus falla, el lector reintenta con backoff exponencial y vuelve a
suscribir todos los canales activos.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Dict, Iterable, Optional, Set

from pydantic import ValidationError

from .bus import PubSubBus
from .events import connected_event, decode_event, device_channel, to_stream_payload

logger = logging.getLogger(__name__)


class Subscription:
    """Conexión de un cliente a uno o más canales de dispositivo."""

    def __init__(self, device_ids: Iterable[str], queue_size: int = 1000):
        self.id = uuid.uuid4().hex[:12]
        # dict para deduplicar manteniendo el orden pedido
        self.channels: Dict[str, str] = {
            device_channel(device_id): device_id for device_id in device_ids
        }
        self.dropped = 0
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, queue_size))

    @property
    def device_ids(self) -> list:
        return list(self.channels.values())

    def deliver(self, item: dict) -> None:
        """Encola sin bloquear; con la cola llena descarta el más viejo."""
        if self.closed:
            return
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            self.dropped += 1
            self._queue.put_nowait(item)

    async def get(self, timeout: float) -> Optional[dict]:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def pending(self) -> int:
        return self._queue.qsize()


class EventHub:

    def __init__(
        self,
        bus: PubSubBus,
        queue_size: int = 1000,
        poll_timeout: float = 1.0,
        reconnect_delay: float = 0.5,
        max_reconnect_delay: float = 30.0,
    ):
        self._bus = bus
        self._queue_size = queue_size
        self._poll_timeout = poll_timeout
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_delay = max_reconnect_delay

        self._routes: Dict[str, Set[Subscription]] = {}
        self._lock = asyncio.Lock()
        self._has_channels = asyncio.Event()
        self._running = False
        self._task: Optional[asyncio.Task] = None

        self._stats = {
            "events_received": 0,
            "events_delivered": 0,
            "events_invalid": 0,
            "reconnects": 0,
            "resubscribe_failures": 0,
        }

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("[SSE_HUB] Started bus=%s", self._bus.backend_name)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("[SSE_HUB] Stopped stats=%s", self._stats)

    # ------------------------------------------------------------------
    # Suscripciones
    # ------------------------------------------------------------------

    async def subscribe(self, device_ids: Iterable[str]) -> Subscription:
        """Registra una conexión y le encola un evento ``connected`` por canal.

        Raises:
            Exception del bus si no se pudo suscribir un canal nuevo. En ese
            caso la conexión no queda registrada.
        """
        subscription = Subscription(device_ids, queue_size=self._queue_size)

        async with self._lock:
            new_channels = [c for c in subscription.channels if not self._routes.get(c)]
            if new_channels:
                await self._bus.subscribe(*new_channels)

            for channel in subscription.channels:
                self._routes.setdefault(channel, set()).add(subscription)
            self._has_channels.set()

            # Antes de soltar el lock: ningún evento real puede adelantarse
            for channel, device_id in subscription.channels.items():
                subscription.deliver(to_stream_payload(connected_event(device_id), channel))

        logger.info(
            "[SSE_HUB] Subscribed sub=%s devices=%s new_channels=%d",
            subscription.id,
            subscription.device_ids,
            len(new_channels),
        )
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        async with self._lock:
            if subscription.closed:
                return
            subscription.closed = True

            orphaned = []
            for channel in subscription.channels:
                routes = self._routes.get(channel)
                if routes is None:
                    continue
                routes.discard(subscription)
                if not routes:
                    del self._routes[channel]
                    orphaned.append(channel)

            if not self._routes:
                self._has_channels.clear()

            if orphaned:
                try:
                    await self._bus.unsubscribe(*orphaned)
                except Exception as e:
                    # El lector resuscribe solo los canales vivos al reconectar
                    logger.warning("[SSE_HUB] Unsubscribe failed channels=%s err=%s", orphaned, e)

        logger.info(
            "[SSE_HUB] Unsubscribed sub=%s released_channels=%d dropped=%d",
            subscription.id,
            len(orphaned),
            subscription.dropped,
        )

    def active_channels(self) -> Set[str]:
        return set(self._routes)

    def subscriber_count(self, device_id: str) -> int:
        return len(self._routes.get(device_channel(device_id), ()))

    # ------------------------------------------------------------------
    # Lector del bus
    # ------------------------------------------------------------------

    async def _run_loop(self) -> None:
        delay = self._reconnect_delay
        resubscribe_pending = False
        while self._running:
            try:
                if resubscribe_pending:
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, self._max_reconnect_delay)
                    # Sin canales suscritos el bus no vuelve a fallar: se insiste aquí
                    resubscribe_pending = not await self._resubscribe()
                    continue

                if not self._has_channels.is_set():
                    await self._has_channels.wait()
                    continue

                message = await self._bus.get_message(timeout=self._poll_timeout)
                delay = self._reconnect_delay
                if message is None:
                    continue

                channel, payload = message
                self._dispatch(channel, payload)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    "[SSE_HUB] Bus error, reconnecting in %.1fs: %s", delay, e
                )
                resubscribe_pending = True

    async def _resubscribe(self) -> bool:
        async with self._lock:
            channels = list(self._routes)
            try:
                await self._bus.reset()
                if channels:
                    await self._bus.subscribe(*channels)
            except Exception as e:
                self._stats["resubscribe_failures"] += 1
                logger.warning(
                    "[SSE_HUB] Resubscribe failed channels=%d err=%s", len(channels), e
                )
                return False
            self._stats["reconnects"] += 1
            logger.info("[SSE_HUB] Resubscribed channels=%d", len(channels))
            return True

    def _dispatch(self, channel: str, payload: str) -> None:
        self._stats["events_received"] += 1

        routes = self._routes.get(channel)
        if not routes:
            return

        try:
            event = decode_event(payload)
        except ValidationError as e:
            self._stats["events_invalid"] += 1
            logger.warning(
                "[SSE_HUB] Invalid event dropped channel=%s errors=%d",
                channel,
                e.error_count(),
            )
            return

        item = to_stream_payload(event, channel)
        for subscription in list(routes):
            if channel in subscription.channels:
                subscription.deliver(item)
                self._stats["events_delivered"] += 1

    def get_stats(self) -> dict:
        return {
            **self._stats,
            "running": self._running,
            "bus": self._bus.backend_name,
            "channels": len(self._routes),
            "subscriptions": len({s.id for subs in self._routes.values() for s in subs}),
        }
