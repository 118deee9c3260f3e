"""Broadcast en tiempo real de eventos de dispositivo (pub/sub + SSE)."""

from .bus import InMemoryPubSubBus, PubSubBus, RedisPubSubBus
from .events import (
    ConnectedEvent,
    NewSensorsEvent,
    StatusEvent,
    decode_event,
    device_channel,
    encode_event,
)
from .publisher import EventPublisher
from .subscriber import EventHub, Subscription

__all__ = [
    "InMemoryPubSubBus",
    "PubSubBus",
    "RedisPubSubBus",
    "ConnectedEvent",
    "NewSensorsEvent",
    "StatusEvent",
    "decode_event",
    "device_channel",
    "encode_event",
    "EventPublisher",
    "EventHub",
    "Subscription",
]
