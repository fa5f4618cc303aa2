"""Fan-out module: local and cross-instance event delivery."""

from .broadcaster import Broadcaster, instance_of, message_payload
from .bus import EventBus, InMemoryEventBus, InMemoryHub, RedisEventBus

__all__ = [
    "Broadcaster",
    "EventBus",
    "InMemoryEventBus",
    "InMemoryHub",
    "RedisEventBus",
    "instance_of",
    "message_payload",
]
