"""Cross-instance event bus.

Every server instance publishes envelopes to one shared channel and listens
on it. An envelope names its scope:

    connection  deliver to one connection handle (owned by one instance)
    room        deliver to every local connection joined to a chat room
    all         deliver to every local connection

Envelopes carry the publishing instance id; an instance ignores its own
publications because it already delivered them locally.

Design decisions:
- Publishing is fire-and-forget: failures are logged, never raised.
  Messages are safe in the store and recipients catch up on reconnect.
- Payloads are JSON; models are dumped before they reach the bus.
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional

from redis.asyncio import Redis as AsyncRedis

logger = logging.getLogger(__name__)

Envelope = Dict[str, Any]
EnvelopeHandler = Callable[[Envelope], Awaitable[None]]

SCOPE_CONNECTION = "connection"
SCOPE_ROOM = "room"
SCOPE_ALL = "all"


def make_envelope(
    origin: str,
    scope: str,
    event: str,
    data: Any,
    target: Optional[str] = None,
    recipient: Optional[str] = None,
) -> Envelope:
    envelope = {
        "origin": origin,
        "scope": scope,
        "target": target,
        "event": event,
        "data": data,
    }
    if recipient is not None:
        # newMessage to one connection: the owner promotes this user's record
        envelope["recipient"] = recipient
    return envelope


class EventBus(ABC):
    """Publish/subscribe transport between server instances."""

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        self._handler: Optional[EnvelopeHandler] = None
        self._publish_count = 0
        self._error_count = 0

    @abstractmethod
    async def start(self, handler: EnvelopeHandler) -> None:
        """Begin delivering envelopes from other instances to ``handler``."""

    @abstractmethod
    async def publish(self, envelope: Envelope) -> int:
        """Publish an envelope. Returns the receiver count, 0 on failure."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop listening and release resources."""

    def get_stats(self) -> Dict[str, int]:
        return {
            "publish_count": self._publish_count,
            "error_count": self._error_count,
        }

    async def _deliver(self, envelope: Envelope) -> None:
        if self._handler is None or envelope.get("origin") == self.instance_id:
            return
        try:
            await self._handler(envelope)
        except Exception as e:
            logger.error("[Bus] Handler failed for %s: %s", envelope.get("event"), e)


class RedisEventBus(EventBus):
    """Redis Pub/Sub on a single channel shared by all instances."""

    def __init__(self, redis: AsyncRedis, channel: str, instance_id: str):
        super().__init__(instance_id)
        self._redis = redis
        self._channel = channel
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None

    async def start(self, handler: EnvelopeHandler) -> None:
        self._handler = handler
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self._channel)
        self._listener = asyncio.create_task(self._listen())
        logger.info("[Bus] Instance %s subscribed to %s", self.instance_id, self._channel)

    async def _listen(self) -> None:
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                envelope = json.loads(message["data"])
            except (TypeError, ValueError) as e:
                logger.warning("[Bus] Dropping malformed envelope: %s", e)
                continue
            await self._deliver(envelope)

    async def publish(self, envelope: Envelope) -> int:
        payload = json.dumps(envelope)
        try:
            result: int = await self._redis.publish(self._channel, payload)
            self._publish_count += 1
            logger.debug(
                "[Bus] Published %s/%s to %s (subscribers: %s)",
                envelope.get("scope"), envelope.get("event"), self._channel, result,
            )
            return result
        except Exception as e:
            # Fire-and-forget: log error but don't fail the caller
            self._error_count += 1
            logger.error("[Bus] Failed to publish to %s: %s", self._channel, e)
            return 0

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
            self._pubsub = None
        logger.info("[Bus] Instance %s unsubscribed from %s", self.instance_id, self._channel)


class InMemoryHub:
    """Stands in for the shared channel when all instances share a process."""

    def __init__(self) -> None:
        self.buses: List["InMemoryEventBus"] = []


class InMemoryEventBus(EventBus):
    """In-process bus. Instances given the same hub see each other's events."""

    def __init__(self, instance_id: str, hub: Optional[InMemoryHub] = None):
        super().__init__(instance_id)
        self._hub = hub or InMemoryHub()

    async def start(self, handler: EnvelopeHandler) -> None:
        self._handler = handler
        if self not in self._hub.buses:
            self._hub.buses.append(self)

    async def publish(self, envelope: Envelope) -> int:
        # Round-trip through JSON so payloads look exactly as they would off Redis.
        wire = json.dumps(envelope)
        self._publish_count += 1
        receivers = list(self._hub.buses)
        for bus in receivers:
            await bus._deliver(json.loads(wire))
        return len(receivers)

    async def stop(self) -> None:
        if self in self._hub.buses:
            self._hub.buses.remove(self)
        self._handler = None
