"""Fan-out of chat events to live connections across server instances.

Each instance owns the connections it accepted. The broadcaster keeps:
    - handle -> local connection (anything with ``send(event, data)``)
    - chat room -> set of local handles joined to it

Events for a handle owned by this instance are sent directly; everything
else goes over the event bus, where the owning instance(s) pick it up and
deliver locally. Room and global broadcasts do both: local delivery plus
one bus publication for the other instances.

Connection handles are ``"<instance_id>/<uuid>"`` so the owner of a handle
can be read off it without a lookup.

Performance Notes:
    - Recipient resolution and sends run concurrently with asyncio.gather()
    - A failed local send is logged and treated as "not delivered"; the
      record stays "sent" and is replayed on the recipient's next connect
    - A message for a connection on another instance is promoted by that
      instance after its local send succeeds, never by the publisher
"""
import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from relay.delivery.tracker import DeliveryTracker
from relay.presence.registry import PresenceRegistry
from relay.store.schemas import Message
from relay.store.service import MessageStore

from .bus import (
    SCOPE_ALL,
    SCOPE_CONNECTION,
    SCOPE_ROOM,
    Envelope,
    EventBus,
    make_envelope,
)

logger = logging.getLogger(__name__)

EVENT_NEW_MESSAGE = "newMessage"
EVENT_MISSED_MESSAGES = "missedMessages"
EVENT_STATUS_UPDATE = "messageStatusUpdate"
EVENT_REACTION = "messageReaction"
EVENT_DELETED = "messageDeleted"
EVENT_UPDATED = "messageUpdated"
EVENT_ONLINE_USERS = "getOnlineUsers"


class LocalConnection(Protocol):
    handle: str

    async def send(self, event: str, data: Any) -> bool:
        ...


def instance_of(handle: str) -> str:
    """Instance id encoded in a connection handle."""
    return handle.split("/", 1)[0]


def message_payload(message: Message) -> Dict[str, Any]:
    return message.model_dump(mode="json")


class Broadcaster:
    """Routes events to connections on this and other instances."""

    def __init__(
        self,
        instance_id: str,
        presence: PresenceRegistry,
        bus: EventBus,
        store: MessageStore,
        tracker: Optional[DeliveryTracker] = None,
    ) -> None:
        self.instance_id = instance_id
        self.presence = presence
        self.bus = bus
        self.store = store
        self.tracker = tracker or DeliveryTracker(store)

        # handle -> local connection
        self.connections: Dict[str, LocalConnection] = {}

        # chat_id -> handles of local connections joined to that room
        self.rooms: Dict[str, Set[str]] = {}

    async def start(self) -> None:
        await self.bus.start(self.handle_envelope)

    async def stop(self) -> None:
        await self.bus.stop()

    def new_handle(self, connection_id: str) -> str:
        return f"{self.instance_id}/{connection_id}"

    def is_local(self, handle: str) -> bool:
        return instance_of(handle) == self.instance_id

    # -----------------------------------------------------------------------
    # Local connection and room bookkeeping
    # -----------------------------------------------------------------------

    def register(self, connection: LocalConnection) -> None:
        self.connections[connection.handle] = connection

    def unregister(self, handle: str) -> None:
        """Forget a local connection and drop it from every room."""
        self.connections.pop(handle, None)
        for chat_id in list(self.rooms):
            members = self.rooms[chat_id]
            members.discard(handle)
            if not members:
                del self.rooms[chat_id]

    def join_room(self, handle: str, chat_id: str) -> bool:
        """Join a local connection to a chat room. Returns False if already joined."""
        members = self.rooms.setdefault(chat_id, set())
        if handle in members:
            return False
        members.add(handle)
        return True

    def leave_room(self, handle: str, chat_id: str) -> None:
        members = self.rooms.get(chat_id)
        if not members:
            return
        members.discard(handle)
        if not members:
            del self.rooms[chat_id]

    def rooms_of(self, handle: str) -> Set[str]:
        return {chat_id for chat_id, members in self.rooms.items() if handle in members}

    # -----------------------------------------------------------------------
    # Emission
    # -----------------------------------------------------------------------

    async def _send_local(self, handle: str, event: str, data: Any) -> bool:
        connection = self.connections.get(handle)
        if connection is None:
            return False
        try:
            return await connection.send(event, data)
        except Exception as e:
            logger.debug("[Fanout] Failed to send %s to %s: %s", event, handle, e)
            return False

    async def _send_local_many(self, handles: Iterable[str], event: str, data: Any) -> None:
        handles = list(handles)
        if not handles:
            return
        await asyncio.gather(
            *[self._send_local(handle, event, data) for handle in handles],
            return_exceptions=True,
        )

    async def emit_to_connection(self, handle: str, event: str, data: Any) -> bool:
        """Send an event to one connection wherever it lives.

        Returns:
            True if the event was handed to the connection (local) or to at
            least one bus subscriber (remote).
        """
        if self.is_local(handle):
            return await self._send_local(handle, event, data)
        receivers = await self.bus.publish(
            make_envelope(self.instance_id, SCOPE_CONNECTION, event, data, target=handle)
        )
        return receivers > 0

    async def broadcast_to_chat_room(self, chat_id: str, event: str, payload: Any) -> None:
        """Emit to every connection currently joined to the chat's room.

        Room membership is whatever sessions joined, independent of the
        current roster.
        """
        await self._send_local_many(self.rooms.get(chat_id, set()).copy(), event, payload)
        await self.bus.publish(
            make_envelope(self.instance_id, SCOPE_ROOM, event, payload, target=chat_id)
        )

    async def broadcast_all(self, event: str, payload: Any) -> None:
        """Emit to every connection on every instance."""
        await self._send_local_many(list(self.connections), event, payload)
        await self.bus.publish(make_envelope(self.instance_id, SCOPE_ALL, event, payload))

    async def handle_envelope(self, envelope: Envelope) -> None:
        """Deliver an envelope published by another instance to local connections."""
        scope = envelope.get("scope")
        event = envelope.get("event")
        data = envelope.get("data")
        target = envelope.get("target")

        if scope == SCOPE_CONNECTION:
            if target and self.is_local(target):
                sent = await self._send_local(target, event, data)
                recipient = envelope.get("recipient")
                if sent and event == EVENT_NEW_MESSAGE and recipient:
                    self._promote_delivered(data.get("id"), recipient)
        elif scope == SCOPE_ROOM:
            await self._send_local_many(self.rooms.get(target, set()).copy(), event, data)
        elif scope == SCOPE_ALL:
            await self._send_local_many(list(self.connections), event, data)
        else:
            logger.warning("[Fanout] Unknown envelope scope: %s", scope)

    # -----------------------------------------------------------------------
    # Message fan-out
    # -----------------------------------------------------------------------

    def _promote_delivered(self, message_id: Optional[str], recipient_id: str) -> None:
        if not message_id:
            return
        try:
            self.tracker.promote_delivered(message_id, [recipient_id])
        except Exception as e:
            logger.error("[Fanout] Failed to promote %s for %s: %s", message_id, recipient_id, e)

    async def _dispatch_one(self, recipient_id: str, payload: Dict[str, Any]) -> bool:
        try:
            handle = await self.presence.lookup(recipient_id)
        except Exception as e:
            logger.error("[Fanout] Presence lookup failed for %s: %s", recipient_id, e)
            return False
        if not handle:
            # Offline: record stays "sent" until replay on reconnect
            return False
        if self.is_local(handle):
            return await self._send_local(handle, EVENT_NEW_MESSAGE, payload)
        await self.bus.publish(make_envelope(
            self.instance_id, SCOPE_CONNECTION, EVENT_NEW_MESSAGE, payload,
            target=handle, recipient=recipient_id,
        ))
        # The owning instance promotes once its socket took it
        return False

    async def dispatch(self, message: Message, recipients: Iterable[str]) -> List[str]:
        """Emit ``newMessage`` to each online recipient.

        No retries: a recipient that cannot be reached now gets the message
        through replay when it next connects.

        Returns:
            Ids of recipients reached on this instance, for promotion.
            Recipients on other instances are promoted by their owner.
        """
        recipient_ids = list(dict.fromkeys(recipients))
        if not recipient_ids:
            return []
        payload = message_payload(message)
        results = await asyncio.gather(
            *[self._dispatch_one(recipient_id, payload) for recipient_id in recipient_ids],
            return_exceptions=True,
        )
        online = [
            recipient_id for recipient_id, delivered in zip(recipient_ids, results)
            if delivered is True
        ]
        logger.info(
            "[Fanout] Message %s reached %d/%d recipients locally",
            message.id, len(online), len(recipient_ids),
        )
        return online

    def replay_missed(self, user_id: str) -> List[Message]:
        """Messages still "sent" for ``user_id`` across all chats, oldest first."""
        return self.store.find_pending(user_id)
