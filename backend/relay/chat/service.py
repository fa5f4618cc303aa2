"""Chat service: the operations the transport and HTTP layers call into.

Send path ordering, per chat:
    1. persist the message with one "sent" record per recipient
    2. fan out to online recipients
    3. promote the recipients reached on this instance to "delivered";
       instances owning the other recipients' connections promote those

Persistence is the success criterion of a send. Anything that goes wrong
after step 1 is logged and swallowed; affected recipients stay "sent" and
receive the message in their missed-messages batch on next connect.

Connect path: register presence, join a room per chat, then replay every
message still "sent" for the user in one batch and promote those records.
"""
import logging
import uuid
from typing import List, Optional

from relay.analytics.stream import MessageEventStream
from relay.config import AppSettings, get_config
from relay.delivery.tracker import DeliveryTracker
from relay.errors import AuthorizationError, NotFoundError, ValidationError
from relay.fanout.broadcaster import (
    EVENT_DELETED,
    EVENT_MISSED_MESSAGES,
    EVENT_ONLINE_USERS,
    EVENT_REACTION,
    EVENT_STATUS_UPDATE,
    EVENT_UPDATED,
    Broadcaster,
    LocalConnection,
    message_payload,
)
from relay.fanout.bus import InMemoryEventBus, RedisEventBus
from relay.presence.registry import (
    InMemoryPresenceRegistry,
    PresenceRegistry,
    RedisPresenceRegistry,
)
from relay.redis_client import get_async_redis_client
from relay.store.roster import ChatRoster
from relay.store.schemas import DeliveryState, Message, MessageContent
from relay.store.service import MessageStore

logger = logging.getLogger(__name__)


class ChatService:
    """Message delivery, presence lifecycle and message mutations."""

    def __init__(
        self,
        store: MessageStore,
        roster: ChatRoster,
        tracker: DeliveryTracker,
        presence: PresenceRegistry,
        broadcaster: Broadcaster,
        stream: Optional[MessageEventStream] = None,
    ) -> None:
        self.store = store
        self.roster = roster
        self.tracker = tracker
        self.presence = presence
        self.broadcaster = broadcaster
        self.stream = stream

    # =========================================================================
    # Sending
    # =========================================================================

    async def send_message(self, chat_id: str, sender_id: str, content: MessageContent) -> Message:
        """Persist, initialize delivery, fan out, and promote reached recipients.

        Returns:
            The message with the status that resulted from this dispatch.

        Raises:
            ValidationError: Empty content.
            NotFoundError: Chat does not exist.
            AuthorizationError: Sender is not a participant.
        """
        if content.is_empty():
            raise ValidationError("Message must have text or an attachment")
        chat = self.roster.require_participant(chat_id, sender_id)

        if content.clientMessageId:
            existing = self.store.find_by_client_id(sender_id, content.clientMessageId)
            if existing is not None:
                logger.info(
                    "[Chat] Duplicate send %s from %s, returning %s",
                    content.clientMessageId, sender_id, existing.id,
                )
                return existing

        message = Message(
            id=str(uuid.uuid4()),
            chatId=chat_id,
            senderId=sender_id,
            text=content.text,
            image=content.image,
            file=content.file if content.file and content.file.url else None,
            clientMessageId=content.clientMessageId,
        )
        recipients = [uid for uid in chat.participant_ids() if uid != sender_id]
        self.tracker.initialize(message, recipients)
        self.store.append(message)
        if self.stream is not None:
            await self.stream.publish_sent(message)

        try:
            online = await self.broadcaster.dispatch(message, recipients)
            if online:
                self.tracker.promote_delivered(message.id, online)
            self.tracker.recompute_aggregate_status(message)
        except Exception as e:
            logger.error("[Chat] Fan-out failed for message %s: %s", message.id, e)

        return message

    async def mark_seen(self, message_id: str, chat_id: str, user_id: str) -> Optional[DeliveryState]:
        """Mark a message seen by ``user_id`` and tell the chat room.

        Returns:
            The message's aggregate status, or None if ``user_id`` has no
            delivery record on it (e.g. the sender).
        """
        message = self.store.get_message(message_id)
        if message is None or message.chatId != chat_id:
            raise NotFoundError("Message not found")
        self.roster.require_participant(chat_id, user_id)
        if message.record_for(user_id) is None:
            return None

        self.tracker.promote_seen(message_id, user_id)
        status = self.store.get_aggregate_status(message_id)

        try:
            await self.broadcaster.broadcast_to_chat_room(chat_id, EVENT_STATUS_UPDATE, {
                "messageId": message_id,
                "userId": user_id,
                "status": DeliveryState.SEEN.value,
            })
        except Exception as e:
            logger.error("[Chat] Failed to broadcast seen for %s: %s", message_id, e)
        return status

    # =========================================================================
    # Presence lifecycle
    # =========================================================================

    async def on_connect(self, user_id: str, connection: LocalConnection) -> List[str]:
        """Register presence and join the connection to a room per chat.

        Returns:
            The chat ids joined.
        """
        self.broadcaster.register(connection)
        await self.presence.set_online(user_id, connection.handle)
        chat_ids = self.roster.chats_for_user(user_id)
        for chat_id in chat_ids:
            self.broadcaster.join_room(connection.handle, chat_id)
        logger.info(
            "[Chat] User %s connected at %s, joined %d rooms",
            user_id, connection.handle, len(chat_ids),
        )
        return chat_ids

    async def deliver_missed(self, user_id: str, handle: str) -> List[Message]:
        """Replay every message still "sent" for the user, then promote them.

        The whole backlog goes out as one ``missedMessages`` event. Records
        are promoted only once that event was handed to the connection.
        """
        try:
            missed = self.broadcaster.replay_missed(user_id)
            if not missed:
                return []
            delivered = await self.broadcaster.emit_to_connection(
                handle, EVENT_MISSED_MESSAGES, [message_payload(m) for m in missed]
            )
            if not delivered:
                logger.warning("[Chat] Missed-message batch to %s was not delivered", handle)
                return []

            for message in missed:
                if self.tracker.promote_delivered(message.id, [user_id]):
                    await self.broadcaster.broadcast_to_chat_room(message.chatId, EVENT_STATUS_UPDATE, {
                        "messageId": message.id,
                        "userId": user_id,
                        "status": DeliveryState.DELIVERED.value,
                    })
            logger.info("[Chat] Replayed %d missed messages to %s", len(missed), user_id)
            return missed
        except Exception as e:
            logger.error("[Chat] Replay failed for %s: %s", user_id, e)
            return []

    async def on_disconnect(self, user_id: str, handle: str) -> None:
        """Drop the connection's presence entry and local room memberships."""
        self.broadcaster.unregister(handle)
        try:
            await self.presence.set_offline(user_id, handle)
        except Exception as e:
            logger.error("[Chat] Failed to clear presence for %s: %s", user_id, e)
        logger.info("[Chat] User %s disconnected from %s", user_id, handle)

    async def broadcast_online_users(self) -> List[str]:
        try:
            online = sorted(await self.presence.list_online_users())
            await self.broadcaster.broadcast_all(EVENT_ONLINE_USERS, online)
            return online
        except Exception as e:
            logger.error("[Chat] Failed to broadcast online users: %s", e)
            return []

    def join_chat(self, user_id: str, handle: str, chat_id: str) -> bool:
        """Join a chat room after creation or invitation. Participants only."""
        self.roster.require_participant(chat_id, user_id)
        joined = self.broadcaster.join_room(handle, chat_id)
        if joined:
            logger.info("[Chat] User %s joined room %s", user_id, chat_id)
        return joined

    def leave_chat(self, user_id: str, handle: str, chat_id: str) -> None:
        self.broadcaster.leave_room(handle, chat_id)
        logger.info("[Chat] User %s left room %s", user_id, chat_id)

    # =========================================================================
    # History and mutations
    # =========================================================================

    def get_messages(self, chat_id: str, user_id: str) -> List[Message]:
        self.roster.require_participant(chat_id, user_id)
        return self.store.find_by_chat(chat_id, ascending=True)

    def _own_message(self, message_id: str, user_id: str, action: str) -> Message:
        message = self.store.get_message(message_id)
        if message is None:
            raise NotFoundError("Message not found")
        if message.senderId != user_id:
            raise AuthorizationError(f"Only the sender can {action} this message")
        return message

    async def toggle_reaction(self, message_id: str, user_id: str, emoji: str) -> Message:
        """Add the (user, emoji) reaction, or remove it if already present."""
        if not emoji:
            raise ValidationError("Emoji is required")
        message = self.store.get_message(message_id)
        if message is None:
            raise NotFoundError("Message not found")
        self.roster.require_participant(message.chatId, user_id)

        self.store.toggle_reaction(message_id, user_id, emoji)
        message = self.store.get_message(message_id)
        await self._broadcast_quietly(message.chatId, EVENT_REACTION, message_payload(message))
        return message

    async def edit_message(self, message_id: str, user_id: str, text: str) -> Message:
        if not text:
            raise ValidationError("Message text cannot be empty")
        self._own_message(message_id, user_id, "edit")
        self.store.update_text(message_id, text)
        message = self.store.get_message(message_id)
        await self._broadcast_quietly(message.chatId, EVENT_UPDATED, message_payload(message))
        return message

    async def delete_message(self, message_id: str, user_id: str) -> str:
        message = self._own_message(message_id, user_id, "delete")
        self.store.delete_message(message_id)
        await self._broadcast_quietly(message.chatId, EVENT_DELETED, {"messageId": message_id})
        return message_id

    async def _broadcast_quietly(self, chat_id: str, event: str, payload) -> None:
        try:
            await self.broadcaster.broadcast_to_chat_room(chat_id, event, payload)
        except Exception as e:
            logger.error("[Chat] Failed to broadcast %s to chat %s: %s", event, chat_id, e)


def build_chat_service(config: Optional[AppSettings] = None) -> ChatService:
    """Wire store, presence, bus and broadcaster according to configuration."""
    config = config or get_config()
    instance_id = uuid.uuid4().hex[:12]

    store = MessageStore.get_instance(config.store.db_path)
    tracker = DeliveryTracker(store)
    stream = None
    if config.redis.backend == "redis":
        redis = get_async_redis_client()
        presence = RedisPresenceRegistry(redis, key=config.redis.presence_key)
        bus = RedisEventBus(redis, f"{config.redis.channel_prefix}:events", instance_id)
        if config.redis.message_stream:
            stream = MessageEventStream(redis, key=config.redis.message_stream)
    else:
        presence = InMemoryPresenceRegistry()
        bus = InMemoryEventBus(instance_id)

    broadcaster = Broadcaster(instance_id, presence, bus, store, tracker)
    logger.info(
        "[Chat] Service built (instance=%s, backend=%s, store=%s)",
        instance_id, config.redis.backend, config.store.db_path,
    )
    return ChatService(
        store=store,
        roster=ChatRoster(store),
        tracker=tracker,
        presence=presence,
        broadcaster=broadcaster,
        stream=stream,
    )


_service: Optional[ChatService] = None


def get_chat_service() -> ChatService:
    """Return the process-wide ChatService, building it from config on first use."""
    global _service
    if _service is None:
        _service = build_chat_service()
    return _service


def set_chat_service(service: Optional[ChatService]) -> None:
    global _service
    _service = service
