"""Message events for the analytics pipeline.

Every persisted message is appended to a Redis Stream (``chat:messages`` by
default) that analytics workers read through a consumer group. Entries are
flat string maps:

    messageId, chatId, senderId, timestamp (ISO 8601),
    hasImage / hasFile ("true" | "false"), fileType (MIME type or "none")

Publishing is best-effort: a failed append is logged and counted, never
raised. The message itself is already safe in the store.
"""
import logging
from typing import Dict, Optional

from redis.asyncio import Redis as AsyncRedis

from relay.store.schemas import Message, utc_now

logger = logging.getLogger(__name__)

DEFAULT_STREAM_KEY = "chat:messages"


def message_event(message: Message) -> Dict[str, str]:
    return {
        "messageId": message.id,
        "chatId": message.chatId,
        "senderId": message.senderId,
        "timestamp": utc_now().isoformat(),
        "hasImage": "true" if message.image else "false",
        "hasFile": "true" if message.file else "false",
        "fileType": (message.file.mimeType if message.file else None) or "none",
    }


class MessageEventStream:
    """Appends sent-message events to a Redis Stream."""

    def __init__(self, redis: AsyncRedis, key: str = DEFAULT_STREAM_KEY):
        self._redis = redis
        self.key = key
        self._publish_count = 0
        self._error_count = 0

    async def publish_sent(self, message: Message) -> Optional[str]:
        """Append one event for ``message``.

        Returns:
            The stream entry id, or None if the append failed.
        """
        try:
            entry_id = await self._redis.xadd(self.key, message_event(message))
            self._publish_count += 1
            logger.debug("[Stream] %s -> %s (%s)", message.id, self.key, entry_id)
            return entry_id
        except Exception as e:
            # Fire-and-forget: log error but don't fail the send
            self._error_count += 1
            logger.error("[Stream] Failed to append %s to %s: %s", message.id, self.key, e)
            return None

    def get_stats(self) -> Dict[str, int]:
        return {
            "publish_count": self._publish_count,
            "error_count": self._error_count,
        }
