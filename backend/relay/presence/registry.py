"""Presence registry: which connection handle each online user is reachable on.

The registry is a single key-value mapping shared by every server instance,
so any instance can resolve a user accepted by another one. Entries live
exactly as long as the connection: they are written on connect, removed on
disconnect, and never persisted anywhere durable.

One entry per user: a new connection overwrites the previous handle (last
connection wins). Writes take no lock; a stale entry only costs a real-time
delivery, which the replay-on-connect path recovers.
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional, Set

from redis.asyncio import Redis as AsyncRedis

logger = logging.getLogger(__name__)


class PresenceRegistry(ABC):
    """Contract for presence storage. No side effects beyond the mapping."""

    @abstractmethod
    async def set_online(self, user_id: str, connection_handle: str) -> None:
        """Record ``connection_handle`` for ``user_id``, replacing any prior entry."""

    @abstractmethod
    async def set_offline(self, user_id: str, connection_handle: Optional[str] = None) -> None:
        """Remove the user's entry. Removing an absent entry is a no-op.

        If ``connection_handle`` is given, the entry is only removed while it
        still points at that handle, so a slow disconnect of an old
        connection cannot erase a newer one.
        """

    @abstractmethod
    async def lookup(self, user_id: str) -> Optional[str]:
        """Connection handle for ``user_id``, or None if offline."""

    @abstractmethod
    async def list_online_users(self) -> Set[str]:
        """Ids of every user with a live connection on any instance."""

    @abstractmethod
    async def clear(self) -> None:
        """Drop every entry."""


class RedisPresenceRegistry(PresenceRegistry):
    """Presence stored in a Redis hash (``online_users`` by default)."""

    # Compare-and-delete so an old connection's disconnect can't drop a newer entry.
    _DELETE_IF_MATCHES = """
    if redis.call('HGET', KEYS[1], ARGV[1]) == ARGV[2] then
        return redis.call('HDEL', KEYS[1], ARGV[1])
    end
    return 0
    """

    def __init__(self, redis: AsyncRedis, key: str = "online_users"):
        self._redis = redis
        self._key = key

    async def set_online(self, user_id: str, connection_handle: str) -> None:
        await self._redis.hset(self._key, user_id, connection_handle)
        logger.debug("[Presence] %s online at %s", user_id, connection_handle)

    async def set_offline(self, user_id: str, connection_handle: Optional[str] = None) -> None:
        if connection_handle is None:
            await self._redis.hdel(self._key, user_id)
        else:
            await self._redis.eval(
                self._DELETE_IF_MATCHES, 1, self._key, user_id, connection_handle
            )
        logger.debug("[Presence] %s offline", user_id)

    async def lookup(self, user_id: str) -> Optional[str]:
        return await self._redis.hget(self._key, user_id)

    async def list_online_users(self) -> Set[str]:
        return set(await self._redis.hkeys(self._key))

    async def clear(self) -> None:
        # Cold start of a single instance only
        await self._redis.delete(self._key)


class InMemoryPresenceRegistry(PresenceRegistry):
    """Process-local presence for single-instance development and tests."""

    def __init__(self) -> None:
        self._entries: Dict[str, str] = {}

    async def set_online(self, user_id: str, connection_handle: str) -> None:
        self._entries[user_id] = connection_handle

    async def set_offline(self, user_id: str, connection_handle: Optional[str] = None) -> None:
        if connection_handle is not None and self._entries.get(user_id) != connection_handle:
            return
        self._entries.pop(user_id, None)

    async def lookup(self, user_id: str) -> Optional[str]:
        return self._entries.get(user_id)

    async def list_online_users(self) -> Set[str]:
        return set(self._entries)

    async def clear(self) -> None:
        self._entries.clear()
