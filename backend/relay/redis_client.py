"""Async Redis client shared by the presence registry and the event bus.

One client per process; Pub/Sub subscriptions take their own connection
from the client's pool.
"""
import logging
from typing import Optional

from redis.asyncio import Redis as AsyncRedis

from relay.config import get_config

logger = logging.getLogger(__name__)

_async_redis_client: Optional[AsyncRedis] = None


def _mask_url(url: str) -> str:
    """Mask the password in a Redis URL for logging."""
    if "@" in url:
        auth_part, host_part = url.split("@", 1)
        if ":" in auth_part:
            scheme_user = auth_part.rsplit(":", 1)[0]
            return f"{scheme_user}:***@{host_part}"
    return url


def get_async_redis_client() -> AsyncRedis:
    """Get or create the async Redis client.

    Connections are opened lazily on first command, so creating the client
    never touches the network.
    """
    global _async_redis_client

    if _async_redis_client is None:
        config = get_config()
        redis_url = config.redis.url or "redis://localhost:6379/0"
        _async_redis_client = AsyncRedis.from_url(
            redis_url,
            password=config.secrets.redis.password,
            encoding="utf-8",
            decode_responses=True,
            health_check_interval=30,
        )
        logger.info("[Redis] Async client initialized for %s", _mask_url(redis_url))

    return _async_redis_client


async def close_async_redis_client() -> None:
    """Close the async Redis client gracefully."""
    global _async_redis_client

    if _async_redis_client is not None:
        await _async_redis_client.aclose()
        _async_redis_client = None
        logger.info("[Redis] Async client closed")
