"""Relay Backend Application.

This is the main entry point for the Relay chat backend. Several instances
can run side by side behind a load balancer; they share presence and
exchange events through Redis, and persist messages through the store.

Modules:
    - chat: WebSocket sessions, send path and message endpoints
    - fanout: local connections, chat rooms and the cross-instance bus
    - presence: user -> live connection registry
    - delivery: per-recipient delivery state
    - store: DuckDB-backed chats and messages
    - auth: access token verification
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from relay.chat.chats_router import router as chats_router
from relay.chat.router import router as chat_router
from relay.chat.service import get_chat_service, set_chat_service
from relay.config import get_config
from relay.redis_client import close_async_redis_client
from relay.store.service import MessageStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "urllib3",
    "httpx",
    "httpcore",
    "websockets",
    "uvicorn.access",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    service = get_chat_service()

    if config.redis.clear_presence_on_startup:
        await service.presence.clear()
        logger.info("Presence registry cleared on startup")

    await service.broadcaster.start()
    logger.info(
        "Relay instance %s running on http://%s:%s",
        service.broadcaster.instance_id,
        config.server.host,
        config.server.port,
    )

    yield  # Application runs here

    # Shutdown: this instance's connections are gone with it
    for handle, connection in list(service.broadcaster.connections.items()):
        user_id = getattr(connection, "user_id", None)
        if user_id:
            await service.on_disconnect(user_id, handle)
    await service.broadcaster.stop()
    if config.redis.backend == "redis":
        await close_async_redis_client()
    MessageStore.reset_instance()
    set_chat_service(None)
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Relay API",
    description="Message delivery and presence backend for real-time chat",
    version="0.1.0",
    lifespan=lifespan,
)

# Register all routers
app.include_router(chat_router)
app.include_router(chats_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object with the presence/bus backend in use.
    """
    return {"status": "ok", "backend": get_config().redis.backend}
