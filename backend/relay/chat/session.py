"""One ConnectionSession per live WebSocket.

State machine:

    CONNECTING --authenticate()--> AUTHENTICATED --activate()--> ACTIVE
         |                               |                          |
         +-------- bad token ------------+---- join failure --------+--> CLOSED

    - CONNECTING -> AUTHENTICATED: the credential verifies. A missing or
      invalid token closes the socket (1008) without accepting it.
    - AUTHENTICATED -> ACTIVE: presence registered and every chat room
      joined. Any failure here closes the socket (1011) and undoes
      presence, so a half-activated session is never visible.
    - On entering ACTIVE: "connected" frame, then the missed-messages batch,
      then an online-users broadcast.
    - ACTIVE handles joinChat / leaveChat / messageSeen frames.
    - ACTIVE -> CLOSED: transport disconnect; presence is cleared and the
      online-users list re-broadcast.

Frames are JSON: inbound ``{"type": ..., ...}``, outbound
``{"type": <event>, "data": <payload>}``.
"""
import logging
import uuid
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import WebSocket

from relay.auth.service import TokenVerifier
from relay.errors import AuthenticationError, RelayError, ValidationError

from .service import ChatService

logger = logging.getLogger(__name__)

# WebSocket close codes
CLOSE_NORMAL = 1000
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011


class SessionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    CLOSED = "closed"


class InvalidTransition(RuntimeError):
    pass


class ConnectionSession:
    """Authentication state, room membership and protocol events of one socket."""

    def __init__(self, websocket: WebSocket, service: ChatService, verifier: TokenVerifier):
        self.websocket = websocket
        self.service = service
        self.verifier = verifier
        self.state = SessionState.CONNECTING
        self.user_id: Optional[str] = None
        self.handle = service.broadcaster.new_handle(uuid.uuid4().hex)
        self._accepted = False

    def _require(self, *states: SessionState) -> None:
        if self.state not in states:
            raise InvalidTransition(
                f"Session {self.handle} is {self.state.value}, expected "
                f"{' or '.join(s.value for s in states)}"
            )

    @property
    def rooms(self):
        return self.service.broadcaster.rooms_of(self.handle)

    # =========================================================================
    # Transitions
    # =========================================================================

    async def authenticate(self, credential: Optional[str]) -> str:
        """CONNECTING -> AUTHENTICATED. Closes the socket on failure.

        Raises:
            AuthenticationError: Token missing or invalid.
        """
        self._require(SessionState.CONNECTING)
        try:
            self.user_id = self.verifier.verify_identity(credential)
        except AuthenticationError as e:
            logger.warning("[WS] Authentication failed for %s: %s", self.handle, e.message)
            await self._close_transport(CLOSE_POLICY_VIOLATION)
            self.state = SessionState.CLOSED
            raise
        self.state = SessionState.AUTHENTICATED
        return self.user_id

    async def activate(self) -> None:
        """AUTHENTICATED -> ACTIVE: accept, register presence, join rooms, replay."""
        self._require(SessionState.AUTHENTICATED)
        try:
            await self.websocket.accept()
            self._accepted = True
            await self.service.on_connect(self.user_id, self)
        except Exception as e:
            logger.error("[WS] Activation failed for %s (%s): %s", self.user_id, self.handle, e)
            await self.service.on_disconnect(self.user_id, self.handle)
            await self._close_transport(CLOSE_INTERNAL_ERROR)
            self.state = SessionState.CLOSED
            raise

        self.state = SessionState.ACTIVE
        await self.send("connected", {"userId": self.user_id, "handle": self.handle})
        await self.service.deliver_missed(self.user_id, self.handle)
        await self.service.broadcast_online_users()

    async def close(self, transport_closed: bool = False) -> None:
        """Any state -> CLOSED. Clears presence if the session got that far."""
        if self.state == SessionState.CLOSED:
            return
        was_registered = self.state == SessionState.ACTIVE
        self.state = SessionState.CLOSED

        if was_registered:
            await self.service.on_disconnect(self.user_id, self.handle)
            await self.service.broadcast_online_users()
        if not transport_closed:
            await self._close_transport(CLOSE_NORMAL)

    async def _close_transport(self, code: int) -> None:
        try:
            await self.websocket.close(code=code)
        except Exception as e:
            logger.debug("[WS] Close on %s failed: %s", self.handle, e)

    # =========================================================================
    # Outbound
    # =========================================================================

    async def send(self, event: str, data: Any) -> bool:
        """Send one event frame. Returns False if the socket is gone."""
        if self.state == SessionState.CLOSED or not self._accepted:
            return False
        try:
            await self.websocket.send_json({"type": event, "data": data})
            return True
        except Exception as e:
            logger.debug("[WS] Failed to send %s to %s: %s", event, self.handle, e)
            return False

    async def send_error(self, message: str) -> None:
        await self.send("error", {"message": message})

    # =========================================================================
    # Inbound (ACTIVE -> ACTIVE)
    # =========================================================================

    async def handle_event(self, frame: Dict[str, Any]) -> None:
        """Dispatch one inbound frame. Rejections go back as ``error`` frames."""
        if self.state != SessionState.ACTIVE or not self.user_id:
            await self.send_error("Session is not authenticated")
            return

        event_type = frame.get("type")
        logger.debug("[WS] %s received: type=%s", self.handle, event_type)
        try:
            if event_type == "joinChat":
                chat_id = self._required(frame, "chatId")
                self.service.join_chat(self.user_id, self.handle, chat_id)
            elif event_type == "leaveChat":
                chat_id = self._required(frame, "chatId")
                self.service.leave_chat(self.user_id, self.handle, chat_id)
            elif event_type == "messageSeen":
                message_id = self._required(frame, "messageId")
                chat_id = self._required(frame, "chatId")
                await self.service.mark_seen(message_id, chat_id, self.user_id)
            else:
                await self.send_error(f"Unknown event type: {event_type}")
        except RelayError as e:
            logger.info("[WS] %s rejected for %s: %s", event_type, self.user_id, e.message)
            await self.send_error(e.message)
        except Exception as e:
            logger.error("[WS] %s failed for %s: %s", event_type, self.user_id, e)
            await self.send_error("Internal error")

    @staticmethod
    def _required(frame: Dict[str, Any], key: str) -> str:
        value = frame.get(key)
        if not value:
            raise ValidationError(f"Missing field: {key}")
        return str(value)
