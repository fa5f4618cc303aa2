"""Error taxonomy shared by the HTTP routers and the WebSocket session.

Each error carries the HTTP status code it maps to, so routers can turn it
into an ``HTTPException`` and sessions into an ``error`` frame without a
lookup table.
"""


class RelayError(Exception):
    """Base class for rejected operations."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthenticationError(RelayError):
    """Missing, malformed or expired credential. Terminal for a connection."""

    status_code = 401


class AuthorizationError(RelayError):
    """Caller is not allowed to act on the chat or message."""

    status_code = 403


class NotFoundError(RelayError):
    status_code = 404


class ValidationError(RelayError):
    status_code = 400
