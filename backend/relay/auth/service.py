"""Access-token verification using PyJWT.

The auth service signs HS256 tokens carrying a ``userId`` claim. The relay
only needs to turn a credential into a user id, or reject it.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Header, HTTPException

from relay.config import get_config
from relay.errors import AuthenticationError

logger = logging.getLogger(__name__)


class TokenVerifier:
    """Verifies access tokens signed with the shared secret."""

    def __init__(self, secret_key: str, algorithm: str = "HS256", expire_minutes: int = 60):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.expire_minutes = expire_minutes

    def verify_identity(self, credential: Optional[str]) -> str:
        """Return the user id carried by ``credential``.

        Raises:
            AuthenticationError: Token missing, malformed, expired, or
                without a ``userId`` claim.
        """
        if not credential:
            raise AuthenticationError("Unauthorized - No Token Provided")
        try:
            payload = jwt.decode(credential, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Unauthorized - Token Expired")
        except jwt.PyJWTError as e:
            logger.debug("[Auth] Token rejected: %s", e)
            raise AuthenticationError("Unauthorized - Invalid Token")

        user_id = payload.get("userId")
        if not user_id:
            raise AuthenticationError("Unauthorized - Invalid Token")
        return str(user_id)

    def create_access_token(self, user_id: str, expires_minutes: Optional[int] = None) -> str:
        """Sign a token the way the auth service does (local tooling and tests)."""
        minutes = self.expire_minutes if expires_minutes is None else expires_minutes
        to_encode = {
            "userId": user_id,
            "exp": datetime.now(timezone.utc) + timedelta(minutes=minutes),
        }
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)


_verifier: Optional[TokenVerifier] = None


def get_verifier() -> TokenVerifier:
    global _verifier
    if _verifier is None:
        config = get_config()
        _verifier = TokenVerifier(
            secret_key=config.secrets.jwt.secret_key,
            algorithm=config.auth.algorithm,
            expire_minutes=config.auth.token_expire_minutes,
        )
    return _verifier


def set_verifier(verifier: Optional[TokenVerifier]) -> None:
    global _verifier
    _verifier = verifier


async def current_user_id(authorization: Optional[str] = Header(None)) -> str:
    """FastAPI dependency resolving ``Authorization: Bearer <token>`` to a user id."""
    token = None
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
    try:
        return get_verifier().verify_identity(token)
    except AuthenticationError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
