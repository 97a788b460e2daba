"""
JWT authentication for WebSocket connections.

Tokens are HS256 JWTs issued by the REST API with ``userId`` and
``username`` claims.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from .config import config
from .exceptions import AuthenticationError

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME = timedelta(days=7)


@dataclass(frozen=True)
class AuthenticatedUser:
    """Identity resolved from a connection token."""

    user_id: int
    username: str


def authenticate(token: str | None) -> AuthenticatedUser:
    """
    Validate a connection token and return the user it identifies.

    Args:
        token: The JWT token string from the connection query

    Returns:
        AuthenticatedUser for a valid token

    Raises:
        AuthenticationError: if the token is missing, invalid or expired
    """
    if not token:
        raise AuthenticationError("missing token")

    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.warning("Token has expired")
        raise AuthenticationError("invalid token")
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token: {e}")
        raise AuthenticationError("invalid token")

    user_id = payload.get("userId")
    username = payload.get("username")
    if isinstance(user_id, bool) or not isinstance(user_id, int) or not username:
        logger.warning("Token payload is missing userId or username")
        raise AuthenticationError("invalid token")

    return AuthenticatedUser(user_id=user_id, username=str(username))


def create_token(
    user_id: int,
    username: str,
    expires_in: timedelta = DEFAULT_TOKEN_LIFETIME,
) -> str:
    """Issue a token with the same claims the REST API signs."""
    now = datetime.now(timezone.utc)
    payload = {
        "userId": user_id,
        "username": username,
        "iat": now,
        "exp": now + expires_in,
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)
