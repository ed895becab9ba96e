"""
JWT identity tokens for CivicMap.

The identity provider is opaque to CivicMap: whatever authenticated the
user, the API only sees a signed token whose 'sub' is the uid.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt, JWTError

from ..models import Identity
from ...core.config import settings


def create_access_token(
    uid: str,
    display_name: Optional[str] = None,
    photo_url: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        uid: Identity-provider user id, stored as 'sub'
        display_name: Optional name carried in the token
        photo_url: Optional avatar URL carried in the token
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string
    """
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))

    to_encode = {
        "sub": uid,
        "exp": expire,
        "iat": now,
        "type": "access",
    }
    if display_name:
        to_encode["name"] = display_name
    if photo_url:
        to_encode["picture"] = photo_url

    return jwt.encode(
        to_encode,
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM
    )


def verify_token(token: str, token_type: str = "access") -> Optional[dict]:
    """
    Verify and decode a JWT token.

    Returns:
        Decoded payload if valid, None if invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM]
        )
    except JWTError:
        return None

    if payload.get("type") != token_type:
        return None
    if not payload.get("sub"):
        return None
    return payload


def identity_from_token(token: str) -> Optional[Identity]:
    payload = verify_token(token)
    if payload is None:
        return None
    return Identity(
        uid=payload["sub"],
        display_name=payload.get("name"),
        photo_url=payload.get("picture"),
    )


def is_agent(uid: str) -> bool:
    """Municipal agents are the uids listed in AGENT_UIDS."""
    return uid in settings.AGENT_UIDS
