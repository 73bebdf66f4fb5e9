"""
Owner authentication.

Link owners call the management endpoints with an HS256 bearer JWT whose
subject is their user id.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from .errors import Unauthorized

ALG = "HS256"
TOKEN_TYPE = "owner"


def issue_owner_token(user_id: str, secret: str, ttl_minutes: int = 60,
                      now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "jti": uuid.uuid4().hex,
        "type": TOKEN_TYPE,
        "iat": now,
        "exp": now + timedelta(minutes=ttl_minutes),
    }
    return jwt.encode(payload, secret, algorithm=ALG)


def decode_owner_token(token: str, secret: str) -> str:
    """
    Verify a bearer token and return the owner's user id.

    Raises:
        Unauthorized: If the token is malformed, expired or not an owner token
    """
    try:
        payload = jwt.decode(token, secret, algorithms=[ALG], options={"require": ["sub", "exp"]})
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token has expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid token")
    if payload.get("type") != TOKEN_TYPE or not payload.get("sub"):
        raise Unauthorized("Invalid token")
    return str(payload["sub"])


def bearer_token(authorization: Optional[str]) -> str:
    """Extract the credential from an Authorization header."""
    if not authorization:
        raise Unauthorized()
    scheme, _, credential = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credential.strip():
        raise Unauthorized()
    return credential.strip()
