from __future__ import annotations

import time
from typing import Optional

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from .errors import Unauthenticated

ALGORITHM = "HS256"


def issue_token(user_id: str, secret: str, expires_in_s: Optional[float] = 3600.0) -> str:
    """Mint a bearer token. Identity is issued elsewhere in production; this is for tooling and tests."""
    claims = {"sub": user_id, "iat": int(time.time())}
    if expires_in_s is not None:
        claims["exp"] = int(time.time() + expires_in_s)
    return jwt.encode(claims, secret, algorithm=ALGORITHM)


def verify_token(token: str, secret: str) -> str:
    """Return the caller's user id from a valid token."""
    if not secret:
        raise Unauthenticated("token verification is not configured")
    try:
        decoded = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except ExpiredSignatureError as exc:
        raise Unauthenticated("token has expired") from exc
    except InvalidTokenError as exc:
        raise Unauthenticated("invalid token") from exc
    user_id = decoded.get("sub") or decoded.get("id")
    if not user_id:
        raise Unauthenticated("token has no subject")
    return str(user_id)


def user_from_authorization(header: Optional[str], secret: str) -> Optional[str]:
    """None when no credentials were sent; raises on malformed or invalid credentials."""
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthenticated("expected 'Authorization: Bearer <token>'")
    return verify_token(token.strip(), secret)
