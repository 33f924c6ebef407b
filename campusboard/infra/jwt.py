"""Access token helpers for the hosted auth provider.

Tokens are HS256 JWTs signed with the project secret. The subject claim is the
user id; the username, when present, lives in ``user_metadata``.
"""

from __future__ import annotations

import time
from typing import Any, Dict

import jwt
from jwt import InvalidTokenError

from campusboard.settings import settings


def _secret() -> str:
    if not settings.jwt_secret:
        raise InvalidTokenError("jwt_secret_not_configured")
    return settings.jwt_secret


def encode_access(payload: dict[str, object], *, ttl_seconds: int = 3600) -> str:
    """Encode an access token the way the auth provider issues them (used by tests and scripts)."""
    now = int(time.time())
    body: Dict[str, Any] = {"aud": settings.jwt_audience, "iat": now, "exp": now + ttl_seconds, "role": "authenticated"}
    body.update(payload)
    return jwt.encode(body, _secret(), algorithm="HS256")


def decode_access(token: str) -> dict[str, object]:
    """Decode and validate an access token.

    Raises jwt.InvalidTokenError subclasses on failure.
    """
    payload = jwt.decode(
        token,
        _secret(),
        algorithms=["HS256"],
        audience=settings.jwt_audience,
        leeway=5,
        options={"require": ["exp", "sub"]},
    )
    if not str(payload.get("sub") or "").strip():
        raise InvalidTokenError("missing_claim:sub")
    return payload
