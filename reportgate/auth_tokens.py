from __future__ import annotations

import os
import time
from typing import Dict, Optional, Tuple

import jwt


ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")
DEFAULT_ACCESS_TTL = int(os.environ.get("JWT_ACCESS_TTL", "3600"))


class TokenError(Exception):
    """Raised when an identity token cannot be validated."""


def _now() -> int:
    return int(time.time())


def _secret() -> str:
    secret = os.environ.get("JWT_SECRET")
    if secret:
        return secret
    return "dev-secret-key-change-me-before-deploying"


def create_identity_token(
    *,
    email: str,
    subject: Optional[str] = None,
    ttl: Optional[int] = None,
) -> Tuple[str, int]:
    """Issue a token the way the identity provider does. Used by tooling and tests."""
    lifetime = ttl or DEFAULT_ACCESS_TTL
    issued_at = _now()
    payload: Dict[str, object] = {
        "sub": subject or email,
        "email": email,
        "iat": issued_at,
        "exp": issued_at + lifetime,
        "typ": "access",
    }
    token = jwt.encode(payload, _secret(), algorithm=ALGORITHM)
    if isinstance(token, bytes):
        token = token.decode("utf-8")
    return token, payload["exp"]


def decode_identity_token(token: str) -> Dict[str, object]:
    try:
        payload = jwt.decode(token, _secret(), algorithms=[ALGORITHM])
    except jwt.PyJWTError as exc:
        raise TokenError(str(exc)) from exc
    if payload.get("typ") not in (None, "access"):
        raise TokenError("Invalid token type for identity token")
    return payload


def requester_email(payload: Dict[str, object]) -> Optional[str]:
    """Email of the verified caller: the ``email`` claim, else an email-shaped ``sub``."""
    for claim in ("email", "sub"):
        value = payload.get(claim)
        if isinstance(value, str) and "@" in value:
            return value.strip()
    return None


__all__ = [
    "TokenError",
    "create_identity_token",
    "decode_identity_token",
    "requester_email",
]
