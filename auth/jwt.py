"""
Signed bearer tokens for dashboard staff.

Tokens are base64-encoded JSON payloads signed with HMAC-SHA256.
Secret key is loaded from ``config.jwt_secret`` (env var: ``JWT_SECRET``).
"""

from __future__ import annotations

import binascii
import hashlib
import hmac
import json
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import dataclass
from typing import Optional


class InvalidTokenError(ValueError):
    """Bearer token is malformed, forged or expired."""


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    role: str
    exp: int


def _sign(raw: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()


def create_token(
    user_id: str,
    role: str,
    *,
    secret: str,
    expiry_seconds: int,
    now: Optional[float] = None,
) -> str:
    """Create a signed token carrying ``user_id``, ``role`` and expiry."""
    issued = int(now if now is not None else time.time())
    raw = json.dumps(
        {"user_id": user_id, "role": role, "exp": issued + expiry_seconds},
        separators=(",", ":"),
    ).encode()
    return urlsafe_b64encode(raw).decode() + "." + _sign(raw, secret)


def verify_token(token: str, *, secret: str, now: Optional[float] = None) -> TokenClaims:
    """Return the token's claims or raise ``InvalidTokenError``."""
    payload_b64, sep, sig = token.partition(".")
    if not sep:
        raise InvalidTokenError("bad format")
    try:
        raw = urlsafe_b64decode(payload_b64.encode())
    except (binascii.Error, ValueError) as exc:
        raise InvalidTokenError("bad encoding") from exc
    if not hmac.compare_digest(sig, _sign(raw, secret)):
        raise InvalidTokenError("bad signature")

    payload = json.loads(raw)
    if payload.get("exp", 0) < (now if now is not None else time.time()):
        raise InvalidTokenError("token expired")
    return TokenClaims(user_id=payload["user_id"], role=payload.get("role", "client"), exp=payload["exp"])
