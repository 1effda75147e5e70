"""
Signed bearer tokens.

A token is ``base64(JSON payload) + "." + hex(HMAC-SHA256(payload))`` keyed
by ``config.jwt_secret`` (env var: ``JWT_SECRET``).  The payload carries
``user_id`` and ``exp`` (unix seconds).
"""

from __future__ import annotations

import binascii
import hashlib
import hmac
import json
import time
from base64 import b64decode, b64encode
from typing import Optional

from config.settings import config


class AuthError(Exception):
    """Token malformed, badly signed or expired."""


def _sign(raw: bytes) -> str:
    return hmac.new(config.jwt_secret.encode(), raw, hashlib.sha256).hexdigest()


def create_token(user_id: str, expires_in: Optional[int] = None) -> str:
    """Create a signed token containing ``user_id`` and expiry."""
    payload = {
        "user_id": user_id,
        "exp": int(time.time()) + (expires_in if expires_in is not None else config.jwt_expiry_seconds),
    }
    raw = json.dumps(payload).encode()
    return b64encode(raw).decode() + "." + _sign(raw)


def verify_token(token: str) -> str:
    """Verify ``token`` and return its ``user_id``; raises ``AuthError``."""
    parts = token.split(".", 1)
    if len(parts) != 2:
        raise AuthError("bad format")
    try:
        raw = b64decode(parts[0], validate=True)
    except (binascii.Error, ValueError) as exc:
        raise AuthError("bad encoding") from exc
    if not hmac.compare_digest(parts[1], _sign(raw)):
        raise AuthError("bad signature")
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise AuthError("bad payload") from exc
    if payload.get("exp", 0) < time.time():
        raise AuthError("token expired")
    user_id = payload.get("user_id")
    if not user_id:
        raise AuthError("missing user_id")
    return str(user_id)
