from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Optional

from .config import AUTH_SECRET, TOKEN_TTL
from .errors import Unauthenticated


@dataclass(frozen=True)
class Identity:
    sub: str
    email: Optional[str] = None


def _sign(secret: str, b64: str) -> str:
    return hmac.new(
        secret.encode("utf-8"), b64.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def create_token(
    sub: str,
    email: Optional[str] = None,
    secret: str = AUTH_SECRET,
    ttl: int = TOKEN_TTL,
) -> str:
    if not secret:
        raise RuntimeError("auth secret not configured")
    payload = {
        "sub": sub,
        "email": email,
        "exp": int(time.time()) + max(0, ttl),
    }
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    b64 = base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")
    return f"{b64}.{_sign(secret, b64)}"


def verify_token(token: Optional[str], secret: str = AUTH_SECRET) -> Identity:
    if not token or not secret:
        raise Unauthenticated("Unauthorized")
    try:
        b64, sig = token.split(".", 1)
    except ValueError:
        raise Unauthenticated("Unauthorized") from None
    if not hmac.compare_digest(_sign(secret, b64), sig):
        raise Unauthenticated("Unauthorized")
    padded = b64 + "=" * (-len(b64) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("utf-8"))
        payload = json.loads(raw.decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        raise Unauthenticated("Unauthorized") from None
    if not isinstance(payload, dict):
        raise Unauthenticated("Unauthorized")
    sub = payload.get("sub")
    try:
        exp = int(payload.get("exp", 0))
    except (TypeError, ValueError):
        raise Unauthenticated("Unauthorized") from None
    if not isinstance(sub, str) or not sub:
        raise Unauthenticated("Unauthorized")
    if exp and time.time() > exp:
        raise Unauthenticated("Token expired")
    email = payload.get("email")
    return Identity(sub=sub, email=email if isinstance(email, str) else None)


def parse_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
