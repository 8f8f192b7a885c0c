"""
Bearer-token authentication shared by every protected route.

Tokens are HS256 JWTs carrying ``{id, role, iat, exp}``. This is the only
accepted scheme; the legacy ``"<id>-<role>"`` tokens are rejected like any
other malformed token.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import time
from typing import Any, Callable, Dict, Optional

from fastapi import Header, HTTPException

import settings

ROLES = ("user", "organizer", "admin")

_PBKDF2_ROUNDS = 200_000


class TokenError(Exception):
    pass


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _sign(msg: bytes, secret: str) -> str:
    return _b64url(hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).digest())


def issue_token(subject_id: str, role: str, secret: Optional[str] = None, ttl_days: Optional[int] = None) -> str:
    if role not in ROLES:
        raise ValueError(f"unknown role {role!r}")
    now = int(time.time())
    ttl = settings.JWT_TTL_DAYS if ttl_days is None else ttl_days
    header = {"alg": "HS256", "typ": "JWT"}
    payload = {"id": str(subject_id), "role": role, "iat": now, "exp": now + ttl * 86400}
    h = _b64url(json.dumps(header, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    p = _b64url(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    s = _sign(f"{h}.{p}".encode("utf-8"), secret or settings.JWT_SECRET)
    return f"{h}.{p}.{s}"


def decode_token(token: str, secret: Optional[str] = None) -> Dict[str, Any]:
    parts = (token or "").split(".")
    if len(parts) != 3:
        raise TokenError("malformed token")
    h, p, s = parts
    expected = _sign(f"{h}.{p}".encode("utf-8"), secret or settings.JWT_SECRET)
    if not hmac.compare_digest(expected, s):
        raise TokenError("bad signature")
    try:
        header = json.loads(_b64url_decode(h))
        claims = json.loads(_b64url_decode(p))
    except (ValueError, UnicodeDecodeError):
        raise TokenError("malformed token")
    if header.get("alg") != "HS256":
        raise TokenError("unsupported algorithm")
    if not isinstance(claims, dict) or not claims.get("id") or claims.get("role") not in ROLES:
        raise TokenError("missing claims")
    if int(claims.get("exp", 0)) <= int(time.time()):
        raise TokenError("token expired")
    return claims


def _bearer(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    return authorization.split(" ", 1)[1].strip()


def require_role(*roles: str) -> Callable[..., Dict[str, Any]]:
    """
    FastAPI dependency factory. ``Depends(require_role("admin"))`` yields the
    token claims or answers 401/403.
    """

    def _dependency(authorization: Optional[str] = Header(default=None)) -> Dict[str, Any]:
        token = _bearer(authorization)
        try:
            claims = decode_token(token)
        except TokenError:
            raise HTTPException(status_code=401, detail="Invalid token")
        if roles and claims["role"] not in roles:
            raise HTTPException(status_code=403, detail="Forbidden")
        return claims

    return _dependency


# Passwords

def hash_password(password: str) -> str:
    salt = os.urandom(16)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, _PBKDF2_ROUNDS)
    return f"pbkdf2_sha256${_PBKDF2_ROUNDS}${salt.hex()}${dk.hex()}"


def verify_password(password: str, stored: Optional[str]) -> bool:
    if not stored or not password:
        return False
    try:
        algo, rounds, salt_hex, dk_hex = stored.split("$")
    except ValueError:
        return False
    if algo != "pbkdf2_sha256":
        return False
    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt_hex), int(rounds))
    return hmac.compare_digest(dk.hex(), dk_hex)
