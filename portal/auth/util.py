from __future__ import annotations

import base64
import hashlib
import hmac
import os


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def random_token(nbytes: int = 32) -> str:
    return b64url(os.urandom(nbytes))


def hash_token(token: str) -> str:
    """Stored form of a bearer token (e.g. password reset); the raw token is never persisted."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def tokens_match(expected: str | None, given: str | None) -> bool:
    if not expected or not given:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), given.encode("utf-8"))


def sanitize_next_path(next_path: str | None, fallback: str = "/") -> str:
    """
    Prevent open-redirects: allow only relative paths like `/account`.
    """
    p = (next_path or "").strip()
    if not p:
        return fallback
    if not p.startswith("/"):
        return fallback
    # Disallow scheme-relative: `//evil.com` (and the `/\evil.com` variant browsers accept).
    if p.startswith("//") or p.startswith("/\\"):
        return fallback
    p = p.replace("\r", "").replace("\n", "")
    return p or fallback
