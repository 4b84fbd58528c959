from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, FrozenSet, MutableMapping, Optional

from fastapi import Request

from portal.auth.util import random_token, tokens_match
from portal.core.errors import CsrfMismatch
from portal.core.namespace import Namespace

CSRF_SESSION_KEY = "portal.csrf"
CSRF_FORM_FIELD = "_csrf"
CSRF_HEADERS = ("x-csrf-token", "x-xsrf-token")
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})

_FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


@dataclass(frozen=True)
class CsrfPolicy:
    """
    Decides which physical paths skip anti-forgery verification.

    Only the file-upload submission endpoint is exempt: some multipart upload
    clients cannot carry the token.
    """

    exempt_paths: FrozenSet[str] = frozenset()

    @classmethod
    def for_namespace(cls, ns: Namespace) -> "CsrfPolicy":
        return cls(exempt_paths=frozenset({ns.resolve("/api/upload")}))

    def is_exempt(self, physical_path: str) -> bool:
        return physical_path in self.exempt_paths


def csrf_token(session: MutableMapping[str, Any]) -> str:
    """Return the session's anti-forgery token, creating it on first use."""
    token = session.get(CSRF_SESSION_KEY)
    if not token:
        token = random_token(32)
        session[CSRF_SESSION_KEY] = token
    return str(token)


async def submitted_token(request: Request) -> Optional[str]:
    for header in CSRF_HEADERS:
        value = request.headers.get(header)
        if value:
            return value
    content_type = (request.headers.get("content-type") or "").lower()
    if content_type.startswith(_FORM_TYPES):
        # Starlette caches the parsed form on the request, so handlers can still read it.
        form = await request.form()
        value = form.get(CSRF_FORM_FIELD)
        if isinstance(value, str) and value:
            return value
    return None


def csrf_protect(policy: CsrfPolicy) -> Callable[[Request], Awaitable[None]]:
    """App-wide dependency enforcing the double-submit token on mutating requests."""

    async def verify_csrf(request: Request) -> None:
        if request.method.upper() in SAFE_METHODS:
            return
        if policy.is_exempt(request.url.path):
            return
        expected = request.state.session.get(CSRF_SESSION_KEY)
        given = await submitted_token(request)
        if not expected or not given:
            raise CsrfMismatch("Missing CSRF token")
        if not tokens_match(str(expected), given):
            raise CsrfMismatch("Invalid CSRF token")

    return verify_csrf
