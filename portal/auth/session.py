from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional, Protocol, Tuple

from fastapi import Request
from fastapi.responses import JSONResponse
from itsdangerous import BadSignature, BadTimeSignature, URLSafeTimedSerializer
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from portal.auth.util import random_token
from portal.config import AppConfig
from portal.core.errors import SessionStoreUnavailable

logger = logging.getLogger(__name__)

SESSION_SALT = "portal-session-v1"
USER_SESSION_KEY = "portal.user_id"

_MISSING = object()


def session_cookie_name(cfg: AppConfig) -> str:
    # `__Host-` requires Secure + Path=/ + no Domain; browsers may reject it on HTTP.
    return "__Host-portal_session" if cfg.cookie_secure else "portal_session"


class SessionBag(dict):
    """
    Per-visitor key/value state, tracked for changes so unchanged sessions are not rewritten.
    """

    def __init__(self, sid: str, data: Optional[Dict[str, Any]] = None, *, is_new: bool = False) -> None:
        super().__init__(data or {})
        self.sid = sid
        self.is_new = is_new
        self.modified = False
        self.invalidated = False
        self.regenerated_from: Optional[str] = None

    def __setitem__(self, key: str, value: Any) -> None:
        super().__setitem__(key, value)
        self.modified = True

    def __delitem__(self, key: str) -> None:
        super().__delitem__(key)
        self.modified = True

    def pop(self, key: str, default: Any = _MISSING) -> Any:
        if key in self:
            self.modified = True
            return super().pop(key)
        if default is _MISSING:
            raise KeyError(key)
        return default

    def setdefault(self, key: str, default: Any = None) -> Any:
        if key not in self:
            self.modified = True
        return super().setdefault(key, default)

    def update(self, *args: Any, **kwargs: Any) -> None:
        super().update(*args, **kwargs)
        self.modified = True

    def clear(self) -> None:
        if self:
            self.modified = True
        super().clear()

    def regenerate(self) -> None:
        """Move the session to a fresh id (e.g. on login), keeping its contents."""
        if self.regenerated_from is None and not self.is_new:
            self.regenerated_from = self.sid
        self.sid = new_session_id()
        self.modified = True

    def invalidate(self) -> None:
        """Destroy the session at the end of this request (logout)."""
        self.clear()
        self.invalidated = True


class SessionStore(Protocol):
    """
    Session persistence boundary. Each call is independent and non-transactional.

    Implementations raise `SessionStoreUnavailable` when the backend is unreachable.
    """

    async def get(self, sid: str) -> Optional[Dict[str, Any]]:
        ...

    async def set(self, sid: str, data: Dict[str, Any], ttl_seconds: int) -> None:
        ...

    async def delete(self, sid: str) -> None:
        ...


class MemorySessionStore:
    """
    In-process session store for development and tests (single process only).

    Expired entries are swept on write at most once per `sweep_interval_seconds`.
    """

    def __init__(
        self, *, sweep_interval_seconds: float = 3600, clock: Callable[[], float] = time.time
    ) -> None:
        self._items: Dict[str, Tuple[float, str]] = {}
        self._sweep_interval = sweep_interval_seconds
        self._clock = clock
        self._last_sweep = clock()

    def sweep(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        self._last_sweep = now
        expired = [sid for sid, (expires_at, _) in self._items.items() if now >= expires_at]
        for sid in expired:
            del self._items[sid]
        if expired:
            logger.debug("Swept %d expired sessions", len(expired))
        return len(expired)

    async def get(self, sid: str) -> Optional[Dict[str, Any]]:
        item = self._items.get(sid)
        if item is None:
            return None
        expires_at, raw = item
        if self._clock() >= expires_at:
            self._items.pop(sid, None)
            return None
        data = json.loads(raw)
        return data if isinstance(data, dict) else None

    async def set(self, sid: str, data: Dict[str, Any], ttl_seconds: int) -> None:
        # Stored as JSON so values behave like they would in an external store.
        raw = json.dumps(dict(data), separators=(",", ":"), sort_keys=True)
        now = self._clock()
        if now - self._last_sweep >= self._sweep_interval:
            self.sweep()
        self._items[sid] = (now + ttl_seconds, raw)

    async def delete(self, sid: str) -> None:
        self._items.pop(sid, None)

    def session_ids(self) -> Iterable[str]:
        return list(self._items)


def new_session_id() -> str:
    return random_token(32)


def _serializer(cfg: AppConfig) -> URLSafeTimedSerializer:
    if not cfg.session_secret:
        raise RuntimeError("Session signing is not configured (SESSION_SECRET)")
    return URLSafeTimedSerializer(secret_key=cfg.session_secret, salt=SESSION_SALT)


def encode_session_id(cfg: AppConfig, sid: str) -> str:
    return _serializer(cfg).dumps(sid)


def decode_session_id(cfg: AppConfig, value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    try:
        sid = _serializer(cfg).loads(value, max_age=cfg.session_ttl_seconds)
    except (BadSignature, BadTimeSignature, ValueError):
        return None
    return str(sid) if sid else None


def session_cookie_kwargs(cfg: AppConfig, value: str, max_age: Optional[int] = None) -> dict:
    return {
        "key": session_cookie_name(cfg),
        "value": value,
        "max_age": max_age if max_age is not None else cfg.session_ttl_seconds,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }


def clear_session_cookie_kwargs(cfg: AppConfig) -> dict:
    return {
        "key": session_cookie_name(cfg),
        "value": "",
        "max_age": 0,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }


def get_session(request: Request) -> SessionBag:
    return request.state.session


def _unavailable() -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": "Session store unavailable"})


class SessionMiddleware(BaseHTTPMiddleware):
    """
    Loads the visitor's session bag into `request.state.session` and persists it afterwards.

    The cookie carries only a signed, opaque session id. Requests to `skip_paths` get a
    throwaway bag that is never loaded or stored.
    """

    def __init__(  # type: ignore[no-untyped-def]
        self, app, *, store: SessionStore, config: AppConfig, skip_paths: Iterable[str] = ()
    ) -> None:
        super().__init__(app)
        self.store = store
        self.config = config
        self.skip_paths: FrozenSet[str] = frozenset(skip_paths)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        cfg = self.config
        if request.url.path in self.skip_paths:
            request.state.session = SessionBag(new_session_id(), is_new=True)
            return await call_next(request)

        sid = decode_session_id(cfg, request.cookies.get(session_cookie_name(cfg)))
        data: Optional[Dict[str, Any]] = None
        try:
            if sid:
                data = await self.store.get(sid)
        except SessionStoreUnavailable:
            logger.exception("Session load failed for %s %s", request.method, request.url.path)
            return _unavailable()

        if sid and data is not None:
            bag = SessionBag(sid, data)
        else:
            bag = SessionBag(new_session_id(), is_new=True)
        request.state.session = bag

        response = await call_next(request)

        try:
            await self._commit(bag, response)
        except SessionStoreUnavailable:
            logger.exception("Session save failed for %s %s", request.method, request.url.path)
            return _unavailable()
        return response

    async def _commit(self, bag: SessionBag, response: Response) -> None:
        cfg = self.config
        if bag.invalidated:
            if not bag.is_new:
                await self.store.delete(bag.regenerated_from or bag.sid)
            if bag.regenerated_from is not None:
                await self.store.delete(bag.sid)
            response.set_cookie(**clear_session_cookie_kwargs(cfg))
            return

        if bag.regenerated_from is not None:
            await self.store.delete(bag.regenerated_from)

        if not bag.modified:
            return
        if bag.is_new and not bag:
            # Nothing worth persisting for a first-time visitor.
            return
        # Visitors who never signed in only hold a pending destination and a CSRF token.
        ttl = cfg.session_ttl_seconds if USER_SESSION_KEY in bag else cfg.anonymous_session_ttl_seconds
        await self.store.set(bag.sid, dict(bag), ttl)
        response.set_cookie(**session_cookie_kwargs(cfg, encode_session_id(cfg, bag.sid), max_age=ttl))
