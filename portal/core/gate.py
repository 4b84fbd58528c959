"""
Access gate.

Two stages:
- capture: runs on every request and remembers where an anonymous visitor was headed;
- guard: FastAPI dependencies declared on protected routes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, MutableMapping, Optional

from fastapi import Request
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from portal.auth.deps import current_principal, load_principal
from portal.auth.models import Principal
from portal.auth.users import UserStore
from portal.core import return_to
from portal.core.errors import Unauthenticated, Unauthorized
from portal.core.namespace import Namespace

logger = logging.getLogger(__name__)


class CaptureOutcome(str, Enum):
    CAPTURED = "captured"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class GatePaths:
    """Physical paths the capture predicate compares against."""

    root: str
    login: str
    signup: str
    auth_prefix: str
    account: str

    @classmethod
    def for_namespace(cls, ns: Namespace) -> "GatePaths":
        return cls(
            root=ns.resolve("/"),
            login=ns.resolve("/login"),
            signup=ns.resolve("/signup"),
            auth_prefix=ns.resolve("/auth"),
            account=ns.resolve("/account"),
        )


def looks_like_asset(path: str) -> bool:
    return "." in path


def within_mount(path: str, paths: GatePaths) -> bool:
    if paths.root == "/":
        return True
    return path == paths.root or path.startswith(paths.root + "/")


def should_capture(path: str, principal: Optional[Principal], paths: GatePaths) -> bool:
    # Paths outside the mount never become a post-login target.
    if not within_mount(path, paths):
        return False
    if principal is None:
        if path in (paths.login, paths.signup):
            return False
        if path.startswith(paths.auth_prefix):
            return False
        return not looks_like_asset(path)
    # Authenticated visitors only resume account settings; no other deep link is recorded.
    return path == paths.account


def capture_stage(
    session: MutableMapping[str, Any],
    path: str,
    principal: Optional[Principal],
    paths: GatePaths,
) -> CaptureOutcome:
    if not should_capture(path, principal, paths):
        return CaptureOutcome.SKIPPED
    return_to.capture(session, path)
    return CaptureOutcome.CAPTURED


class AccessGateMiddleware(BaseHTTPMiddleware):
    """
    Attaches the Principal to `request.state.principal` and runs the capture stage.

    Must run inside the session middleware.
    """

    def __init__(self, app, *, users: UserStore, paths: GatePaths) -> None:  # type: ignore[no-untyped-def]
        super().__init__(app)
        self.users = users
        self.paths = paths

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        session = request.state.session
        principal = await run_in_threadpool(load_principal, session, self.users)
        request.state.principal = principal

        outcome = capture_stage(session, request.url.path, principal, self.paths)
        if outcome is CaptureOutcome.CAPTURED:
            logger.debug("Captured return-to %s", request.url.path)
        return await call_next(request)


async def requires_principal(request: Request) -> Principal:
    principal = current_principal(request)
    if principal is None:
        raise Unauthenticated()
    return principal


def requires_provider_link(provider: str) -> Callable[[Request], Awaitable[Principal]]:
    """Guard factory: the Principal must hold a linked credential for `provider`."""

    async def _guard(request: Request) -> Principal:
        principal = await requires_principal(request)
        if not principal.has_link(provider):
            raise Unauthorized(provider)
        return principal

    _guard.__name__ = f"requires_{provider}_link"
    return _guard
