from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Tuple

from fastapi import Depends, FastAPI

from portal.core.namespace import Namespace


@dataclass(frozen=True)
class RouteDescriptor:
    """A route as declared: logical path, guards in evaluation order, handler."""

    method: str
    path: str
    handler: Callable[..., Any]
    guards: Tuple[Callable[..., Any], ...] = ()
    name: Optional[str] = None


def mount_routes(app: FastAPI, ns: Namespace, routes: Iterable[RouteDescriptor]) -> None:
    """Register each route at its physical (namespace-resolved) path, once, at startup."""
    for route in routes:
        app.add_api_route(
            ns.resolve(route.path),
            route.handler,
            methods=[route.method.upper()],
            dependencies=[Depends(g) for g in route.guards],
            name=route.name,
            response_model=None,
        )
