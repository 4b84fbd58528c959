from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from portal.config import normalize_namespace


@dataclass(frozen=True)
class Namespace:
    """
    Maps logical paths to the physical paths the app is mounted under.

    Apply exactly once: resolving an already-resolved path yields a double prefix,
    and there is no way to detect that here.
    """

    prefix: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "prefix", normalize_namespace(self.prefix))

    def resolve(self, logical_path: str) -> str:
        if not self.prefix:
            return logical_path
        if logical_path == "/":
            return f"/{self.prefix}"
        if not logical_path.startswith("/"):
            raise ValueError(f"Logical path must start with '/': {logical_path!r}")
        return f"/{self.prefix}{logical_path}"

    __call__ = resolve
