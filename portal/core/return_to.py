"""
Return-To ledger: a single pending post-login destination stored in the session.

Concurrent requests sharing one session may race (a capture can overwrite another,
a consume can race a capture). Browsers navigate one page at a time, so this is
accepted rather than locked.
"""

from __future__ import annotations

from typing import Any, MutableMapping, Optional

RETURN_TO_KEY = "portal.return_to"


def capture(session: MutableMapping[str, Any], path: str) -> None:
    """Record `path` as the pending destination (last write wins)."""
    session[RETURN_TO_KEY] = path


def peek(session: MutableMapping[str, Any]) -> Optional[str]:
    value = session.get(RETURN_TO_KEY)
    return str(value) if value else None


def consume_or_default(session: MutableMapping[str, Any], fallback_path: str) -> str:
    """
    Return the pending destination and clear it, or `fallback_path` if none.

    Call once per successful authentication; a second call sees the fallback.
    """
    value = session.pop(RETURN_TO_KEY, None)
    if not value:
        return fallback_path
    return str(value)
