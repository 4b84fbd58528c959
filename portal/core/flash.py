from __future__ import annotations

from typing import Any, Dict, List, MutableMapping

FLASH_KEY = "portal.flash"


def flash(session: MutableMapping[str, Any], category: str, message: str) -> None:
    """Queue a message for the next rendered page."""
    pending = dict(session.get(FLASH_KEY) or {})
    pending.setdefault(category, [])
    pending[category] = list(pending[category]) + [message]
    session[FLASH_KEY] = pending


def pop_flashes(session: MutableMapping[str, Any]) -> Dict[str, List[str]]:
    pending = session.pop(FLASH_KEY, None)
    if not isinstance(pending, dict):
        return {}
    return {str(k): [str(m) for m in v] for k, v in pending.items()}
