from __future__ import annotations

import logging
from typing import Any, MutableMapping, Optional

from fastapi import Request

from portal.auth.models import Principal, UserAccount
from portal.auth.session import USER_SESSION_KEY, SessionBag
from portal.auth.users import UserStore

logger = logging.getLogger(__name__)


def load_principal(session: MutableMapping[str, Any], users: UserStore) -> Optional[Principal]:
    """
    Derive the Principal from the session's user id (blocking: hits the user store).

    A user id pointing at a deleted account is dropped from the session.
    """
    raw = session.get(USER_SESSION_KEY)
    if raw is None:
        return None
    try:
        user_id = int(raw)
    except (TypeError, ValueError):
        session.pop(USER_SESSION_KEY, None)
        return None
    account = users.get(user_id)
    if account is None:
        logger.info("Session references missing user id=%s; clearing", user_id)
        session.pop(USER_SESSION_KEY, None)
        return None
    return Principal.from_account(account)


def login_user(session: SessionBag, account: UserAccount) -> Principal:
    # New id on privilege change; contents (return-to, flashes) carry over.
    session.regenerate()
    session[USER_SESSION_KEY] = account.id
    return Principal.from_account(account)


def logout_user(session: SessionBag) -> None:
    session.invalidate()


def current_principal(request: Request) -> Optional[Principal]:
    """Principal attached by the gate middleware, if any."""
    return getattr(request.state, "principal", None)
