from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class LinkedCredential:
    """A provider credential linked to a user (sign-in identity or authorized API access)."""

    provider: str
    subject: str  # Provider-side user id
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    scopes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class OAuthProfile:
    """Normalized identity returned by a provider after a completed callback."""

    provider: str
    subject: str
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None


@dataclass
class UserAccount:
    """User record as held by a user store."""

    id: int
    email: str
    password_hash: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None
    created_at: Optional[datetime] = None
    credentials: Dict[str, LinkedCredential] = field(default_factory=dict)
    # sha256 of the outstanding password reset token, if any
    password_reset_hash: Optional[str] = None
    password_reset_expires: Optional[datetime] = None


@dataclass(frozen=True)
class Principal:
    """Authenticated identity attached to a request."""

    user_id: int
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None
    credentials: Tuple[LinkedCredential, ...] = ()

    @classmethod
    def from_account(cls, account: UserAccount) -> "Principal":
        return cls(
            user_id=account.id,
            email=account.email,
            name=account.name,
            picture=account.picture,
            credentials=tuple(account.credentials[k] for k in sorted(account.credentials)),
        )

    def credential_for(self, provider: str) -> Optional[LinkedCredential]:
        for cred in self.credentials:
            if cred.provider == provider:
                return cred
        return None

    def has_link(self, provider: str) -> bool:
        cred = self.credential_for(provider)
        return cred is not None and bool(cred.access_token)

    @property
    def linked_providers(self) -> List[str]:
        return [c.provider for c in self.credentials]
