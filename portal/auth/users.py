from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

import bcrypt

from portal.auth.models import LinkedCredential, OAuthProfile, UserAccount

logger = logging.getLogger(__name__)


class DuplicateEmail(ValueError):
    """Another account already uses this email address."""


class CredentialInUse(ValueError):
    """The provider identity is already linked to a different account."""


def hash_password(password: str) -> str:
    """
    Hash password with bcrypt (cost factor 12).
    """
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=12)).decode("utf-8")


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    """
    Verify password against bcrypt hash with constant-time comparison.
    """
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Invalid hash format
        return False


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def placeholder_email(profile: OAuthProfile) -> str:
    # Some providers never disclose an email; accounts still need a unique one.
    return f"{profile.subject}@{profile.provider}.invalid"


class UserStore(Protocol):
    """
    User persistence boundary. Calls are blocking; async callers go through a threadpool.
    """

    def create_local(self, email: str, password: str, name: Optional[str] = None) -> UserAccount:
        ...

    def authenticate(self, email: str, password: str) -> Optional[UserAccount]:
        ...

    def get(self, user_id: int) -> Optional[UserAccount]:
        ...

    def find_by_email(self, email: str) -> Optional[UserAccount]:
        ...

    def find_by_provider(self, provider: str, subject: str) -> Optional[UserAccount]:
        ...

    def create_from_profile(self, profile: OAuthProfile, credential: LinkedCredential) -> UserAccount:
        ...

    def link_credential(self, user_id: int, credential: LinkedCredential) -> UserAccount:
        ...

    def unlink_credential(self, user_id: int, provider: str) -> Optional[UserAccount]:
        ...

    def update_profile(self, user_id: int, *, email: str, name: Optional[str]) -> UserAccount:
        ...

    def set_password(self, user_id: int, password: str) -> None:
        ...

    def set_password_reset(self, user_id: int, token_hash: str, expires_at: datetime) -> None:
        ...

    def find_by_password_reset(self, token_hash: str) -> Optional[UserAccount]:
        ...

    def delete(self, user_id: int) -> None:
        ...


class MemoryUserStore:
    """Thread-safe in-memory user store (development and tests)."""

    def __init__(self) -> None:
        self._users: Dict[int, UserAccount] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    def _copy(self, account: Optional[UserAccount]) -> Optional[UserAccount]:
        if account is None:
            return None
        return replace(account, credentials=dict(account.credentials))

    def _by_email(self, email: str) -> Optional[UserAccount]:
        wanted = normalize_email(email)
        for account in self._users.values():
            if account.email == wanted:
                return account
        return None

    def _insert(
        self, email: str, *, password_hash: Optional[str], name: Optional[str], picture: Optional[str]
    ) -> UserAccount:
        email = normalize_email(email)
        if self._by_email(email) is not None:
            raise DuplicateEmail(email)
        account = UserAccount(
            id=self._next_id,
            email=email,
            password_hash=password_hash,
            name=name,
            picture=picture,
            created_at=datetime.now(timezone.utc),
        )
        self._users[account.id] = account
        self._next_id += 1
        return account

    def create_local(self, email: str, password: str, name: Optional[str] = None) -> UserAccount:
        password_hash = hash_password(password)
        with self._lock:
            account = self._insert(email, password_hash=password_hash, name=name, picture=None)
            return self._copy(account)  # type: ignore[return-value]

    def authenticate(self, email: str, password: str) -> Optional[UserAccount]:
        with self._lock:
            account = self._copy(self._by_email(email))
        if account is None or not verify_password(password, account.password_hash):
            return None
        return account

    def get(self, user_id: int) -> Optional[UserAccount]:
        with self._lock:
            return self._copy(self._users.get(user_id))

    def find_by_email(self, email: str) -> Optional[UserAccount]:
        with self._lock:
            return self._copy(self._by_email(email))

    def find_by_provider(self, provider: str, subject: str) -> Optional[UserAccount]:
        with self._lock:
            for account in self._users.values():
                cred = account.credentials.get(provider)
                if cred is not None and cred.subject == subject:
                    return self._copy(account)
        return None

    def create_from_profile(self, profile: OAuthProfile, credential: LinkedCredential) -> UserAccount:
        with self._lock:
            account = self._insert(
                profile.email or placeholder_email(profile),
                password_hash=None,
                name=profile.name,
                picture=profile.picture,
            )
            account.credentials[credential.provider] = credential
            return self._copy(account)  # type: ignore[return-value]

    def link_credential(self, user_id: int, credential: LinkedCredential) -> UserAccount:
        with self._lock:
            account = self._users.get(user_id)
            if account is None:
                raise KeyError(user_id)
            for other in self._users.values():
                cred = other.credentials.get(credential.provider)
                if other.id != user_id and cred is not None and cred.subject == credential.subject:
                    raise CredentialInUse(credential.provider)
            account.credentials[credential.provider] = credential
            return self._copy(account)  # type: ignore[return-value]

    def unlink_credential(self, user_id: int, provider: str) -> Optional[UserAccount]:
        with self._lock:
            account = self._users.get(user_id)
            if account is None:
                return None
            account.credentials.pop(provider, None)
            return self._copy(account)

    def update_profile(self, user_id: int, *, email: str, name: Optional[str]) -> UserAccount:
        with self._lock:
            account = self._users.get(user_id)
            if account is None:
                raise KeyError(user_id)
            email = normalize_email(email)
            other = self._by_email(email)
            if other is not None and other.id != user_id:
                raise DuplicateEmail(email)
            account.email = email
            account.name = name
            return self._copy(account)  # type: ignore[return-value]

    def set_password(self, user_id: int, password: str) -> None:
        password_hash = hash_password(password)
        with self._lock:
            account = self._users.get(user_id)
            if account is None:
                raise KeyError(user_id)
            account.password_hash = password_hash
            account.password_reset_hash = None
            account.password_reset_expires = None

    def set_password_reset(self, user_id: int, token_hash: str, expires_at: datetime) -> None:
        with self._lock:
            account = self._users.get(user_id)
            if account is None:
                raise KeyError(user_id)
            account.password_reset_hash = token_hash
            account.password_reset_expires = expires_at

    def find_by_password_reset(self, token_hash: str) -> Optional[UserAccount]:
        now = datetime.now(timezone.utc)
        with self._lock:
            for account in self._users.values():
                if account.password_reset_hash != token_hash:
                    continue
                if account.password_reset_expires is None or account.password_reset_expires <= now:
                    return None
                return self._copy(account)
        return None

    def delete(self, user_id: int) -> None:
        with self._lock:
            self._users.pop(user_id, None)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS portal_users (
  id bigserial PRIMARY KEY,
  email text NOT NULL UNIQUE,
  password_hash text,
  name text,
  picture text,
  created_at timestamptz NOT NULL DEFAULT now(),
  password_reset_hash text,
  password_reset_expires timestamptz
);
ALTER TABLE portal_users ADD COLUMN IF NOT EXISTS password_reset_hash text;
ALTER TABLE portal_users ADD COLUMN IF NOT EXISTS password_reset_expires timestamptz;
CREATE INDEX IF NOT EXISTS portal_users_password_reset_idx ON portal_users (password_reset_hash);
CREATE TABLE IF NOT EXISTS portal_user_credentials (
  user_id bigint NOT NULL REFERENCES portal_users(id) ON DELETE CASCADE,
  provider text NOT NULL,
  subject text NOT NULL,
  access_token text,
  refresh_token text,
  scopes text NOT NULL DEFAULT '',
  linked_at timestamptz NOT NULL DEFAULT now(),
  PRIMARY KEY (user_id, provider),
  UNIQUE (provider, subject)
);
"""

_USER_COLUMNS = "id, email, password_hash, name, picture, created_at, password_reset_hash, password_reset_expires"


class PostgresUserStore:
    """
    PostgreSQL-backed user store (psycopg 3). One short-lived connection per call.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn

    def _connect(self):  # type: ignore[no-untyped-def]
        # Lazy import so the app can run with the in-memory store without DB deps.
        import psycopg

        return psycopg.connect(self.dsn)

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(SCHEMA_SQL)
            conn.commit()
        logger.info("User schema check completed")

    def _load(self, conn, where: str, params: tuple) -> Optional[UserAccount]:  # type: ignore[no-untyped-def]
        with conn.cursor() as cur:
            cur.execute(f"SELECT {_USER_COLUMNS} FROM portal_users WHERE {where}", params)
            row = cur.fetchone()
            if not row:
                return None
            user_id, email, password_hash, name, picture, created_at, reset_hash, reset_expires = row
            cur.execute(
                """
                SELECT provider, subject, access_token, refresh_token, scopes
                FROM portal_user_credentials
                WHERE user_id = %s
                """,
                (user_id,),
            )
            creds: Dict[str, LinkedCredential] = {}
            for provider, subject, access_token, refresh_token, scopes in cur.fetchall():
                creds[provider] = LinkedCredential(
                    provider=provider,
                    subject=subject,
                    access_token=access_token,
                    refresh_token=refresh_token,
                    scopes=tuple(s for s in (scopes or "").split(" ") if s),
                )
        return UserAccount(
            id=user_id,
            email=email,
            password_hash=password_hash,
            name=name,
            picture=picture,
            created_at=created_at,
            credentials=creds,
            password_reset_hash=reset_hash,
            password_reset_expires=reset_expires,
        )

    def _insert(  # type: ignore[no-untyped-def]
        self, conn, email: str, password_hash: Optional[str], name: Optional[str], picture: Optional[str]
    ) -> int:
        import psycopg

        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO portal_users (email, password_hash, name, picture)
                    VALUES (%s, %s, %s, %s)
                    RETURNING id
                    """,
                    (normalize_email(email), password_hash, name, picture),
                )
                row = cur.fetchone()
        except psycopg.errors.UniqueViolation as e:
            raise DuplicateEmail(email) from e
        if not row:
            raise ValueError("Failed to create user")
        return int(row[0])

    def _upsert_credential(self, conn, user_id: int, credential: LinkedCredential) -> None:
        import psycopg

        try:
            conn.execute(
                """
                INSERT INTO portal_user_credentials (user_id, provider, subject, access_token, refresh_token, scopes)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id, provider) DO UPDATE
                SET subject = EXCLUDED.subject,
                    access_token = EXCLUDED.access_token,
                    refresh_token = EXCLUDED.refresh_token,
                    scopes = EXCLUDED.scopes,
                    linked_at = now()
                """,
                (
                    user_id,
                    credential.provider,
                    credential.subject,
                    credential.access_token,
                    credential.refresh_token,
                    " ".join(credential.scopes),
                ),
            )
        except psycopg.errors.UniqueViolation as e:
            raise CredentialInUse(credential.provider) from e

    def create_local(self, email: str, password: str, name: Optional[str] = None) -> UserAccount:
        password_hash = hash_password(password)
        with self._connect() as conn:
            user_id = self._insert(conn, email, password_hash, name, None)
            conn.commit()
            account = self._load(conn, "id = %s", (user_id,))
        if account is None:
            raise ValueError("Failed to create user")
        return account

    def authenticate(self, email: str, password: str) -> Optional[UserAccount]:
        account = self.find_by_email(email)
        if account is None or not verify_password(password, account.password_hash):
            return None
        return account

    def get(self, user_id: int) -> Optional[UserAccount]:
        with self._connect() as conn:
            return self._load(conn, "id = %s", (user_id,))

    def find_by_email(self, email: str) -> Optional[UserAccount]:
        with self._connect() as conn:
            return self._load(conn, "email = %s", (normalize_email(email),))

    def find_by_provider(self, provider: str, subject: str) -> Optional[UserAccount]:
        with self._connect() as conn:
            return self._load(
                conn,
                "id = (SELECT user_id FROM portal_user_credentials WHERE provider = %s AND subject = %s)",
                (provider, subject),
            )

    def create_from_profile(self, profile: OAuthProfile, credential: LinkedCredential) -> UserAccount:
        with self._connect() as conn:
            user_id = self._insert(
                conn, profile.email or placeholder_email(profile), None, profile.name, profile.picture
            )
            self._upsert_credential(conn, user_id, credential)
            conn.commit()
            account = self._load(conn, "id = %s", (user_id,))
        if account is None:
            raise ValueError("Failed to create user")
        return account

    def link_credential(self, user_id: int, credential: LinkedCredential) -> UserAccount:
        with self._connect() as conn:
            self._upsert_credential(conn, user_id, credential)
            conn.commit()
            account = self._load(conn, "id = %s", (user_id,))
        if account is None:
            raise KeyError(user_id)
        return account

    def unlink_credential(self, user_id: int, provider: str) -> Optional[UserAccount]:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM portal_user_credentials WHERE user_id = %s AND provider = %s",
                (user_id, provider),
            )
            conn.commit()
            return self._load(conn, "id = %s", (user_id,))

    def update_profile(self, user_id: int, *, email: str, name: Optional[str]) -> UserAccount:
        import psycopg

        with self._connect() as conn:
            try:
                conn.execute(
                    "UPDATE portal_users SET email = %s, name = %s WHERE id = %s",
                    (normalize_email(email), name, user_id),
                )
            except psycopg.errors.UniqueViolation as e:
                raise DuplicateEmail(email) from e
            conn.commit()
            account = self._load(conn, "id = %s", (user_id,))
        if account is None:
            raise KeyError(user_id)
        return account

    def set_password(self, user_id: int, password: str) -> None:
        password_hash = hash_password(password)
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE portal_users
                SET password_hash = %s, password_reset_hash = NULL, password_reset_expires = NULL
                WHERE id = %s
                """,
                (password_hash, user_id),
            )
            conn.commit()

    def set_password_reset(self, user_id: int, token_hash: str, expires_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE portal_users SET password_reset_hash = %s, password_reset_expires = %s WHERE id = %s",
                (token_hash, expires_at, user_id),
            )
            conn.commit()

    def find_by_password_reset(self, token_hash: str) -> Optional[UserAccount]:
        with self._connect() as conn:
            return self._load(conn, "password_reset_hash = %s AND password_reset_expires > now()", (token_hash,))

    def delete(self, user_id: int) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM portal_users WHERE id = %s", (user_id,))
            conn.commit()
