from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Optional, Tuple


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(float(raw))
    except ValueError:
        return default


def _env_str(name: str) -> Optional[str]:
    return (os.getenv(name, "") or "").strip() or None


def normalize_namespace(value: Optional[str]) -> Optional[str]:
    """`/app/` and `app` both mean the `app` namespace; blank means none."""
    ns = (value or "").strip().strip("/")
    return ns or None


@dataclass(frozen=True)
class ProviderCredentials:
    client_id: str
    client_secret: str


@dataclass(frozen=True)
class AppConfig:
    # Mounting
    namespace: Optional[str] = None
    public_base_url: Optional[str] = None  # Required for OAuth redirect URIs

    # Session configuration
    session_secret: Optional[str] = None  # Required for cookie signing
    session_ttl_seconds: int = 14 * 24 * 3600
    # Sessions that never signed in (pending return-to, CSRF token) expire sooner.
    anonymous_session_ttl_seconds: int = 3600
    cookie_secure: bool = False

    # Password reset
    password_reset_ttl_seconds: int = 3600

    # Uploads + contact form
    upload_dir: str = "./uploads"
    contact_recipient: str = "your@email.com"
    mail_from: str = "portal@localhost"
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True

    # User persistence (in-memory when unset)
    postgres_dsn: Optional[str] = None

    # Provider credentials keyed by provider name
    providers: Dict[str, ProviderCredentials] = field(default_factory=dict)

    def provider_enabled(self, name: str) -> bool:
        return name in self.providers

    @property
    def enabled_providers(self) -> Tuple[str, ...]:
        return tuple(sorted(self.providers))


def _load_provider_credentials() -> Dict[str, ProviderCredentials]:
    from portal.auth.providers import PROVIDERS

    out: Dict[str, ProviderCredentials] = {}
    for name in PROVIDERS:
        prefix = name.upper()
        client_id = _env_str(f"{prefix}_CLIENT_ID")
        client_secret = _env_str(f"{prefix}_CLIENT_SECRET")
        if client_id and client_secret:
            out[name] = ProviderCredentials(client_id=client_id, client_secret=client_secret)
    return out


@lru_cache(maxsize=1)
def load_config() -> AppConfig:
    """
    Load application configuration from environment variables.

    Loaded once per process; the resulting value (including the namespace) is immutable.
    """
    public_base_url = _env_str("PUBLIC_BASE_URL")
    cookie_secure_env = (os.getenv("COOKIE_SECURE", "") or "").strip().lower()
    if cookie_secure_env in ("1", "true", "yes", "on"):
        cookie_secure = True
    elif cookie_secure_env in ("0", "false", "no", "off"):
        cookie_secure = False
    else:
        # Default: secure cookies when base URL is https; otherwise allow local dev.
        cookie_secure = (public_base_url or "").startswith("https://")

    ttl = _env_int("SESSION_TTL_SECONDS", 14 * 24 * 3600)
    if ttl <= 60:
        ttl = 60
    anonymous_ttl = max(60, min(ttl, _env_int("ANON_SESSION_TTL_SECONDS", 3600)))

    return AppConfig(
        namespace=normalize_namespace(os.getenv("APP_NAMESPACE")),
        public_base_url=public_base_url,
        session_secret=_env_str("SESSION_SECRET"),
        session_ttl_seconds=ttl,
        anonymous_session_ttl_seconds=anonymous_ttl,
        password_reset_ttl_seconds=max(60, _env_int("PASSWORD_RESET_TTL_SECONDS", 3600)),
        cookie_secure=cookie_secure,
        upload_dir=_env_str("UPLOAD_DIR") or "./uploads",
        contact_recipient=_env_str("CONTACT_RECIPIENT") or "your@email.com",
        mail_from=_env_str("MAIL_FROM") or "portal@localhost",
        smtp_host=_env_str("SMTP_HOST"),
        smtp_port=_env_int("SMTP_PORT", 587),
        smtp_username=_env_str("SMTP_USERNAME"),
        smtp_password=_env_str("SMTP_PASSWORD"),
        smtp_use_tls=_env_bool("SMTP_USE_TLS", True),
        postgres_dsn=_env_str("POSTGRES_DSN"),
        providers=_load_provider_credentials(),
    )
