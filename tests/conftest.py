"""
Pytest config.

Local imports like `import portal` rely on the repo root being on sys.path. When invoking a
global `pytest` entrypoint that doesn't happen reliably during collection, so we pin it here.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlencode, urlsplit


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from portal.api.webapp import create_app  # noqa: E402
from portal.auth.session import MemorySessionStore, decode_session_id, session_cookie_name  # noqa: E402
from portal.auth.users import MemoryUserStore  # noqa: E402
from portal.config import AppConfig, ProviderCredentials, load_config  # noqa: E402
from portal.services.mail import LoggingMailer  # noqa: E402

TEST_SECRET = "test-secret-key-for-testing-purposes-only"


class FakeIdentityClient:
    """
    Stands in for the provider HTTP calls. Profiles are keyed by provider name.
    """

    def __init__(self) -> None:
        self.profiles: Dict[str, Dict[str, Any]] = {
            "github": {"id": 4242, "email": "octo@example.com", "name": "Octo Cat", "avatar_url": "https://a/x.png"},
            "google": {"sub": "g-1", "email": "gina@example.com", "name": "Gina"},
            "foursquare": {"response": {"user": {"id": "fs-9", "firstName": "Fran"}}},
            "pinterest": {"username": "pinner"},
        }
        self.exchange_error: Optional[Exception] = None
        self.profile_error: Optional[Exception] = None
        self.exchanged: List[Dict[str, str]] = []

    def authorize_url(  # type: ignore[no-untyped-def]
        self, spec, *, redirect_uri: str, state: str, code_challenge: str
    ) -> str:
        query = urlencode({"state": state, "redirect_uri": redirect_uri, "code_challenge": code_challenge})
        return f"https://id.example.test/{spec.name}/authorize?{query}"

    def exchange_code(  # type: ignore[no-untyped-def]
        self, spec, *, redirect_uri: str, code: str, code_verifier: str
    ) -> Dict[str, Any]:
        if self.exchange_error is not None:
            raise self.exchange_error
        self.exchanged.append({"provider": spec.name, "code": code, "verifier": code_verifier})
        return {"access_token": f"token-{spec.name}-{code}", "scope": "read write"}

    def fetch_profile(self, spec, access_token: str) -> Dict[str, Any]:  # type: ignore[no-untyped-def]
        if self.profile_error is not None:
            raise self.profile_error
        return dict(self.profiles[spec.name])


def state_from_redirect(location: str) -> str:
    return parse_qs(urlsplit(location).query)["state"][0]


def make_config(tmp_path: Path, namespace: Optional[str] = None, **overrides: Any) -> AppConfig:
    values: Dict[str, Any] = {
        "namespace": namespace,
        "public_base_url": "http://testserver",
        "session_secret": TEST_SECRET,
        "upload_dir": str(tmp_path / "uploads"),
        "contact_recipient": "owner@example.com",
        "providers": {
            name: ProviderCredentials(client_id=f"{name}-id", client_secret=f"{name}-secret")
            for name in ("github", "google", "foursquare", "pinterest")
        },
    }
    values.update(overrides)
    return AppConfig(**values)


class Harness:
    """One app instance plus handles on its in-memory collaborators."""

    def __init__(self, tmp_path: Path, namespace: Optional[str] = None) -> None:
        self.config = make_config(tmp_path, namespace)
        self.sessions = MemorySessionStore()
        self.users = MemoryUserStore()
        self.identity = FakeIdentityClient()
        self.mailer = LoggingMailer()
        self.app = create_app(
            self.config,
            session_store=self.sessions,
            users=self.users,
            identity_client=self.identity,
            mailer=self.mailer,
        )
        self.client = TestClient(self.app)

    def path(self, logical: str) -> str:
        return self.app.state.portal.ns.resolve(logical)

    def session_data(self) -> Dict[str, Any]:
        """Server-side session contents for the client's current cookie."""
        sid = decode_session_id(self.config, self.client.cookies.get(session_cookie_name(self.config)))
        if not sid:
            return {}
        return asyncio.run(self.sessions.get(sid)) or {}

    def csrf(self) -> str:
        # /login is never captured for anonymous visitors; signed-in visitors get bounced to home.
        r = self.client.get(self.path("/login"), follow_redirects=False)
        if r.status_code == 302:
            r = self.client.get(self.path("/contact"))
        assert r.status_code == 200
        return r.json()["csrfToken"]

    def login(self, email: str, password: str) -> Any:
        token = self.csrf()
        return self.client.post(
            self.path("/login"),
            data={"email": email, "password": password, "_csrf": token},
            follow_redirects=False,
        )

    def signup(self, email: str, password: str = "secret-pass") -> Any:
        token = self.csrf()
        return self.client.post(
            self.path("/signup"),
            data={"email": email, "password": password, "confirmPassword": password, "_csrf": token},
            follow_redirects=False,
        )


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("APP_NAMESPACE", "SESSION_SECRET", "POSTGRES_DSN", "SMTP_HOST", "PUBLIC_BASE_URL", "COOKIE_SECURE"):
        monkeypatch.delenv(name, raising=False)
    load_config.cache_clear()


@pytest.fixture
def harness(tmp_path: Path) -> Harness:
    return Harness(tmp_path)


@pytest.fixture
def ns_harness(tmp_path: Path) -> Harness:
    return Harness(tmp_path, namespace="app")
