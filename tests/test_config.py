from __future__ import annotations

from portal.config import AppConfig, load_config


def test_load_config_defaults() -> None:
    cfg = load_config()
    assert cfg.namespace is None
    assert cfg.session_secret is None
    assert cfg.cookie_secure is False
    assert cfg.session_ttl_seconds == 14 * 24 * 3600
    assert cfg.anonymous_session_ttl_seconds == 3600
    assert cfg.password_reset_ttl_seconds == 3600
    assert cfg.smtp_port == 587
    assert cfg.enabled_providers == ()


def test_load_config_from_env(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setenv("APP_NAMESPACE", "/app/")
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://portal.example.com")
    monkeypatch.setenv("SESSION_SECRET", "s3cret")
    monkeypatch.setenv("SESSION_TTL_SECONDS", "5")
    monkeypatch.setenv("GITHUB_CLIENT_ID", "gh-id")
    monkeypatch.setenv("GITHUB_CLIENT_SECRET", "gh-secret")
    monkeypatch.setenv("GOOGLE_CLIENT_ID", "only-id")
    monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "")
    load_config.cache_clear()

    cfg = load_config()
    assert cfg.namespace == "app"
    assert cfg.session_secret == "s3cret"
    # https base URL implies secure cookies unless overridden.
    assert cfg.cookie_secure is True
    assert cfg.session_ttl_seconds == 60
    # Anonymous sessions never outlive signed-in ones.
    assert cfg.anonymous_session_ttl_seconds == 60
    assert cfg.enabled_providers == ("github",)
    assert cfg.providers["github"].client_secret == "gh-secret"
    assert cfg.provider_enabled("google") is False


def test_cookie_secure_override(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://portal.example.com")
    monkeypatch.setenv("COOKIE_SECURE", "false")
    load_config.cache_clear()
    assert load_config().cookie_secure is False


def test_config_is_loaded_once(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    first = load_config()
    monkeypatch.setenv("APP_NAMESPACE", "later")
    assert load_config() is first
    assert isinstance(first, AppConfig)
