from __future__ import annotations

from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlsplit

import pytest

from conftest import make_config
from portal.auth.oauth import OAuthClient, pkce_challenge
from portal.auth.providers import PROVIDERS, FlowKind, extract_profile, get_provider


def test_provider_table_flow_kinds_and_redirects() -> None:
    sign_in = {n for n, s in PROVIDERS.items() if s.flow is FlowKind.SIGN_IN}
    authorize = {n for n, s in PROVIDERS.items() if s.flow is FlowKind.AUTHORIZE}
    assert {"facebook", "github", "google", "twitter", "linkedin", "instagram"} == sign_in
    assert {"foursquare", "tumblr", "pinterest"} == authorize

    assert PROVIDERS["github"].failure_path == "/login"
    assert PROVIDERS["github"].success_path == "/"
    assert PROVIDERS["tumblr"].failure_path == "/api"
    assert PROVIDERS["tumblr"].success_path == "/api/tumblr"
    assert PROVIDERS["pinterest"].failure_path == "/login"

    # Google is sign-in only; every other provider backs an /api/<name> page.
    assert {n for n, s in PROVIDERS.items() if not s.api_page} == {"google"}


def test_get_provider_is_case_insensitive() -> None:
    assert get_provider("GitHub") is PROVIDERS["github"]
    assert get_provider("steam") is None


def test_extract_profile_follows_nested_fields() -> None:
    profile = extract_profile(
        PROVIDERS["facebook"],
        {"id": "10", "email": "Fb@Example.com", "name": "F", "picture": {"data": {"url": "https://p"}}},
    )
    assert (profile.subject, profile.email, profile.picture) == ("10", "fb@example.com", "https://p")

    tw = extract_profile(PROVIDERS["twitter"], {"data": {"id": "7", "name": "Tee"}})
    assert (tw.subject, tw.email, tw.name) == ("7", None, "Tee")


def test_extract_profile_requires_subject() -> None:
    with pytest.raises(ValueError):
        extract_profile(PROVIDERS["github"], {"email": "a@example.com"})


def test_authorize_url_carries_pkce_and_scope(tmp_path) -> None:  # type: ignore[no-untyped-def]
    client = OAuthClient(make_config(tmp_path), http=MagicMock())
    url = client.authorize_url(
        PROVIDERS["github"], redirect_uri="http://testserver/auth/github/callback", state="st", code_challenge="cc"
    )
    parts = urlsplit(url)
    q = parse_qs(parts.query)
    assert f"{parts.scheme}://{parts.netloc}{parts.path}" == "https://github.com/login/oauth/authorize"
    assert q["client_id"] == ["github-id"]
    assert q["state"] == ["st"]
    assert q["code_challenge_method"] == ["S256"]
    assert q["scope"] == ["user:email"]


def test_unconfigured_provider_is_refused(tmp_path) -> None:  # type: ignore[no-untyped-def]
    client = OAuthClient(make_config(tmp_path, providers={}), http=MagicMock())
    with pytest.raises(ValueError):
        client.authorize_url(PROVIDERS["github"], redirect_uri="x", state="s", code_challenge="c")


def test_exchange_code_body_and_basic_auth(tmp_path) -> None:  # type: ignore[no-untyped-def]
    http = MagicMock()
    http.post.return_value.status_code = 200
    http.post.return_value.json.return_value = {"access_token": "at"}
    client = OAuthClient(make_config(tmp_path), http=http)

    assert client.exchange_code(PROVIDERS["github"], redirect_uri="r", code="c", code_verifier="v") == {
        "access_token": "at"
    }
    _, kwargs = http.post.call_args
    assert kwargs["data"]["client_secret"] == "github-secret"
    assert kwargs["auth"] is None

    client.exchange_code(PROVIDERS["pinterest"], redirect_uri="r", code="c", code_verifier="v")
    _, kwargs = http.post.call_args
    assert "client_secret" not in kwargs["data"]
    assert kwargs["auth"] == ("pinterest-id", "pinterest-secret")


def test_exchange_code_errors(tmp_path) -> None:  # type: ignore[no-untyped-def]
    http = MagicMock()
    client = OAuthClient(make_config(tmp_path), http=http)

    http.post.return_value.status_code = 401
    with pytest.raises(ValueError):
        client.exchange_code(PROVIDERS["github"], redirect_uri="r", code="c", code_verifier="v")

    http.post.return_value.status_code = 200
    http.post.return_value.json.return_value = {"error": "bad_verification_code"}
    with pytest.raises(ValueError):
        client.exchange_code(PROVIDERS["github"], redirect_uri="r", code="c", code_verifier="v")


def test_fetch_profile_token_placement(tmp_path) -> None:  # type: ignore[no-untyped-def]
    http = MagicMock()
    http.get.return_value.status_code = 200
    http.get.return_value.json.return_value = {"id": 1}
    client = OAuthClient(make_config(tmp_path), http=http)

    client.fetch_profile(PROVIDERS["github"], "at")
    _, kwargs = http.get.call_args
    assert kwargs["headers"]["Authorization"] == "Bearer at"

    client.fetch_profile(PROVIDERS["foursquare"], "at")
    _, kwargs = http.get.call_args
    assert kwargs["params"] == {"oauth_token": "at"}
    assert "Authorization" not in kwargs["headers"]


def test_pkce_challenge_known_vector() -> None:
    # RFC 7636 appendix B
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gZWFOEjXk"
    assert pkce_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"
