"""
Identity provider table.

Every provider is described by data; one generic orchestrator routine drives both flow
kinds. Sign-in providers establish the Principal; authorize providers link an extra
credential to an already-authenticated Principal for later API calls.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from portal.auth.models import OAuthProfile


class FlowKind(str, Enum):
    SIGN_IN = "sign_in"
    AUTHORIZE = "authorize"


@dataclass(frozen=True)
class ProfileFields:
    """Dotted paths into the provider's profile JSON."""

    subject: str = "id"
    email: Optional[str] = "email"
    name: Optional[str] = "name"
    picture: Optional[str] = None


@dataclass(frozen=True)
class ProviderSpec:
    name: str
    display_name: str
    flow: FlowKind
    authorize_endpoint: str
    token_endpoint: str
    profile_endpoint: str
    scopes: Tuple[str, ...] = ()
    scope_separator: str = " "
    profile_fields: ProfileFields = field(default_factory=ProfileFields)
    # "body": client credentials in the form body; "basic": HTTP Basic auth.
    token_auth: str = "body"
    # Some APIs expect the token as a query parameter instead of a Bearer header.
    token_query_param: Optional[str] = None
    # Logical paths; None means the flow's default.
    failure_redirect: Optional[str] = None
    success_redirect: Optional[str] = None
    # Whether `/api/<name>` exists as a feature page for this provider.
    api_page: bool = True

    @property
    def failure_path(self) -> str:
        if self.failure_redirect:
            return self.failure_redirect
        return "/login" if self.flow is FlowKind.SIGN_IN else "/api"

    @property
    def success_path(self) -> str:
        """Fallback destination for sign-in; fixed landing page for authorize."""
        if self.success_redirect:
            return self.success_redirect
        return "/" if self.flow is FlowKind.SIGN_IN else f"/api/{self.name}"

    @property
    def scope(self) -> str:
        return self.scope_separator.join(self.scopes)


_SPECS = (
    # ---- Sign in ----
    ProviderSpec(
        name="facebook",
        display_name="Facebook",
        flow=FlowKind.SIGN_IN,
        authorize_endpoint="https://www.facebook.com/v19.0/dialog/oauth",
        token_endpoint="https://graph.facebook.com/v19.0/oauth/access_token",
        profile_endpoint="https://graph.facebook.com/me?fields=id,name,email,picture",
        scopes=("email", "public_profile"),
        scope_separator=",",
        profile_fields=ProfileFields(picture="picture.data.url"),
    ),
    ProviderSpec(
        name="github",
        display_name="GitHub",
        flow=FlowKind.SIGN_IN,
        authorize_endpoint="https://github.com/login/oauth/authorize",
        token_endpoint="https://github.com/login/oauth/access_token",
        profile_endpoint="https://api.github.com/user",
        scopes=("user:email",),
        profile_fields=ProfileFields(picture="avatar_url"),
    ),
    ProviderSpec(
        name="google",
        display_name="Google",
        flow=FlowKind.SIGN_IN,
        authorize_endpoint="https://accounts.google.com/o/oauth2/v2/auth",
        token_endpoint="https://oauth2.googleapis.com/token",
        profile_endpoint="https://openidconnect.googleapis.com/v1/userinfo",
        scopes=("openid", "profile", "email"),
        profile_fields=ProfileFields(subject="sub", picture="picture"),
        api_page=False,
    ),
    ProviderSpec(
        name="twitter",
        display_name="Twitter",
        flow=FlowKind.SIGN_IN,
        authorize_endpoint="https://twitter.com/i/oauth2/authorize",
        token_endpoint="https://api.twitter.com/2/oauth2/token",
        profile_endpoint="https://api.twitter.com/2/users/me?user.fields=profile_image_url",
        scopes=("tweet.read", "users.read"),
        token_auth="basic",
        profile_fields=ProfileFields(
            subject="data.id", email=None, name="data.name", picture="data.profile_image_url"
        ),
    ),
    ProviderSpec(
        name="linkedin",
        display_name="LinkedIn",
        flow=FlowKind.SIGN_IN,
        authorize_endpoint="https://www.linkedin.com/oauth/v2/authorization",
        token_endpoint="https://www.linkedin.com/oauth/v2/accessToken",
        profile_endpoint="https://api.linkedin.com/v2/userinfo",
        scopes=("openid", "profile", "email"),
        profile_fields=ProfileFields(subject="sub", picture="picture"),
    ),
    ProviderSpec(
        name="instagram",
        display_name="Instagram",
        flow=FlowKind.SIGN_IN,
        authorize_endpoint="https://api.instagram.com/oauth/authorize",
        token_endpoint="https://api.instagram.com/oauth/access_token",
        profile_endpoint="https://graph.instagram.com/me?fields=id,username",
        scopes=("user_profile",),
        profile_fields=ProfileFields(email=None, name="username"),
    ),
    # ---- Authorize (API access) ----
    ProviderSpec(
        name="foursquare",
        display_name="Foursquare",
        flow=FlowKind.AUTHORIZE,
        authorize_endpoint="https://foursquare.com/oauth2/authenticate",
        token_endpoint="https://foursquare.com/oauth2/access_token",
        profile_endpoint="https://api.foursquare.com/v2/users/self?v=20240101",
        token_query_param="oauth_token",
        profile_fields=ProfileFields(
            subject="response.user.id", email="response.user.contact.email", name="response.user.firstName"
        ),
    ),
    ProviderSpec(
        name="tumblr",
        display_name="Tumblr",
        flow=FlowKind.AUTHORIZE,
        authorize_endpoint="https://www.tumblr.com/oauth2/authorize",
        token_endpoint="https://api.tumblr.com/v2/oauth2/token",
        profile_endpoint="https://api.tumblr.com/v2/user/info",
        scopes=("basic",),
        profile_fields=ProfileFields(subject="response.user.name", email=None, name="response.user.name"),
    ),
    ProviderSpec(
        name="pinterest",
        display_name="Pinterest",
        flow=FlowKind.AUTHORIZE,
        authorize_endpoint="https://www.pinterest.com/oauth/",
        token_endpoint="https://api.pinterest.com/v5/oauth/token",
        profile_endpoint="https://api.pinterest.com/v5/user_account",
        scopes=("user_accounts:read", "boards:read", "pins:read"),
        scope_separator=",",
        token_auth="basic",
        profile_fields=ProfileFields(subject="username", email=None, name="username", picture="profile_image"),
        failure_redirect="/login",
    ),
)

PROVIDERS: Dict[str, ProviderSpec] = {spec.name: spec for spec in _SPECS}


def get_provider(name: str, table: Optional[Mapping[str, ProviderSpec]] = None) -> Optional[ProviderSpec]:
    return (table if table is not None else PROVIDERS).get((name or "").strip().lower())


def _dig(data: Any, path: Optional[str]) -> Any:
    if not path:
        return None
    cur = data
    for part in path.split("."):
        if not isinstance(cur, dict):
            return None
        cur = cur.get(part)
    return cur


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def extract_profile(spec: ProviderSpec, raw: Mapping[str, Any]) -> OAuthProfile:
    """
    Normalize a provider profile document. Raises ValueError when no subject is present.
    """
    fields = spec.profile_fields
    subject = _opt_str(_dig(raw, fields.subject))
    if not subject:
        raise ValueError(f"Profile missing subject field {fields.subject!r}")
    email = _opt_str(_dig(raw, fields.email))
    if email and "@" not in email:
        email = None
    return OAuthProfile(
        provider=spec.name,
        subject=subject,
        email=email.lower() if email else None,
        name=_opt_str(_dig(raw, fields.name)),
        picture=_opt_str(_dig(raw, fields.picture)),
    )
