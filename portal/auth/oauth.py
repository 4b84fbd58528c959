from __future__ import annotations

import hashlib
import logging
from typing import Any, Dict, Optional, Protocol
from urllib.parse import urlencode

import requests

from portal.auth.providers import ProviderSpec
from portal.auth.util import b64url
from portal.config import AppConfig, ProviderCredentials

logger = logging.getLogger(__name__)


def pkce_challenge(verifier: str) -> str:
    """
    Generate PKCE challenge from verifier using SHA256.
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return b64url(digest)


class IdentityClient(Protocol):
    """
    Provider HTTP boundary. `exchange_code`/`fetch_profile` block; call them via a threadpool.
    """

    def authorize_url(self, spec: ProviderSpec, *, redirect_uri: str, state: str, code_challenge: str) -> str:
        ...

    def exchange_code(self, spec: ProviderSpec, *, redirect_uri: str, code: str, code_verifier: str) -> Dict[str, Any]:
        ...

    def fetch_profile(self, spec: ProviderSpec, access_token: str) -> Dict[str, Any]:
        ...


class OAuthClient:
    """Generic OAuth 2.0 authorization-code client driven by `ProviderSpec`."""

    def __init__(self, config: AppConfig, *, http: Optional[requests.Session] = None, timeout: float = 10) -> None:
        self.config = config
        self.http = http or requests.Session()
        self.timeout = timeout

    def _credentials(self, spec: ProviderSpec) -> ProviderCredentials:
        creds = self.config.providers.get(spec.name)
        if creds is None:
            raise ValueError(f"Provider {spec.name} is not configured")
        return creds

    def authorize_url(self, spec: ProviderSpec, *, redirect_uri: str, state: str, code_challenge: str) -> str:
        """
        Build authorization URL for the provider.
        Supports PKCE (Proof Key for Code Exchange) for security.
        """
        creds = self._credentials(spec)
        params = {
            "client_id": creds.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        if spec.scopes:
            params["scope"] = spec.scope
        sep = "&" if "?" in spec.authorize_endpoint else "?"
        return f"{spec.authorize_endpoint}{sep}{urlencode(params)}"

    def exchange_code(self, spec: ProviderSpec, *, redirect_uri: str, code: str, code_verifier: str) -> Dict[str, Any]:
        """
        Exchange authorization code for tokens.
        """
        creds = self._credentials(spec)
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
            "client_id": creds.client_id,
        }
        auth = None
        if spec.token_auth == "basic":
            auth = (creds.client_id, creds.client_secret)
        else:
            payload["client_secret"] = creds.client_secret

        r = self.http.post(
            spec.token_endpoint,
            data=payload,
            auth=auth,
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )
        if r.status_code >= 400:
            # Avoid leaking sensitive info; include minimal context.
            raise ValueError(f"Token exchange failed (status={r.status_code})")
        data = r.json()
        if not isinstance(data, dict):
            raise ValueError("Invalid token response")
        if data.get("error"):
            raise ValueError(f"Token exchange rejected: {data.get('error')}")
        return data

    def fetch_profile(self, spec: ProviderSpec, access_token: str) -> Dict[str, Any]:
        headers = {"Accept": "application/json"}
        params: Dict[str, str] = {}
        if spec.token_query_param:
            params[spec.token_query_param] = access_token
        else:
            headers["Authorization"] = f"Bearer {access_token}"
        r = self.http.get(spec.profile_endpoint, headers=headers, params=params or None, timeout=self.timeout)
        if r.status_code >= 400:
            raise ValueError(f"Profile request failed (status={r.status_code})")
        data = r.json()
        if not isinstance(data, dict):
            raise ValueError("Invalid profile response")
        return data
