"""
OAuth callback orchestration.

Initiation and callback are two unrelated requests correlated only through the session
(`portal.oauth.<provider>` holds the state token + PKCE verifier) and the provider-issued
state parameter. Nothing is kept in process between them.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Tuple

import requests
from starlette.concurrency import run_in_threadpool

from portal.auth.deps import login_user
from portal.auth.models import LinkedCredential, OAuthProfile, Principal, UserAccount
from portal.auth.oauth import IdentityClient, pkce_challenge
from portal.auth.providers import FlowKind, ProviderSpec, extract_profile
from portal.auth.session import SessionBag
from portal.auth.users import CredentialInUse, DuplicateEmail, UserStore
from portal.auth.util import random_token, sanitize_next_path, tokens_match
from portal.config import AppConfig
from portal.core import return_to
from portal.core.errors import ProviderCallbackFailure, Unauthenticated
from portal.core.flash import flash
from portal.core.namespace import Namespace

logger = logging.getLogger(__name__)

OAUTH_SESSION_PREFIX = "portal.oauth."

SIGN_IN_FAILED = "Sign in failed. Please try again."


def pending_key(provider: str) -> str:
    return f"{OAUTH_SESSION_PREFIX}{provider}"


class CallbackOrchestrator:
    def __init__(
        self,
        *,
        config: AppConfig,
        ns: Namespace,
        client: IdentityClient,
        users: UserStore,
    ) -> None:
        self.config = config
        self.ns = ns
        self.client = client
        self.users = users

    def redirect_uri(self, spec: ProviderSpec) -> str:
        base = (self.config.public_base_url or "").strip().rstrip("/")
        return f"{base}{self.ns.resolve(f'/auth/{spec.name}/callback')}"

    def initiate(self, spec: ProviderSpec, session: SessionBag, principal: Optional[Principal]) -> str:
        """
        Start a flow: park state + verifier in the session and return the provider URL.

        Authorize flows extend an existing identity, so they need a Principal.
        """
        if spec.flow is FlowKind.AUTHORIZE and principal is None:
            raise Unauthenticated()
        state = random_token(32)
        verifier = random_token(32)  # 43+ chars (base64url) -> valid PKCE verifier
        session[pending_key(spec.name)] = {"state": state, "verifier": verifier}
        return self.client.authorize_url(
            spec,
            redirect_uri=self.redirect_uri(spec),
            state=state,
            code_challenge=pkce_challenge(verifier),
        )

    async def complete(
        self,
        spec: ProviderSpec,
        session: SessionBag,
        principal: Optional[Principal],
        params: Mapping[str, Any],
    ) -> str:
        """
        Finish a flow and return the physical path to redirect to.

        Never raises for provider/validation problems: those become a flash + failure redirect.
        """
        pending = session.pop(pending_key(spec.name), None)
        try:
            credential, profile = await self._exchange(spec, pending, principal, params)
            if spec.flow is FlowKind.SIGN_IN:
                return await self._finish_sign_in(spec, session, principal, profile, credential)
            return await self._finish_authorize(spec, session, principal, credential)
        except ProviderCallbackFailure as exc:
            return self._fail(spec, session, exc)

    async def _exchange(
        self,
        spec: ProviderSpec,
        pending: Any,
        principal: Optional[Principal],
        params: Mapping[str, Any],
    ) -> Tuple[LinkedCredential, OAuthProfile]:
        def failure(stage: str, reason: str) -> ProviderCallbackFailure:
            return ProviderCallbackFailure(spec.name, stage=stage, reason=reason, flow=spec.flow.value)

        error = str(params.get("error") or "").strip()
        if error:
            desc = str(params.get("error_description") or "").strip()
            raise failure("provider", f"{error}: {desc}" if desc else error)
        if not isinstance(pending, dict) or not tokens_match(pending.get("state"), params.get("state")):
            raise failure("state", "missing or mismatched state")
        code = str(params.get("code") or "").strip()
        if not code:
            raise failure("provider", "missing authorization code")
        if spec.flow is FlowKind.AUTHORIZE and principal is None:
            raise failure("principal", "authorize callback without an authenticated principal")

        try:
            tokens: Dict[str, Any] = await run_in_threadpool(
                self.client.exchange_code,
                spec,
                redirect_uri=self.redirect_uri(spec),
                code=code,
                code_verifier=str(pending.get("verifier") or ""),
            )
        except (requests.RequestException, ValueError) as e:
            raise failure("token_exchange", str(e)) from e
        access_token = str(tokens.get("access_token") or "").strip()
        if not access_token:
            raise failure("token_exchange", "token response without access_token")

        try:
            raw = await run_in_threadpool(self.client.fetch_profile, spec, access_token)
            profile = extract_profile(spec, raw)
        except (requests.RequestException, ValueError) as e:
            raise failure("profile", str(e)) from e

        scope_raw = str(tokens.get("scope") or "").replace(",", " ")
        credential = LinkedCredential(
            provider=spec.name,
            subject=profile.subject,
            access_token=access_token,
            refresh_token=str(tokens.get("refresh_token") or "") or None,
            scopes=tuple(s for s in scope_raw.split(" ") if s) or spec.scopes,
        )
        return credential, profile

    def _resolve_account(
        self,
        spec: ProviderSpec,
        principal: Optional[Principal],
        profile: OAuthProfile,
        credential: LinkedCredential,
    ) -> UserAccount:
        """Link to the signed-in user, reuse a known identity, or create a new account."""
        owner = self.users.find_by_provider(spec.name, profile.subject)
        if principal is not None:
            if owner is not None and owner.id != principal.user_id:
                raise ProviderCallbackFailure(
                    spec.name, stage="account", reason="identity linked to another account", flow=spec.flow.value
                )
            return self.users.link_credential(principal.user_id, credential)
        if owner is not None:
            return self.users.link_credential(owner.id, credential)
        if profile.email and self.users.find_by_email(profile.email) is not None:
            # Must be linked from that account's settings; not merged silently.
            raise ProviderCallbackFailure(
                spec.name, stage="account", reason="email belongs to an existing account", flow=spec.flow.value
            )
        return self.users.create_from_profile(profile, credential)

    async def _finish_sign_in(
        self,
        spec: ProviderSpec,
        session: SessionBag,
        principal: Optional[Principal],
        profile: OAuthProfile,
        credential: LinkedCredential,
    ) -> str:
        try:
            account = await run_in_threadpool(self._resolve_account, spec, principal, profile, credential)
        except (CredentialInUse, DuplicateEmail) as e:
            raise ProviderCallbackFailure(
                spec.name, stage="account", reason=type(e).__name__, flow=spec.flow.value
            ) from e
        if principal is not None:
            flash(session, "info", f"{spec.display_name} account has been linked.")
        login_user(session, account)
        logger.info("Sign-in completed: provider=%s user_id=%s", spec.name, account.id)
        fallback = self.ns.resolve(spec.success_path)
        return sanitize_next_path(return_to.consume_or_default(session, fallback), fallback)

    async def _finish_authorize(
        self,
        spec: ProviderSpec,
        session: SessionBag,
        principal: Optional[Principal],
        credential: LinkedCredential,
    ) -> str:
        if principal is None:
            raise ProviderCallbackFailure(
                spec.name, stage="principal", reason="principal lost before linking", flow=spec.flow.value
            )
        try:
            await run_in_threadpool(self.users.link_credential, principal.user_id, credential)
        except (CredentialInUse, KeyError) as e:
            raise ProviderCallbackFailure(
                spec.name, stage="account", reason=type(e).__name__, flow=spec.flow.value
            ) from e
        flash(session, "info", f"{spec.display_name} account has been linked.")
        logger.info("Authorize completed: provider=%s user_id=%s", spec.name, principal.user_id)
        return self.ns.resolve(spec.success_path)

    def _fail(self, spec: ProviderSpec, session: SessionBag, exc: ProviderCallbackFailure) -> str:
        # Structured cause for operators; the visitor only sees a generic message.
        logger.warning(
            "OAuth callback failed: provider=%s flow=%s stage=%s reason=%s",
            exc.provider,
            exc.flow or spec.flow.value,
            exc.stage,
            exc.reason,
        )
        if spec.flow is FlowKind.SIGN_IN:
            flash(session, "errors", SIGN_IN_FAILED)
        else:
            flash(session, "errors", f"Could not connect your {spec.display_name} account. Please try again.")
        return self.ns.resolve(spec.failure_path)
