"""
Mountable web front-end.

Every route is declared as a `RouteDescriptor` with a logical path; `create_app` resolves
them once against the configured namespace. Request pipeline (outermost first):
request logging -> security headers -> session load/save -> access gate (principal +
return-to capture) -> CSRF verification -> route guards -> handler.
"""

from __future__ import annotations

import logging
import os
import shutil
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import requests
from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from portal.api.forms import (
    ContactForm,
    ForgotForm,
    LoginForm,
    PasswordForm,
    ProfileForm,
    SignupForm,
    validate_form,
)
from portal.auth.deps import current_principal, login_user, logout_user
from portal.auth.models import Principal
from portal.auth.oauth import IdentityClient, OAuthClient
from portal.auth.orchestrator import CallbackOrchestrator
from portal.auth.providers import PROVIDERS, FlowKind, ProviderSpec, get_provider
from portal.auth.session import MemorySessionStore, SessionMiddleware, SessionStore, get_session
from portal.auth.users import DuplicateEmail, MemoryUserStore, PostgresUserStore, UserStore
from portal.auth.util import hash_token, random_token, sanitize_next_path
from portal.config import AppConfig, load_config
from portal.core import return_to
from portal.core.csrf import CsrfPolicy, csrf_protect, csrf_token
from portal.core.errors import CsrfMismatch, SessionStoreUnavailable, Unauthenticated, Unauthorized
from portal.core.flash import flash, pop_flashes
from portal.core.gate import AccessGateMiddleware, GatePaths, requires_principal, requires_provider_link
from portal.core.namespace import Namespace
from portal.core.routes import RouteDescriptor, mount_routes
from portal.services.mail import MailDeliveryError, Mailer, MailMessage, mailer_from_config

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: AppConfig
    ns: Namespace
    users: UserStore
    sessions: SessionStore
    mailer: Mailer
    client: IdentityClient
    orchestrator: CallbackOrchestrator
    csrf_policy: CsrfPolicy
    providers: Mapping[str, ProviderSpec]


def _svc(request: Request) -> Services:
    return request.app.state.portal


def _redirect(url: str) -> RedirectResponse:
    resp = RedirectResponse(url=url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _user_json(principal: Optional[Principal]) -> Optional[Dict[str, Any]]:
    if principal is None:
        return None
    return {
        "id": principal.user_id,
        "email": principal.email,
        "name": principal.name,
        "picture": principal.picture,
        "linked": principal.linked_providers,
    }


def _page(request: Request, title: str, **extra: Any) -> Dict[str, Any]:
    """
    View-model for a page render: the template layer (external) turns this into HTML.
    """
    session = get_session(request)
    return {
        "ok": True,
        "title": title,
        "user": _user_json(current_principal(request)),
        "csrfToken": csrf_token(session),
        "messages": pop_flashes(session),
        **extra,
    }


def _flash_all(request: Request, category: str, messages: List[str]) -> None:
    session = get_session(request)
    for msg in messages:
        flash(session, category, msg)


def _provider_summary(svc: Services, principal: Optional[Principal]) -> List[Dict[str, Any]]:
    out = []
    for spec in svc.providers.values():
        out.append(
            {
                "name": spec.name,
                "displayName": spec.display_name,
                "flow": spec.flow.value,
                "enabled": svc.config.provider_enabled(spec.name),
                "linked": bool(principal and principal.has_link(spec.name)),
                "connectUrl": svc.ns.resolve(f"/auth/{spec.name}"),
            }
        )
    return out


# ---- Pages ----


async def home(request: Request) -> Dict[str, Any]:
    return _page(request, "Home")


async def get_login(request: Request):
    svc = _svc(request)
    if current_principal(request) is not None:
        return _redirect(svc.ns.resolve("/"))
    sign_in = [p for p in _provider_summary(svc, None) if p["flow"] == FlowKind.SIGN_IN.value and p["enabled"]]
    return _page(request, "Login", providers=sign_in)


async def post_login(request: Request) -> RedirectResponse:
    svc = _svc(request)
    session = get_session(request)
    form, errors = validate_form(LoginForm, await request.form())
    if form is None:
        _flash_all(request, "errors", errors)
        return _redirect(svc.ns.resolve("/login"))

    account = await run_in_threadpool(svc.users.authenticate, form.email, form.password)
    if account is None:
        flash(session, "errors", "Invalid email or password.")
        return _redirect(svc.ns.resolve("/login"))

    login_user(session, account)
    flash(session, "success", "Success! You are logged in.")
    fallback = svc.ns.resolve("/")
    return _redirect(sanitize_next_path(return_to.consume_or_default(session, fallback), fallback))


async def logout(request: Request) -> RedirectResponse:
    logout_user(get_session(request))
    return _redirect(_svc(request).ns.resolve("/"))


async def get_signup(request: Request):
    if current_principal(request) is not None:
        return _redirect(_svc(request).ns.resolve("/"))
    return _page(request, "Create Account")


async def post_signup(request: Request) -> RedirectResponse:
    svc = _svc(request)
    session = get_session(request)
    form, errors = validate_form(SignupForm, await request.form())
    if form is None:
        _flash_all(request, "errors", errors)
        return _redirect(svc.ns.resolve("/signup"))
    try:
        account = await run_in_threadpool(svc.users.create_local, form.email, form.password)
    except DuplicateEmail:
        flash(session, "errors", "Account with that email address already exists.")
        return _redirect(svc.ns.resolve("/signup"))
    login_user(session, account)
    return _redirect(svc.ns.resolve("/"))


async def get_contact(request: Request) -> Dict[str, Any]:
    return _page(request, "Contact")


async def post_contact(request: Request) -> RedirectResponse:
    svc = _svc(request)
    session = get_session(request)
    target = svc.ns.resolve("/contact")
    form, errors = validate_form(ContactForm, await request.form())
    if form is None:
        _flash_all(request, "errors", errors)
        return _redirect(target)

    message = MailMessage(
        to=svc.config.contact_recipient,
        from_addr=f"{form.name} <{form.email}>",
        subject="Contact Form | Portal",
        text=form.message,
    )
    try:
        await run_in_threadpool(svc.mailer.send, message)
    except MailDeliveryError as e:
        logger.warning("Contact mail delivery failed: %s", str(e))
        flash(session, "errors", str(e))
        return _redirect(target)
    flash(session, "success", "Email has been sent successfully!")
    return _redirect(target)


# ---- Password reset ----

RESET_INVALID = "Password reset token is invalid or has expired."


def _external_url(request: Request, physical_path: str) -> str:
    base = _svc(request).config.public_base_url or str(request.base_url)
    return base.rstrip("/") + physical_path


async def get_forgot(request: Request):
    if current_principal(request) is not None:
        return _redirect(_svc(request).ns.resolve("/"))
    return _page(request, "Forgot Password")


async def post_forgot(request: Request) -> RedirectResponse:
    svc = _svc(request)
    session = get_session(request)
    target = svc.ns.resolve("/forgot")
    form, errors = validate_form(ForgotForm, await request.form())
    if form is None:
        _flash_all(request, "errors", errors)
        return _redirect(target)

    account = await run_in_threadpool(svc.users.find_by_email, form.email)
    if account is not None:
        token = random_token(32)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=svc.config.password_reset_ttl_seconds)
        await run_in_threadpool(svc.users.set_password_reset, account.id, hash_token(token), expires_at)
        link = _external_url(request, svc.ns.resolve(f"/reset/{token}"))
        message = MailMessage(
            to=account.email,
            from_addr=svc.config.mail_from,
            subject="Reset your password on Portal",
            text=(
                "You are receiving this email because you (or someone else) have requested the reset of the "
                "password for your account.\n\n"
                "Please click on the following link, or paste this into your browser to complete the process:\n\n"
                f"{link}\n\n"
                "If you did not request this, please ignore this email and your password will remain unchanged.\n"
            ),
        )
        try:
            await run_in_threadpool(svc.mailer.send, message)
        except MailDeliveryError as e:
            logger.warning("Password reset mail delivery failed: user_id=%s reason=%s", account.id, str(e))
            flash(session, "errors", str(e))
            return _redirect(target)
        logger.info("Password reset requested: user_id=%s", account.id)
    # Same answer whether or not the address is registered.
    flash(session, "info", "If an account with that email address exists, an e-mail has been sent with instructions.")
    return _redirect(target)


async def get_reset(request: Request, token: str):
    svc = _svc(request)
    if current_principal(request) is not None:
        return _redirect(svc.ns.resolve("/"))
    account = await run_in_threadpool(svc.users.find_by_password_reset, hash_token(token))
    if account is None:
        flash(get_session(request), "errors", RESET_INVALID)
        return _redirect(svc.ns.resolve("/forgot"))
    return _page(request, "Reset Password")


async def post_reset(request: Request, token: str) -> RedirectResponse:
    svc = _svc(request)
    session = get_session(request)
    if current_principal(request) is not None:
        return _redirect(svc.ns.resolve("/"))
    form, errors = validate_form(PasswordForm, await request.form())
    if form is None:
        _flash_all(request, "errors", errors)
        return _redirect(svc.ns.resolve(f"/reset/{token}"))

    account = await run_in_threadpool(svc.users.find_by_password_reset, hash_token(token))
    if account is None:
        flash(session, "errors", RESET_INVALID)
        return _redirect(svc.ns.resolve("/forgot"))

    # Also retires the token.
    await run_in_threadpool(svc.users.set_password, account.id, form.password)
    login_user(session, account)
    fallback = svc.ns.resolve("/")
    # The pending destination is this reset page; it is not resumed.
    return_to.consume_or_default(session, fallback)

    message = MailMessage(
        to=account.email,
        from_addr=svc.config.mail_from,
        subject="Your Portal password has been changed",
        text=f"This is a confirmation that the password for your account {account.email} has just been changed.\n",
    )
    try:
        await run_in_threadpool(svc.mailer.send, message)
    except MailDeliveryError as e:
        logger.warning("Password change confirmation not delivered: user_id=%s reason=%s", account.id, str(e))
    logger.info("Password reset completed: user_id=%s", account.id)
    flash(session, "success", "Success! Your password has been changed.")
    return _redirect(fallback)


# ---- Account (requires a Principal) ----


async def get_account(request: Request) -> Dict[str, Any]:
    svc = _svc(request)
    return _page(request, "Account Management", providers=_provider_summary(svc, current_principal(request)))


async def post_update_profile(request: Request) -> RedirectResponse:
    svc = _svc(request)
    session = get_session(request)
    principal = await requires_principal(request)
    target = svc.ns.resolve("/account")
    form, errors = validate_form(ProfileForm, await request.form())
    if form is None:
        _flash_all(request, "errors", errors)
        return _redirect(target)
    try:
        await run_in_threadpool(svc.users.update_profile, principal.user_id, email=form.email, name=form.name)
    except DuplicateEmail:
        flash(session, "errors", "The email address you have entered is already associated with an account.")
        return _redirect(target)
    flash(session, "success", "Profile information has been updated.")
    return _redirect(target)


async def post_update_password(request: Request) -> RedirectResponse:
    svc = _svc(request)
    session = get_session(request)
    principal = await requires_principal(request)
    target = svc.ns.resolve("/account")
    form, errors = validate_form(PasswordForm, await request.form())
    if form is None:
        _flash_all(request, "errors", errors)
        return _redirect(target)
    await run_in_threadpool(svc.users.set_password, principal.user_id, form.password)
    flash(session, "success", "Password has been changed.")
    return _redirect(target)


async def post_delete_account(request: Request) -> RedirectResponse:
    svc = _svc(request)
    principal = await requires_principal(request)
    await run_in_threadpool(svc.users.delete, principal.user_id)
    logger.info("Account deleted: user_id=%s", principal.user_id)
    logout_user(get_session(request))
    return _redirect(svc.ns.resolve("/"))


async def get_oauth_unlink(request: Request, provider: str) -> RedirectResponse:
    svc = _svc(request)
    principal = await requires_principal(request)
    spec = get_provider(provider, svc.providers)
    if spec is None:
        raise HTTPException(status_code=404, detail="Unknown provider")
    await run_in_threadpool(svc.users.unlink_credential, principal.user_id, spec.name)
    flash(get_session(request), "info", f"{spec.display_name} account has been unlinked.")
    return _redirect(svc.ns.resolve("/account"))


# ---- API examples ----


async def get_api(request: Request) -> Dict[str, Any]:
    svc = _svc(request)
    return _page(request, "API Examples", providers=_provider_summary(svc, current_principal(request)))


def _api_provider_page(spec: ProviderSpec):
    async def api_provider(request: Request) -> Dict[str, Any]:
        svc = _svc(request)
        principal = await requires_principal(request)
        cred = principal.credential_for(spec.name)
        profile: Optional[Dict[str, Any]] = None
        try:
            profile = await run_in_threadpool(svc.client.fetch_profile, spec, cred.access_token if cred else "")
        except (requests.RequestException, ValueError) as e:
            logger.warning("API call failed: provider=%s user_id=%s reason=%s", spec.name, principal.user_id, str(e))
            flash(get_session(request), "errors", f"Could not load {spec.display_name} data.")
        return _page(request, f"{spec.display_name} API", provider=spec.name, profile=profile)

    api_provider.__name__ = f"api_{spec.name}"
    return api_provider


async def get_file_upload(request: Request) -> Dict[str, Any]:
    return _page(request, "File Upload")


async def post_file_upload(request: Request, my_file: Optional[UploadFile] = File(None, alias="myFile")):
    svc = _svc(request)
    session = get_session(request)
    target = svc.ns.resolve("/api/upload")
    if my_file is None or not my_file.filename:
        flash(session, "errors", "No file was selected.")
        return _redirect(target)

    upload_dir = Path(svc.config.upload_dir)
    # Stored under a random name; the client-supplied name is never used as a path.
    stored_name = random_token(16)

    def _store() -> int:
        upload_dir.mkdir(parents=True, exist_ok=True)
        dest = upload_dir / stored_name
        with dest.open("wb") as out:
            shutil.copyfileobj(my_file.file, out)
        return dest.stat().st_size

    size = await run_in_threadpool(_store)
    logger.info("Stored upload %s (%d bytes, original=%r)", stored_name, size, my_file.filename)
    flash(session, "success", "File was uploaded successfully.")
    return _redirect(target)


# ---- OAuth ----


def _auth_initiate(spec: ProviderSpec):
    async def auth_initiate(request: Request) -> RedirectResponse:
        svc = _svc(request)
        if not svc.config.provider_enabled(spec.name):
            raise HTTPException(status_code=404, detail="Provider is not enabled")
        url = svc.orchestrator.initiate(spec, get_session(request), current_principal(request))
        return _redirect(url)

    auth_initiate.__name__ = f"auth_{spec.name}"
    return auth_initiate


def _auth_callback(spec: ProviderSpec):
    async def auth_callback(request: Request) -> RedirectResponse:
        svc = _svc(request)
        if not svc.config.provider_enabled(spec.name):
            raise HTTPException(status_code=404, detail="Provider is not enabled")
        target = await svc.orchestrator.complete(
            spec, get_session(request), current_principal(request), request.query_params
        )
        return _redirect(target)

    auth_callback.__name__ = f"auth_{spec.name}_callback"
    return auth_callback


def build_routes(providers: Mapping[str, ProviderSpec]) -> List[RouteDescriptor]:
    routes = [
        RouteDescriptor("GET", "/", home),
        RouteDescriptor("GET", "/login", get_login),
        RouteDescriptor("POST", "/login", post_login),
        RouteDescriptor("GET", "/logout", logout),
        RouteDescriptor("GET", "/forgot", get_forgot),
        RouteDescriptor("POST", "/forgot", post_forgot),
        RouteDescriptor("GET", "/reset/{token}", get_reset),
        RouteDescriptor("POST", "/reset/{token}", post_reset),
        RouteDescriptor("GET", "/signup", get_signup),
        RouteDescriptor("POST", "/signup", post_signup),
        RouteDescriptor("GET", "/contact", get_contact),
        RouteDescriptor("POST", "/contact", post_contact),
        RouteDescriptor("GET", "/account", get_account, (requires_principal,)),
        RouteDescriptor("POST", "/account/profile", post_update_profile, (requires_principal,)),
        RouteDescriptor("POST", "/account/password", post_update_password, (requires_principal,)),
        RouteDescriptor("POST", "/account/delete", post_delete_account, (requires_principal,)),
        RouteDescriptor("GET", "/account/unlink/{provider}", get_oauth_unlink, (requires_principal,)),
        RouteDescriptor("GET", "/api", get_api),
        RouteDescriptor("GET", "/api/upload", get_file_upload),
        RouteDescriptor("POST", "/api/upload", post_file_upload),
    ]
    for spec in providers.values():
        if not spec.api_page:
            continue
        routes.append(
            RouteDescriptor(
                "GET",
                f"/api/{spec.name}",
                _api_provider_page(spec),
                (requires_principal, requires_provider_link(spec.name)),
                name=f"api_{spec.name}",
            )
        )
    for spec in providers.values():
        routes.append(RouteDescriptor("GET", f"/auth/{spec.name}", _auth_initiate(spec), name=f"auth_{spec.name}"))
        routes.append(
            RouteDescriptor(
                "GET",
                f"/auth/{spec.name}/callback",
                _auth_callback(spec),
                name=f"auth_{spec.name}_callback",
            )
        )
    return routes


def _default_users(cfg: AppConfig) -> UserStore:
    if cfg.postgres_dsn:
        return PostgresUserStore(cfg.postgres_dsn)
    logger.warning("POSTGRES_DSN not set; using in-memory user store (accounts are lost on restart)")
    return MemoryUserStore()


def create_app(
    config: Optional[AppConfig] = None,
    *,
    session_store: Optional[SessionStore] = None,
    users: Optional[UserStore] = None,
    identity_client: Optional[IdentityClient] = None,
    mailer: Optional[Mailer] = None,
    providers: Optional[Mapping[str, ProviderSpec]] = None,
) -> FastAPI:
    """
    Build the application. The namespace is fixed here and closed over by every route.
    """
    cfg = config or load_config()
    if not cfg.session_secret:
        raise RuntimeError("Session signing is not configured (SESSION_SECRET)")

    ns = Namespace(cfg.namespace)
    table = dict(providers if providers is not None else PROVIDERS)
    users = users or _default_users(cfg)
    client = identity_client or OAuthClient(cfg)
    csrf_policy = CsrfPolicy.for_namespace(ns)
    services = Services(
        config=cfg,
        ns=ns,
        users=users,
        sessions=session_store or MemorySessionStore(),
        mailer=mailer or mailer_from_config(cfg),
        client=client,
        orchestrator=CallbackOrchestrator(config=cfg, ns=ns, client=client, users=users),
        csrf_policy=csrf_policy,
        providers=table,
    )

    # CSRF runs as an app-wide dependency, ahead of each route's own guards.
    app = FastAPI(
        title="Portal",
        dependencies=[Depends(csrf_protect(csrf_policy))],
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.portal = services

    @app.on_event("startup")
    def _startup_ensure_user_schema() -> None:
        ensure_schema = getattr(services.users, "ensure_schema", None)
        if ensure_schema is not None:
            ensure_schema()
        logger.info(
            "Portal ready: namespace=%s providers=%s",
            ns.prefix or "(none)",
            ",".join(cfg.enabled_providers) or "(none)",
        )

    @app.exception_handler(Unauthenticated)
    async def _on_unauthenticated(request: Request, exc: Unauthenticated) -> RedirectResponse:
        # Destination was already captured by the gate middleware.
        return _redirect(ns.resolve("/login"))

    @app.exception_handler(Unauthorized)
    async def _on_unauthorized(request: Request, exc: Unauthorized) -> RedirectResponse:
        return _redirect(ns.resolve(f"/auth/{exc.provider}"))

    @app.exception_handler(CsrfMismatch)
    async def _on_csrf_mismatch(request: Request, exc: CsrfMismatch) -> JSONResponse:
        logger.warning("CSRF rejected: %s %s (%s)", request.method, request.url.path, exc.reason)
        return JSONResponse(status_code=403, content={"detail": exc.reason})

    @app.exception_handler(SessionStoreUnavailable)
    async def _on_store_unavailable(request: Request, exc: SessionStoreUnavailable) -> JSONResponse:
        logger.error("Session store unavailable during %s %s: %s", request.method, request.url.path, str(exc))
        return JSONResponse(status_code=503, content={"detail": "Session store unavailable"})

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {"ok": True}

    mount_routes(app, ns, build_routes(table))

    # Added innermost first.
    app.add_middleware(AccessGateMiddleware, users=users, paths=GatePaths.for_namespace(ns))
    app.add_middleware(SessionMiddleware, store=services.sessions, config=cfg, skip_paths=("/healthz",))

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "SAMEORIGIN")
        response.headers.setdefault("X-XSS-Protection", "1; mode=block")
        return response

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all incoming HTTP requests."""
        start_time = time.time()
        logger.debug("%s %s", request.method, request.url.path)
        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
            raise
        process_time = time.time() - start_time
        logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
        return response

    return app


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
    import uvicorn

    # Configure logging for the application
    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    logger.info("Starting portal on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run("portal.api.webapp:create_app", factory=True, host=host, port=port, log_level=uvicorn_log_level)
