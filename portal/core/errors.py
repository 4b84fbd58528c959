"""
Gate/orchestrator error taxonomy.

Everything here except `SessionStoreUnavailable` is resolved into a redirect or a 403
by the handlers registered in `portal.api.webapp.create_app`.
"""

from __future__ import annotations

from typing import Optional


class GateError(Exception):
    """Base class for request-gating failures."""


class Unauthenticated(GateError):
    """A protected route was requested without a Principal."""


class Unauthorized(GateError):
    """The Principal exists but lacks the provider link the route requires."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"Missing linked credential for provider: {provider}")
        self.provider = provider


class CsrfMismatch(GateError):
    """Anti-forgery token absent or invalid on a non-exempt mutating request."""

    def __init__(self, reason: str = "CSRF token mismatch") -> None:
        super().__init__(reason)
        self.reason = reason


class ProviderCallbackFailure(GateError):
    """
    The identity provider returned an error or the callback could not be completed.

    `stage` and `reason` are for operators only; users see a generic message.
    """

    def __init__(self, provider: str, *, stage: str, reason: str, flow: Optional[str] = None) -> None:
        super().__init__(f"{provider} callback failed at {stage}: {reason}")
        self.provider = provider
        self.stage = stage
        self.reason = reason
        self.flow = flow


class SessionStoreUnavailable(Exception):
    """The session store could not be reached; no session state can be trusted."""
