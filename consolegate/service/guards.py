"""Render gates over the live session.

Guards hold no state of their own: every :meth:`Guard.evaluate` reads the
session's current snapshot, and :meth:`Guard.watch` re-decides on every
commit, so a decision can never lag behind a phase change.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

from consolegate.service.session import SessionStore
from consolegate.storage.models import Capability, Phase, SessionSnapshot


class Outcome(str, Enum):
    RENDER = "render"
    REDIRECT = "redirect"
    FORBIDDEN = "forbidden"
    HIDDEN = "hidden"
    LOADING = "loading"


@dataclass(frozen=True)
class GuardDecision:
    outcome: Outcome
    redirect_to: Optional[str] = None
    return_to: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.outcome is Outcome.RENDER


RENDER = GuardDecision(Outcome.RENDER)
LOADING = GuardDecision(Outcome.LOADING)


def sanitize_redirect_path(
    path: Optional[str], allowed: Iterable[str], fallback: str = "/"
) -> str:
    """Normalize redirect targets to internal allowlisted paths only."""
    if not path:
        return fallback
    if path.startswith("//"):
        return fallback
    if "://" in path or "\\" in path:
        return fallback
    if not path.startswith("/"):
        return fallback
    base = path.split("?", 1)[0].split("#", 1)[0]
    if len(base) > 1:
        base = base.rstrip("/")
    if base not in set(allowed):
        return fallback
    return path


class Guard:
    def __init__(self, session: SessionStore) -> None:
        self.session = session

    def decide(self, snapshot: SessionSnapshot, location: Optional[str] = None) -> GuardDecision:
        raise NotImplementedError

    def evaluate(self, location: Optional[str] = None) -> GuardDecision:
        return self.decide(self.session.snapshot, location)

    def watch(
        self, callback: Callable[[GuardDecision], None], location: Optional[str] = None
    ) -> Callable[[], None]:
        """Call ``callback`` with a fresh decision after every session commit."""

        def on_commit(snapshot: SessionSnapshot) -> None:
            callback(self.decide(snapshot, location))

        return self.session.subscribe(on_commit)


class GuestOnly(Guard):
    """Login and password pages: only for operators who are not signed in.

    The second-factor form lives on the login page, so a pending challenge
    still renders unless ``allow_pending_mfa`` is off.
    """

    def __init__(
        self,
        session: SessionStore,
        landing_route: str = "/dashboard",
        *,
        allow_pending_mfa: bool = True,
    ) -> None:
        super().__init__(session)
        self.landing_route = landing_route
        self.allow_pending_mfa = allow_pending_mfa

    def decide(self, snapshot: SessionSnapshot, location: Optional[str] = None) -> GuardDecision:
        if not snapshot.initialized:
            return LOADING
        if snapshot.phase is Phase.ANONYMOUS:
            return RENDER
        if snapshot.phase is Phase.AWAITING_MFA and self.allow_pending_mfa:
            return RENDER
        return GuardDecision(Outcome.REDIRECT, redirect_to=self.landing_route)


class AuthRequired(Guard):
    def __init__(
        self,
        session: SessionStore,
        login_route: str = "/login",
        *,
        redirect_after_login: bool = False,
    ) -> None:
        super().__init__(session)
        self.login_route = login_route
        self.redirect_after_login = redirect_after_login

    def decide(self, snapshot: SessionSnapshot, location: Optional[str] = None) -> GuardDecision:
        if not snapshot.initialized:
            return LOADING
        if snapshot.phase is Phase.AUTHENTICATED:
            return RENDER
        return_to = None
        if self.redirect_after_login and location and location != self.login_route:
            return_to = location
        return GuardDecision(Outcome.REDIRECT, redirect_to=self.login_route, return_to=return_to)


class CapabilityRequired(Guard):
    """Authenticated operators holding the required capabilities.

    ``capability``, ``any_of`` and ``all_of`` combine with AND; at least one
    must be given. Anonymous operators always get the login redirect.
    """

    def __init__(
        self,
        session: SessionStore,
        capability: Optional[Capability] = None,
        *,
        any_of: Optional[Iterable[Capability]] = None,
        all_of: Optional[Iterable[Capability]] = None,
        hide: bool = False,
        auth: Optional[AuthRequired] = None,
    ) -> None:
        super().__init__(session)
        if capability is None and not any_of and not all_of:
            raise ValueError("capability, any_of or all_of is required")
        self.capability = capability
        self.any_of = frozenset(any_of or ())
        self.all_of = frozenset(all_of or ())
        self.hide = hide
        self.auth = auth or AuthRequired(session)

    def permits(self, snapshot: SessionSnapshot) -> bool:
        operator = snapshot.operator
        if operator is None:
            return False
        if self.capability is not None and not operator.has_capability(self.capability):
            return False
        if self.any_of and not operator.has_any(self.any_of):
            return False
        if self.all_of and not operator.has_all(self.all_of):
            return False
        return True

    def decide(self, snapshot: SessionSnapshot, location: Optional[str] = None) -> GuardDecision:
        decision = self.auth.decide(snapshot, location)
        if not decision.allowed:
            return decision
        if self.permits(snapshot):
            return RENDER
        return GuardDecision(Outcome.HIDDEN if self.hide else Outcome.FORBIDDEN)


__all__ = [
    "AuthRequired",
    "CapabilityRequired",
    "Guard",
    "GuardDecision",
    "GuestOnly",
    "Outcome",
    "sanitize_redirect_path",
]
