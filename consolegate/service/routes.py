from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from consolegate.config import Settings, get_settings
from consolegate.service.guards import (
    AuthRequired,
    CapabilityRequired,
    GuardDecision,
    GuestOnly,
    sanitize_redirect_path,
)
from consolegate.service.session import SessionStore
from consolegate.storage.models import Capability as C


@dataclass(frozen=True)
class RouteRule:
    path: str
    capability: Optional[C] = None
    any_of: Tuple[C, ...] = ()

    @property
    def restricted(self) -> bool:
        return self.capability is not None or bool(self.any_of)


GUEST_ROUTES = frozenset(
    {
        "/",
        "/login",
        "/set-password",
        "/reset-password",
        "/setup-password",
        "/confirm-password",
    }
)

_RULES = (
    RouteRule("/dashboard", C.VIEW_DASHBOARD),
    RouteRule("/transactions", any_of=(C.READ_TRANSACTIONS, C.VERIFY_TRANSACTIONS)),
    RouteRule("/users", any_of=(C.READ_USERS, C.SUSPEND_USERS, C.VERIFY_KYC)),
    RouteRule("/team", C.MANAGE_ADMINS),
    RouteRule("/manage-team", C.MANAGE_ADMINS),
    RouteRule("/partners", C.VIEW_ANALYTICS),
    RouteRule("/wallets", C.READ_WALLETS),
    RouteRule("/kyc", C.VERIFY_KYC),
    RouteRule("/conversions", any_of=(C.READ_TRANSACTIONS, C.VERIFY_TRANSACTIONS)),
    RouteRule("/analytics", C.VIEW_ANALYTICS),
    RouteRule("/audit-logs", C.READ_AUDIT_LOGS),
    RouteRule("/bank-accounts", C.READ_USERS),
    RouteRule("/merchants", any_of=(C.READ_USERS, C.VERIFY_KYC)),
    RouteRule("/mail", any_of=(C.VIEW_ANALYTICS, C.MANAGE_ADMINS)),
    RouteRule("/settings", C.MANAGE_ADMINS),
    RouteRule("/security"),
)

PROTECTED_ROUTES: Dict[str, RouteRule] = {rule.path: rule for rule in _RULES}


def route_path(location: str) -> str:
    """Strip query, fragment and trailing slash from a console location."""
    path = location.split("?", 1)[0].split("#", 1)[0] or "/"
    if len(path) > 1:
        path = path.rstrip("/")
    return path


def guard_route(
    session: SessionStore, location: str, *, settings: Optional[Settings] = None
) -> GuardDecision:
    """Decide how ``location`` renders for the current session.

    Authentication is checked before capabilities, so an anonymous visitor
    always gets the login redirect and never a forbidden page. Unknown paths
    behind the login are treated as authenticated-only.
    """
    settings = settings or get_settings()
    path = route_path(location)
    if path in GUEST_ROUTES or path == route_path(settings.login_route):
        return GuestOnly(session, settings.landing_route).evaluate(location)

    auth = AuthRequired(
        session, settings.login_route, redirect_after_login=settings.redirect_after_login
    )
    rule = PROTECTED_ROUTES.get(path)
    if rule is None or not rule.restricted:
        return auth.evaluate(location)
    guard = CapabilityRequired(session, rule.capability, any_of=rule.any_of, auth=auth)
    return guard.evaluate(location)


def post_login_route(return_to: Optional[str], *, settings: Optional[Settings] = None) -> str:
    """Where to send an operator right after a successful sign-in."""
    settings = settings or get_settings()
    if not settings.redirect_after_login:
        return settings.landing_route
    return sanitize_redirect_path(
        return_to, PROTECTED_ROUTES.keys(), fallback=settings.landing_route
    )


__all__ = [
    "GUEST_ROUTES",
    "PROTECTED_ROUTES",
    "RouteRule",
    "guard_route",
    "post_login_route",
    "route_path",
]
