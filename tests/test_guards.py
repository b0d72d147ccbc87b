"""Tests for access guards and the console route table."""

import pytest

from consolegate.config import Settings
from consolegate.service.guards import (
    AuthRequired,
    CapabilityRequired,
    GuestOnly,
    Outcome,
    sanitize_redirect_path,
)
from consolegate.service.routes import guard_route, post_login_route, route_path
from consolegate.service.session import SessionStore
from consolegate.storage.models import Capability
from consolegate.storage.token_store import AUTH_TOKEN_KEY, MemoryTokenStorage

A = Capability.READ_TRANSACTIONS
B = Capability.VERIFY_TRANSACTIONS
C = Capability.READ_WALLETS


async def sign_in(session, verifier, capabilities=(), mfa_enabled=False):
    verifier.add_operator("a@x.com", "p", capabilities=capabilities, mfa_enabled=mfa_enabled)
    await session.login("a@x.com", "p")


class TestGuestOnly:
    def test_renders_for_anonymous(self, session):
        assert GuestOnly(session).evaluate().outcome is Outcome.RENDER

    async def test_redirects_authenticated_to_landing(self, session, verifier):
        await sign_in(session, verifier)

        decision = GuestOnly(session, "/dashboard").evaluate()

        assert decision.outcome is Outcome.REDIRECT
        assert decision.redirect_to == "/dashboard"

    async def test_pending_mfa_stays_on_login_page(self, session, verifier):
        await sign_in(session, verifier, mfa_enabled=True)

        assert GuestOnly(session).evaluate().outcome is Outcome.RENDER
        assert GuestOnly(session, allow_pending_mfa=False).evaluate().outcome is Outcome.REDIRECT

    async def test_loading_until_stored_session_checked(self, verifier):
        session = SessionStore(verifier, MemoryTokenStorage({AUTH_TOKEN_KEY: "tok-x"}))

        assert GuestOnly(session).evaluate().outcome is Outcome.LOADING
        assert AuthRequired(session).evaluate().outcome is Outcome.LOADING

        await session.initialize()
        assert GuestOnly(session).evaluate().outcome is Outcome.RENDER


class TestAuthRequired:
    def test_anonymous_redirected_to_login(self, session):
        decision = AuthRequired(session, "/login").evaluate("/wallets")

        assert decision.outcome is Outcome.REDIRECT
        assert decision.redirect_to == "/login"
        assert decision.return_to is None

    def test_return_to_kept_when_enabled(self, session):
        guard = AuthRequired(session, "/login", redirect_after_login=True)

        assert guard.evaluate("/wallets").return_to == "/wallets"
        assert guard.evaluate("/login").return_to is None

    async def test_watch_follows_phase_changes(self, session, verifier):
        verifier.add_operator("a@x.com", "p")
        decisions = []
        unwatch = AuthRequired(session).watch(decisions.append)

        await session.login("a@x.com", "p")
        await session.logout()
        unwatch()

        outcomes = [decision.outcome for decision in decisions]
        assert Outcome.RENDER in outcomes
        assert outcomes[-1] is Outcome.REDIRECT


class TestCapabilityRequired:
    async def test_any_of_renders_on_intersection(self, session, verifier):
        await sign_in(session, verifier, capabilities=[B])

        assert CapabilityRequired(session, any_of=[A, B]).evaluate().outcome is Outcome.RENDER

    async def test_forbidden_without_intersection(self, session, verifier):
        await sign_in(session, verifier, capabilities=[C])

        decision = CapabilityRequired(session, any_of=[A, B]).evaluate()

        assert decision.outcome is Outcome.FORBIDDEN
        assert decision.redirect_to is None

    @pytest.mark.parametrize("required", [[A], [A, B], [C]])
    def test_anonymous_always_redirected(self, session, required):
        decision = CapabilityRequired(session, any_of=required).evaluate()

        assert decision.outcome is Outcome.REDIRECT
        assert decision.redirect_to == "/login"

    async def test_single_capability(self, session, verifier):
        await sign_in(session, verifier, capabilities=[A])

        assert CapabilityRequired(session, A).evaluate().allowed
        assert not CapabilityRequired(session, C).evaluate().allowed

    async def test_all_of_needs_superset(self, session, verifier):
        await sign_in(session, verifier, capabilities=[A, B])

        assert CapabilityRequired(session, all_of=[A, B]).evaluate().allowed
        assert not CapabilityRequired(session, all_of=[A, C]).evaluate().allowed

    async def test_hide_instead_of_forbidden(self, session, verifier):
        await sign_in(session, verifier, capabilities=[C])

        assert CapabilityRequired(session, A, hide=True).evaluate().outcome is Outcome.HIDDEN

    def test_requirement_is_mandatory(self, session):
        with pytest.raises(ValueError):
            CapabilityRequired(session)


class TestRedirectSanitizing:
    @pytest.mark.parametrize(
        "path",
        [None, "", "//evil.com", "https://evil.com/x", "wallets", "/unknown", "/\\evil.com"],
    )
    def test_rejects_external_or_unknown(self, path):
        assert sanitize_redirect_path(path, ["/wallets"], fallback="/dashboard") == "/dashboard"

    def test_keeps_query_on_allowed_path(self):
        assert sanitize_redirect_path("/wallets?page=2", ["/wallets"]) == "/wallets?page=2"


class TestRouteTable:
    @pytest.fixture
    def settings(self):
        return Settings(token_storage="memory")

    def test_route_path_normalization(self):
        assert route_path("/team/?tab=roles#top") == "/team"
        assert route_path("") == "/"

    def test_anonymous_protected_route_redirects(self, session, settings):
        decision = guard_route(session, "/audit-logs", settings=settings)

        assert decision.outcome is Outcome.REDIRECT
        assert decision.redirect_to == "/login"

    def test_login_route_renders_for_guest(self, session, settings):
        assert guard_route(session, "/login", settings=settings).allowed

    def test_configured_login_route_is_a_guest_route(self, session):
        settings = Settings(token_storage="memory", login_route="/signin")

        assert guard_route(session, "/signin", settings=settings).allowed
        assert guard_route(session, "/signin?next=1", settings=settings).allowed
        assert guard_route(session, "/wallets", settings=settings).redirect_to == "/signin"

    async def test_team_forbidden_without_manage_admins(self, session, verifier, settings):
        await sign_in(session, verifier, capabilities=[Capability.VIEW_DASHBOARD])

        assert guard_route(session, "/team", settings=settings).outcome is Outcome.FORBIDDEN
        assert guard_route(session, "/dashboard", settings=settings).allowed
        assert guard_route(session, "/security", settings=settings).allowed

    async def test_transactions_any_of(self, session, verifier, settings):
        await sign_in(session, verifier, capabilities=[Capability.VERIFY_TRANSACTIONS])

        assert guard_route(session, "/transactions", settings=settings).allowed
        assert guard_route(session, "/conversions", settings=settings).allowed
        assert not guard_route(session, "/wallets", settings=settings).allowed

    async def test_login_page_redirects_when_signed_in(self, session, verifier, settings):
        await sign_in(session, verifier)

        decision = guard_route(session, "/login", settings=settings)

        assert decision.outcome is Outcome.REDIRECT
        assert decision.redirect_to == settings.landing_route

    def test_post_login_route_disabled_by_default(self, settings):
        assert post_login_route("/wallets", settings=settings) == "/dashboard"

    def test_post_login_route_sanitized_when_enabled(self):
        settings = Settings(token_storage="memory", redirect_after_login=True)

        assert post_login_route("/wallets", settings=settings) == "/wallets"
        assert post_login_route("//evil.com", settings=settings) == "/dashboard"
        assert post_login_route(None, settings=settings) == "/dashboard"
