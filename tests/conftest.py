import asyncio
import inspect
import itertools
import os
import sys
import tempfile
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

# Keep tokens out of the real home directory before any settings are read
_test_tmp_dir = tempfile.mkdtemp(prefix="consolegate_test_")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("CONSOLE_TOKEN_STORAGE", "memory")
os.environ.setdefault("CONSOLE_TOKEN_FILE", os.path.join(_test_tmp_dir, "tokens.json"))
os.environ.setdefault("CONSOLE_API_URL", "http://testserver")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from consolegate.config import reset_settings_cache  # noqa: E402
from consolegate.service.action_token import ActionTokenChannel  # noqa: E402
from consolegate.service.errors import (  # noqa: E402
    CredentialError,
    MfaCodeRejectedError,
    ServiceError,
    SessionExpiredError,
)
from consolegate.service.runtime import reset_runtime_for_tests  # noqa: E402
from consolegate.service.session import SessionStore  # noqa: E402
from consolegate.storage.models import (  # noqa: E402
    ActiveSession,
    Capability,
    Credentials,
    LoginResult,
    MfaSetup,
    MfaStatus,
    Operator,
    TokenPair,
)
from consolegate.storage.token_store import MemoryTokenStorage  # noqa: E402

VALID_CODE = "123456"


class FakeVerifier:
    """Scripted in-memory credential verifier.

    ``fail_with[method]`` raises once on the next call to that method and
    ``gates[method]`` holds the call until the event is set, which lets tests
    interleave transitions with an in-flight response.
    """

    def __init__(self) -> None:
        self.accounts: Dict[str, Tuple[str, Operator]] = {}
        self.tokens: Dict[str, str] = {}
        self.refresh_tokens: Dict[str, str] = {}
        self.challenges: Dict[str, str] = {}
        self.action_tokens: List[Tuple[str, str]] = []
        self.fail_with: Dict[str, ServiceError] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[Tuple[str, tuple]] = []
        self.active_token: Optional[str] = None
        self._ids = itertools.count(1)

    def add_operator(
        self,
        email: str = "a@x.com",
        password: str = "p",
        *,
        mfa_enabled: bool = False,
        capabilities: Iterable[Capability] = (),
    ) -> Operator:
        operator = Operator(
            id=str(len(self.accounts) + 1),
            email=email,
            first_name="Ada",
            last_name="Admin",
            role="ADMIN",
            mfa_enabled=mfa_enabled,
            capabilities=frozenset(capabilities),
        )
        self.accounts[email] = (password, operator)
        return operator

    def update_operator(self, email: str, **changes) -> Operator:
        password, operator = self.accounts[email]
        values = {**operator.__dict__, **changes}
        updated = Operator(**values)
        self.accounts[email] = (password, updated)
        return updated

    def issue(self, email: str) -> Credentials:
        token = f"tok-{next(self._ids)}"
        refresh = f"ref-{next(self._ids)}"
        self.tokens[token] = email
        self.refresh_tokens[refresh] = email
        self.active_token = token
        return Credentials(self.accounts[email][1], token, refresh)

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    async def _enter(self, name: str, *args) -> None:
        self.calls.append((name, args))
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        error = self.fail_with.pop(name, None)
        if error is not None:
            raise error

    async def login(self, email: str, password: str) -> LoginResult:
        await self._enter("login", email)
        account = self.accounts.get(email)
        if account is None or account[0] != password:
            raise CredentialError("Invalid email or password.")
        if account[1].mfa_enabled:
            challenge = f"mfa-{next(self._ids)}"
            self.challenges[challenge] = email
            return LoginResult(True, mfa_token=challenge)
        return LoginResult(False, credentials=self.issue(email))

    async def verify_mfa(self, mfa_token: str, code: str) -> Credentials:
        await self._enter("verify_mfa", mfa_token, code)
        email = self.challenges.get(mfa_token)
        if email is None:
            raise CredentialError("MFA session expired. Please sign in again.")
        if code != VALID_CODE:
            raise MfaCodeRejectedError("Invalid verification code. Please try again.")
        del self.challenges[mfa_token]
        return self.issue(email)

    async def get_profile(self, token: Optional[str] = None) -> Operator:
        token = token or self.active_token
        await self._enter("get_profile", token)
        email = self.tokens.get(token)
        if email is None:
            raise SessionExpiredError("Session expired. Please log in again.")
        return self.accounts[email][1]

    async def logout(self, token: str) -> None:
        await self._enter("logout", token)
        self.tokens.pop(token, None)

    async def refresh(self, refresh_token: str) -> TokenPair:
        await self._enter("refresh", refresh_token)
        email = self.refresh_tokens.pop(refresh_token, None)
        if email is None:
            raise SessionExpiredError("Session expired. Please log in again.")
        credentials = self.issue(email)
        return TokenPair(credentials.token, credentials.refresh_token)

    async def get_mfa_status(self) -> MfaStatus:
        await self._enter("get_mfa_status")
        return MfaStatus(mfa_enabled=False, mfa_required=False)

    async def setup_mfa(self) -> MfaSetup:
        await self._enter("setup_mfa")
        return MfaSetup(secret="JBSWY3DPEHPK3PXP", qr_code="data:image/png;base64,")

    async def enable_mfa(self, code: str) -> List[str]:
        await self._enter("enable_mfa", code)
        return ["AAAA-BBBB", "CCCC-DDDD"]

    async def disable_mfa(self, code: str) -> None:
        await self._enter("disable_mfa", code)

    async def get_backup_codes(self) -> List[str]:
        await self._enter("get_backup_codes")
        return ["AAAA-BBBB", "CCCC-DDDD"]

    async def verify_action_mfa(self, code: str, action_name: str) -> str:
        await self._enter("verify_action_mfa", code, action_name)
        if code != VALID_CODE:
            raise MfaCodeRejectedError("Invalid verification code. Please try again.")
        token = f"act-{next(self._ids)}"
        self.action_tokens.append((action_name, token))
        return token

    async def change_password(self, current_password: str, new_password: str) -> None:
        await self._enter("change_password")

    async def request_password_reset(self, email: str) -> None:
        await self._enter("request_password_reset", email)

    async def reset_password(self, token: str, new_password: str) -> None:
        await self._enter("reset_password", token)

    async def list_sessions(self) -> List[ActiveSession]:
        await self._enter("list_sessions")
        return [ActiveSession(id="s1", device="cli", current=True)]

    async def revoke_session(self, session_id: str) -> None:
        await self._enter("revoke_session", session_id)

    async def revoke_other_sessions(self) -> None:
        await self._enter("revoke_other_sessions")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_settings_cache()
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()
    reset_settings_cache()


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def storage():
    return MemoryTokenStorage()


@pytest.fixture
def channel():
    return ActionTokenChannel()


@pytest.fixture
def session(verifier, storage):
    return SessionStore(verifier, storage)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
