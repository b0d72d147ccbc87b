from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple


class Capability(str, Enum):
    """Permission tags granted to an operator through their role.

    Must match the authentication service's vocabulary. There is no
    hierarchy between tags; checks are plain set containment.
    """

    READ_USERS = "READ_USERS"
    SUSPEND_USERS = "SUSPEND_USERS"
    READ_TRANSACTIONS = "READ_TRANSACTIONS"
    VERIFY_TRANSACTIONS = "VERIFY_TRANSACTIONS"
    READ_TX_HASH = "READ_TX_HASH"
    EXPORT_TRANSACTIONS = "EXPORT_TRANSACTIONS"
    READ_WALLETS = "READ_WALLETS"
    FREEZE_WALLETS = "FREEZE_WALLETS"
    READ_AUDIT_LOGS = "READ_AUDIT_LOGS"
    VERIFY_KYC = "VERIFY_KYC"
    MANAGE_ADMINS = "MANAGE_ADMINS"
    MANAGE_ROLES = "MANAGE_ROLES"
    MANAGE_DEPARTMENTS = "MANAGE_DEPARTMENTS"
    VIEW_DASHBOARD = "VIEW_DASHBOARD"
    VIEW_ANALYTICS = "VIEW_ANALYTICS"
    EXPORT_DATA = "EXPORT_DATA"
    READ_NOTIFICATIONS = "READ_NOTIFICATIONS"
    MANAGE_NOTIFICATION_SETTINGS = "MANAGE_NOTIFICATION_SETTINGS"


@dataclass(frozen=True)
class CapabilityInfo:
    label: str
    description: str
    category: str


CAPABILITY_METADATA: Dict[Capability, CapabilityInfo] = {
    Capability.READ_USERS: CapabilityInfo(
        "Read Users", "View user accounts and profiles", "User Management"
    ),
    Capability.SUSPEND_USERS: CapabilityInfo(
        "Suspend Users", "Ban or suspend user accounts", "User Management"
    ),
    Capability.READ_TRANSACTIONS: CapabilityInfo(
        "Read Transactions", "View transaction history and details", "Transactions"
    ),
    Capability.VERIFY_TRANSACTIONS: CapabilityInfo(
        "Verify Transactions", "Approve, reject, or flag transactions", "Transactions"
    ),
    Capability.READ_TX_HASH: CapabilityInfo(
        "Read TX Hash", "View blockchain transaction hashes", "Transactions"
    ),
    Capability.EXPORT_TRANSACTIONS: CapabilityInfo(
        "Export Transactions", "Export transaction data to CSV/JSON", "Transactions"
    ),
    Capability.READ_WALLETS: CapabilityInfo(
        "Read Wallets", "View user wallet balances and addresses", "Wallets"
    ),
    Capability.FREEZE_WALLETS: CapabilityInfo(
        "Freeze Wallets", "Freeze or unfreeze user wallets", "Wallets"
    ),
    Capability.READ_AUDIT_LOGS: CapabilityInfo(
        "Read Audit Logs", "View admin activity audit logs", "Audit & Compliance"
    ),
    Capability.VERIFY_KYC: CapabilityInfo(
        "Verify KYC", "Review and approve KYC documents", "Audit & Compliance"
    ),
    Capability.MANAGE_ADMINS: CapabilityInfo(
        "Manage Admins", "Create and manage admin accounts", "Administration"
    ),
    Capability.MANAGE_ROLES: CapabilityInfo(
        "Manage Roles", "Create and edit roles and permissions", "Administration"
    ),
    Capability.MANAGE_DEPARTMENTS: CapabilityInfo(
        "Manage Departments", "Create and manage departments", "Administration"
    ),
    Capability.VIEW_DASHBOARD: CapabilityInfo(
        "View Dashboard", "Access the main dashboard", "Dashboard"
    ),
    Capability.VIEW_ANALYTICS: CapabilityInfo(
        "View Analytics", "View platform analytics and metrics", "Dashboard"
    ),
    Capability.EXPORT_DATA: CapabilityInfo(
        "Export Data", "Export system data and reports", "Data"
    ),
    Capability.READ_NOTIFICATIONS: CapabilityInfo(
        "Read Notifications", "View admin notifications", "Notifications"
    ),
    Capability.MANAGE_NOTIFICATION_SETTINGS: CapabilityInfo(
        "Manage Notification Settings",
        "Configure notification preferences",
        "Notifications",
    ),
}


def parse_capabilities(values: Iterable[Any] | None) -> Tuple[FrozenSet[Capability], List[str]]:
    """Split raw permission strings into known capabilities and unknown tags."""
    known: set[Capability] = set()
    unknown: List[str] = []
    for value in values or ():
        try:
            known.add(Capability(value))
        except ValueError:
            unknown.append(str(value))
    return frozenset(known), unknown


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass(frozen=True)
class Operator:
    """Profile of the signed-in console operator."""

    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    role: str = ""
    role_id: Optional[int] = None
    role_name: Optional[str] = None
    department_id: Optional[int] = None
    department_name: Optional[str] = None
    status: str = "ACTIVE"
    mfa_enabled: bool = False
    capabilities: FrozenSet[Capability] = field(default_factory=frozenset)
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_api(cls, admin: Dict[str, Any]) -> "Operator":
        """Build an operator from the service's ``admin`` payload."""
        dynamic_role = admin.get("dynamicRole") or {}
        department = admin.get("department") or {}
        capabilities, _ = parse_capabilities(dynamic_role.get("permissions"))
        return cls(
            id=str(admin["id"]),
            email=admin.get("email", ""),
            first_name=admin.get("firstName") or "",
            last_name=admin.get("lastName") or "",
            role=admin.get("role") or "",
            role_id=admin.get("roleId"),
            role_name=dynamic_role.get("title"),
            department_id=admin.get("departmentId"),
            department_name=department.get("name"),
            status=admin.get("status") or "ACTIVE",
            mfa_enabled=bool(admin.get("mfaEnabled", False)),
            capabilities=capabilities,
            created_at=_parse_timestamp(admin.get("createdAt")),
            last_login_at=_parse_timestamp(admin.get("lastLoginAt")),
        )

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.email

    def has_capability(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def has_any(self, required: Iterable[Capability]) -> bool:
        return not self.capabilities.isdisjoint(required)

    def has_all(self, required: Iterable[Capability]) -> bool:
        return self.capabilities.issuperset(required)


class Phase(str, Enum):
    """Discriminant of the session state machine."""

    ANONYMOUS = "anonymous"
    AWAITING_MFA = "awaiting_mfa"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable view of the session at one instant.

    The constructor rejects any combination where ``phase`` disagrees with
    the presence of the bearer token, challenge token or operator.
    """

    phase: Phase = Phase.ANONYMOUS
    operator: Optional[Operator] = None
    bearer_token: Optional[str] = None
    mfa_challenge_token: Optional[str] = None
    last_error: Optional[str] = None
    initialized: bool = True

    def __post_init__(self) -> None:
        has_bearer = self.bearer_token is not None
        has_challenge = self.mfa_challenge_token is not None
        has_operator = self.operator is not None
        if self.phase is Phase.AUTHENTICATED:
            valid = has_bearer and has_operator and not has_challenge
        elif self.phase is Phase.AWAITING_MFA:
            valid = has_challenge and not has_bearer and not has_operator
        else:
            valid = not (has_bearer or has_challenge or has_operator)
        if not valid:
            raise ValueError(f"inconsistent session fields for phase {self.phase.value}")

    @classmethod
    def anonymous(
        cls, *, last_error: Optional[str] = None, initialized: bool = True
    ) -> "SessionSnapshot":
        return cls(Phase.ANONYMOUS, last_error=last_error, initialized=initialized)

    @classmethod
    def awaiting_mfa(
        cls, challenge_token: str, *, last_error: Optional[str] = None
    ) -> "SessionSnapshot":
        return cls(
            Phase.AWAITING_MFA,
            mfa_challenge_token=challenge_token,
            last_error=last_error,
        )

    @classmethod
    def authenticated(cls, operator: Operator, bearer_token: str) -> "SessionSnapshot":
        return cls(Phase.AUTHENTICATED, operator=operator, bearer_token=bearer_token)

    def with_error(self, message: Optional[str]) -> "SessionSnapshot":
        return SessionSnapshot(
            phase=self.phase,
            operator=self.operator,
            bearer_token=self.bearer_token,
            mfa_challenge_token=self.mfa_challenge_token,
            last_error=message,
            initialized=self.initialized,
        )

    @property
    def is_authenticated(self) -> bool:
        return self.phase is Phase.AUTHENTICATED


@dataclass(frozen=True)
class Credentials:
    """Tokens and profile returned by a completed sign-in."""

    operator: Operator
    token: str
    refresh_token: Optional[str] = None


@dataclass(frozen=True)
class LoginResult:
    mfa_required: bool
    mfa_token: Optional[str] = None
    credentials: Optional[Credentials] = None


@dataclass(frozen=True)
class TokenPair:
    token: str
    refresh_token: Optional[str] = None


@dataclass(frozen=True)
class MfaStatus:
    mfa_enabled: bool
    mfa_required: bool


@dataclass(frozen=True)
class MfaSetup:
    secret: str
    qr_code: str
    backup_codes: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ActiveSession:
    id: str
    device: str = ""
    ip: str = ""
    location: Optional[str] = None
    last_active: Optional[datetime] = None
    current: bool = False

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "ActiveSession":
        return cls(
            id=str(payload["id"]),
            device=payload.get("device") or "",
            ip=payload.get("ip") or "",
            location=payload.get("location"),
            last_active=_parse_timestamp(payload.get("lastActive")),
            current=bool(payload.get("current") or payload.get("isCurrent")),
        )
