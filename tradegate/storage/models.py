from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional

from tradegate.storage.errors import ConstraintViolation, RoleExclusivityError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    BUYER = "buyer"
    SUPPLIER = "supplier"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


ADMIN_ROLES = frozenset({Role.ADMIN, Role.SUPER_ADMIN})
_ROLE_ORDER = {role: idx for idx, role in enumerate(Role)}


class RoleSet:
    """Immutable set of roles with the admin-exclusivity rule built in.

    An admin role (``admin`` or ``super_admin``) can only ever be the sole
    member. Any construction that would break that raises
    :class:`RoleExclusivityError`, so every mutation path shares one check.
    """

    __slots__ = ("_roles",)

    def __init__(self, roles: Iterable[Role | str] = ()) -> None:
        parsed = frozenset(Role(r) for r in roles)
        if len(parsed) > 1 and parsed & ADMIN_ROLES:
            raise RoleExclusivityError(
                "admin roles cannot be combined with other roles",
                {"roles": sorted(r.value for r in parsed)},
            )
        self._roles = parsed

    def __contains__(self, role: object) -> bool:
        try:
            return Role(role) in self._roles
        except ValueError:
            return False

    def __iter__(self) -> Iterator[Role]:
        return iter(sorted(self._roles, key=_ROLE_ORDER.__getitem__))

    def __len__(self) -> int:
        return len(self._roles)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, RoleSet):
            return self._roles == other._roles
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._roles)

    def __repr__(self) -> str:
        return f"RoleSet({[r.value for r in self]})"

    @property
    def is_admin(self) -> bool:
        return bool(self._roles & ADMIN_ROLES)

    def with_role(self, role: Role | str) -> "RoleSet":
        role = Role(role)
        if role in self._roles:
            return self
        return RoleSet(self._roles | {role})

    def without_role(self, role: Role | str) -> "RoleSet":
        return RoleSet(self._roles - {Role(role)})

    def to_list(self) -> List[str]:
        return [r.value for r in self]


@dataclass
class RoleGrant:
    role: Role
    is_active: bool = True
    granted_at: datetime = field(default_factory=utcnow)
    verified_at: Optional[datetime] = None
    granted_by: Optional[str] = None


@dataclass
class Identity:
    id: str
    email: str
    phone: Optional[str]
    password_hash: Optional[str]
    first_name: str = ""
    last_name: str = ""
    company_name: Optional[str] = None
    business_type: Optional[str] = None
    gst_number: Optional[str] = None
    role_grants: Dict[Role, RoleGrant] = field(default_factory=dict)
    active_role: Optional[Role] = None
    is_verified: bool = False
    is_active: bool = True
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    admin_id: Optional[str] = None
    is_first_login: bool = False
    credentials_expire_at: Optional[datetime] = None
    credentials_used: bool = False
    last_password_change: Optional[datetime] = None
    otp: Optional[str] = None
    otp_expires_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        # Validates exclusivity for identities rebuilt from storage as well
        roles = RoleSet(self.role_grants.keys())
        if self.active_role is not None:
            self.active_role = Role(self.active_role)
            if self.active_role not in roles:
                raise ConstraintViolation(
                    "active role must be one of the held roles",
                    {"field": "active_role", "role": self.active_role.value},
                )

    @property
    def roles(self) -> RoleSet:
        return RoleSet(self.role_grants.keys())

    @property
    def active_roles(self) -> List[Role]:
        return [role for role in self.roles if self.role_grants[role].is_active]

    @property
    def is_admin(self) -> bool:
        return self.roles.is_admin

    @property
    def is_super_admin(self) -> bool:
        return Role.SUPER_ADMIN in self.roles

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class VerificationStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    VERIFIED = "verified"
    REJECTED = "rejected"


NON_TERMINAL_STATUSES = frozenset(
    {VerificationStatus.PENDING, VerificationStatus.UNDER_REVIEW}
)
TERMINAL_STATUSES = frozenset({VerificationStatus.VERIFIED, VerificationStatus.REJECTED})


@dataclass
class Verification:
    id: str
    identity_id: str
    status: VerificationStatus
    fields: Dict = field(default_factory=dict)
    documents: List[Dict] = field(default_factory=list)
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    reviewer_id: Optional[str] = None
    review_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new_pending(
        cls, identity_id: str, fields: Dict, documents: List[Dict]
    ) -> "Verification":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            identity_id=identity_id,
            status=VerificationStatus.PENDING,
            fields=dict(fields),
            documents=list(documents),
            submitted_at=now,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class VerificationDraft:
    identity_id: str
    fields: Dict = field(default_factory=dict)
    documents: List[Dict] = field(default_factory=list)
    current_step: int = 1
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshRecord:
    id: str
    identity_id: str
    token_hash: str
    expires_at: datetime
    revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None

    def is_usable(self, now: datetime) -> bool:
        return not self.revoked and now < self.expires_at


@dataclass
class ResetTokenRecord:
    token_hash: str
    identity_id: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuthProviderLink:
    provider: str
    provider_uid: str
    identity_id: str
    created_at: datetime = field(default_factory=utcnow)


class OtpCheck(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    EXPIRED = "expired"
