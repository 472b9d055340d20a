"""Repository interfaces consumed by the service layer.

The service layer only ever talks to storage through these protocols, so the
in-memory and Postgres stores are interchangeable. Mutations that need to be
race-free (counters, single-use artifacts, one open verification per identity)
are expressed as single repository calls rather than read-then-write sequences
in the caller.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable, List, Optional, Protocol

from tradegate.storage.models import (
    Identity,
    OtpCheck,
    RefreshRecord,
    ResetTokenRecord,
    Role,
    RoleGrant,
    Verification,
    VerificationDraft,
    VerificationStatus,
)

GrantMerge = Callable[[Optional[RoleGrant]], RoleGrant]
DraftMerge = Callable[[Optional[VerificationDraft]], VerificationDraft]


class IdentityRepo(Protocol):
    def create_identity(self, identity: Identity) -> Identity: ...

    def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    def get_identity_by_email(self, email: str) -> Optional[Identity]: ...

    def get_identity_by_phone(self, phone: str) -> Optional[Identity]: ...

    def get_identity_by_email_or_phone(self, identifier: str) -> Optional[Identity]: ...

    def get_identity_by_admin_id(self, admin_id: str) -> Optional[Identity]: ...

    def update_identity(self, identity_id: str, **fields) -> Optional[Identity]: ...

    def upsert_role_grant(
        self, identity_id: str, role: Role, merge: GrantMerge
    ) -> Identity: ...

    def delete_role_grant(self, identity_id: str, role: Role) -> Identity: ...

    def set_active_role(self, identity_id: str, role: Optional[Role]) -> Identity: ...

    def increment_failed_attempts(
        self, identity_id: str, *, threshold: int, lock_until: datetime
    ) -> Identity: ...

    def reset_failed_attempts(self, identity_id: str) -> Identity: ...

    def set_otp(self, identity_id: str, otp: str, expires_at: datetime) -> None: ...

    def consume_otp(self, identity_id: str, otp: str, now: datetime) -> OtpCheck: ...

    def clear_otp(self, identity_id: str) -> None: ...

    def list_identities_with_roles(self, roles: Iterable[Role]) -> List[Identity]: ...

    def delete_identity(self, identity_id: str) -> bool: ...

    def link_auth_provider(
        self, identity_id: str, provider: str, provider_uid: str
    ) -> None: ...

    def get_identity_by_provider(
        self, provider: str, provider_uid: str
    ) -> Optional[Identity]: ...


class VerificationRepo(Protocol):
    def upsert_draft(self, identity_id: str, merge: DraftMerge) -> VerificationDraft: ...

    def get_draft(self, identity_id: str) -> Optional[VerificationDraft]: ...

    def delete_draft(self, identity_id: str) -> None: ...

    def create_verification(
        self, verification: Verification, *, grant_merge: Optional[GrantMerge] = None
    ) -> Verification: ...

    def get_verification(self, verification_id: str) -> Optional[Verification]: ...

    def latest_verification(self, identity_id: str) -> Optional[Verification]: ...

    def list_verifications(
        self, status: Optional[VerificationStatus] = None, limit: int = 100
    ) -> List[Verification]: ...

    def transition_verification(
        self,
        verification_id: str,
        *,
        expected: Iterable[VerificationStatus],
        status: VerificationStatus,
        grant_merge: Optional[GrantMerge] = None,
        **stamps,
    ) -> Optional[Verification]: ...


class SessionRepo(Protocol):
    def create_refresh_record(
        self, identity_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshRecord: ...

    def find_refresh_record(self, token_hash: str) -> Optional[RefreshRecord]: ...

    def revoke_refresh_record(self, token_hash: str) -> bool: ...

    def revoke_all_refresh_records(self, identity_id: str) -> int: ...

    def purge_expired_refresh_records(self, now: datetime) -> int: ...

    def create_reset_token(self, record: ResetTokenRecord) -> ResetTokenRecord: ...

    def get_reset_token(self, token_hash: str) -> Optional[ResetTokenRecord]: ...

    def consume_reset_token(self, token_hash: str, now: datetime) -> Optional[str]: ...

    def invalidate_reset_tokens(self, identity_id: str) -> int: ...


class Store(IdentityRepo, VerificationRepo, SessionRepo, Protocol):
    """A single backend implementing every repository."""


__all__ = [
    "DraftMerge",
    "GrantMerge",
    "IdentityRepo",
    "SessionRepo",
    "Store",
    "VerificationRepo",
]
