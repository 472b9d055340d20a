from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from tradegate.config import Settings
from tradegate.logging import get_logger
from tradegate.service.errors import (
    ConflictError,
    ErrorCode,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from tradegate.service.lockout import lock_deadline, lock_has_elapsed
from tradegate.service.roles import RolePolicy
from tradegate.storage.errors import ConstraintViolation, RoleExclusivityError
from tradegate.storage.models import Identity, Role, RoleGrant, utcnow

logger = get_logger(__name__)


def parse_role(role) -> Role:
    try:
        return Role(role)
    except ValueError:
        raise ValidationError(
            f"Unknown role: {role}", error_code=ErrorCode.INVALID_ROLE
        ) from None


class IdentityService:
    """Identity record access plus its atomic mutators."""

    def __init__(self, store, policy: RolePolicy, settings: Settings) -> None:
        self.store = store
        self.policy = policy
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def create(self, identity: Identity) -> Identity:
        try:
            return self.store.create_identity(identity)
        except RoleExclusivityError as exc:
            raise ConflictError(exc.message, error_code=ErrorCode.ADMIN_EXCLUSIVE) from exc
        except ConstraintViolation as exc:
            field = exc.detail.get("field", "email")
            raise ConflictError(
                f"An account with this {field} already exists",
                error_code=ErrorCode.USER_ALREADY_EXISTS,
                detail={"field": field},
            ) from exc

    def find_by_id(self, identity_id: str) -> Optional[Identity]:
        return self.store.get_identity(identity_id)

    def find_by_email(self, email: str) -> Optional[Identity]:
        return self.store.get_identity_by_email(email)

    def find_by_phone(self, phone: str) -> Optional[Identity]:
        return self.store.get_identity_by_phone(phone)

    def find_by_email_or_phone(self, identifier: str) -> Optional[Identity]:
        return self.store.get_identity_by_email_or_phone(identifier)

    def find_by_admin_id(self, admin_id: str) -> Optional[Identity]:
        return self.store.get_identity_by_admin_id(admin_id)

    def require(self, identity_id: str) -> Identity:
        identity = self.store.get_identity(identity_id)
        if not identity:
            raise NotFoundError("User not found", error_code=ErrorCode.USER_NOT_FOUND)
        return identity

    def update(self, identity_id: str, **fields) -> Identity:
        try:
            identity = self.store.update_identity(identity_id, **fields)
        except ConstraintViolation as exc:
            raise ConflictError(
                "An account with these details already exists",
                error_code=ErrorCode.USER_ALREADY_EXISTS,
                detail=exc.detail,
            ) from exc
        if not identity:
            raise NotFoundError("User not found", error_code=ErrorCode.USER_NOT_FOUND)
        return identity

    # -- roles ---------------------------------------------------------------

    def add_role(
        self, identity_id: str, role, *, granted_by: Optional[str] = None
    ) -> Identity:
        """Grant a role; a no-op when it is already held.

        Supplier grants are always recorded inactive; only the verification
        workflow activates them.
        """
        role = parse_role(role)
        active = role != Role.SUPPLIER

        def merge(current: Optional[RoleGrant]) -> RoleGrant:
            if current is not None:
                return current
            return RoleGrant(role=role, is_active=active, granted_by=granted_by)

        try:
            return self.store.upsert_role_grant(identity_id, role, merge)
        except RoleExclusivityError as exc:
            raise ForbiddenError(
                "Admin roles cannot be combined with other roles",
                error_code=ErrorCode.ADMIN_EXCLUSIVE,
                detail=exc.detail,
            ) from exc
        except ConstraintViolation as exc:
            raise NotFoundError("User not found", error_code=ErrorCode.USER_NOT_FOUND) from exc

    def remove_role(self, identity_id: str, role) -> Identity:
        role = parse_role(role)
        self.require(identity_id)
        try:
            return self.store.delete_role_grant(identity_id, role)
        except ConstraintViolation as exc:
            raise ConflictError(
                "Cannot remove the last role", error_code=ErrorCode.LAST_ROLE
            ) from exc

    def switch_active_role(self, identity_id: str, role) -> Identity:
        role = parse_role(role)
        identity = self.require(identity_id)
        if identity.is_admin:
            raise ForbiddenError(
                "Admin accounts cannot switch roles",
                error_code=ErrorCode.ADMIN_EXCLUSIVE,
            )
        if role in (Role.ADMIN, Role.SUPER_ADMIN):
            raise ForbiddenError(
                "You do not have this role", error_code=ErrorCode.ROLE_NOT_HELD
            )
        if role == Role.SUPPLIER:
            # Verification status is re-read at switch time, not trusted from the grant
            reason = self.policy.supplier_block_reason(identity_id)
            if reason is not None:
                raise ForbiddenError(
                    "Supplier account is not verified",
                    error_code=ErrorCode.SUPPLIER_NOT_VERIFIED,
                    detail={"reason": reason},
                )
        grant = identity.role_grants.get(role)
        if not grant or not grant.is_active:
            raise ForbiddenError(
                "You do not have this role", error_code=ErrorCode.ROLE_NOT_HELD
            )
        try:
            return self.store.set_active_role(identity_id, role)
        except ConstraintViolation as exc:
            raise ForbiddenError(
                "You do not have this role", error_code=ErrorCode.ROLE_NOT_HELD
            ) from exc

    def set_active_role(self, identity_id: str, role: Optional[Role]) -> Identity:
        return self.store.set_active_role(identity_id, role)

    # -- lockout -------------------------------------------------------------

    def record_failed_login(self, identity_id: str) -> Identity:
        identity = self.store.increment_failed_attempts(
            identity_id,
            threshold=self.settings.max_failed_login_attempts,
            lock_until=lock_deadline(self.settings.lockout_minutes, self._now()),
        )
        logger.warning(
            "login_failed_attempt",
            identity_id=identity_id,
            attempts=identity.failed_attempts,
            locked=identity.locked_until is not None,
        )
        return identity

    def reset_failed_login(self, identity_id: str) -> Identity:
        return self.store.reset_failed_attempts(identity_id)

    def clear_elapsed_lock(self, identity: Identity, now: Optional[datetime] = None) -> Identity:
        if lock_has_elapsed(identity, now or self._now()):
            logger.info("lock_expired_cleared", identity_id=identity.id)
            return self.store.reset_failed_attempts(identity.id)
        return identity

    def remaining_attempts(self, identity: Identity) -> int:
        return max(0, self.settings.max_failed_login_attempts - identity.failed_attempts)

    # -- credentials ---------------------------------------------------------

    def set_password_hash(self, identity_id: str, password_hash: str) -> Identity:
        return self.update(
            identity_id, password_hash=password_hash, last_password_change=utcnow()
        )

    def rotate_admin_credentials(
        self, identity_id: str, *, password_hash: str, expires_at: datetime
    ) -> Identity:
        identity = self.update(
            identity_id,
            password_hash=password_hash,
            is_first_login=True,
            credentials_used=False,
            credentials_expire_at=expires_at,
        )
        self.store.reset_failed_attempts(identity_id)
        return identity

    def complete_admin_rotation(self, identity_id: str, *, password_hash: str) -> Identity:
        return self.update(
            identity_id,
            password_hash=password_hash,
            is_first_login=False,
            credentials_expire_at=None,
            credentials_used=True,
            last_password_change=utcnow(),
        )

    def mark_verified(self, identity_id: str) -> Identity:
        return self.update(identity_id, is_verified=True)

    def record_login(self, identity_id: str) -> Identity:
        return self.update(identity_id, last_login=utcnow())
