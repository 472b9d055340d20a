from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from tradegate.config import Settings
from tradegate.logging import get_logger
from tradegate.service.auth import AuthService, sanitize_identity
from tradegate.service.credentials import (
    TokenSigner,
    generate_admin_id,
    generate_temp_password,
    validate_password_strength,
)
from tradegate.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ErrorCode,
    ForbiddenError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from tradegate.service.identity import IdentityService
from tradegate.service.lockout import is_locked, minutes_remaining
from tradegate.service.notifier import Notifier, Recipient
from tradegate.service.sessions import SessionStore
from tradegate.storage.models import ADMIN_ROLES, Identity, Role, RoleGrant

logger = get_logger(__name__)

_ADMIN_ID_ATTEMPTS = 10


def format_time_until(expires_at: Optional[datetime], now: datetime) -> Optional[str]:
    if expires_at is None:
        return None
    remaining = expires_at - now
    if remaining.total_seconds() <= 0:
        return "expired"
    hours, rem = divmod(int(remaining.total_seconds()), 3600)
    minutes = rem // 60
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


class AdminService:
    """Admin sign-in, temp-credential rotation and super-admin management."""

    def __init__(
        self,
        *,
        identities: IdentityService,
        sessions: SessionStore,
        signer: TokenSigner,
        auth: AuthService,
        notifier: Notifier,
        settings: Settings,
    ) -> None:
        self.identities = identities
        self.sessions = sessions
        self.signer = signer
        self.auth = auth
        self.notifier = notifier
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _credentials_expiry(self) -> datetime:
        return self._now() + timedelta(hours=self.settings.admin_credentials_ttl_hours)

    def _require_admin(self, identity_id: str) -> Identity:
        identity = self.identities.find_by_id(identity_id)
        if not identity or not identity.is_admin:
            raise NotFoundError("Admin not found", error_code=ErrorCode.USER_NOT_FOUND)
        return identity

    @staticmethod
    def _not_self(actor_id: str, target_id: str, action: str) -> None:
        if actor_id == target_id:
            raise ForbiddenError(
                f"You cannot {action} your own account", error_code=ErrorCode.FORBIDDEN
            )

    def _unique_admin_id(self) -> str:
        for _ in range(_ADMIN_ID_ATTEMPTS):
            candidate = generate_admin_id()
            if not self.identities.find_by_admin_id(candidate):
                return candidate
        raise ServerError("Could not allocate an admin id")

    def _credential_payload(
        self, identity: Identity, temp_password: str, delivered: bool
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "admin": sanitize_identity(identity),
            "emailSent": delivered,
        }
        # Plaintext only leaves the service when the email could not
        if not delivered:
            payload["credentials"] = {
                "adminId": identity.admin_id,
                "temporaryPassword": temp_password,
            }
        return payload

    # -- provisioning --------------------------------------------------------

    async def provision(
        self,
        *,
        email: str,
        first_name: str,
        last_name: str,
        phone: Optional[str] = None,
        role: Role = Role.ADMIN,
        created_by: Optional[str] = None,
    ) -> tuple[Identity, str]:
        """Create an admin identity with first-login temp credentials."""
        if role not in ADMIN_ROLES:
            raise ValidationError("Unknown admin role", error_code=ErrorCode.INVALID_ROLE)
        temp_password = generate_temp_password()
        identity = self.identities.create(
            Identity(
                id=str(uuid.uuid4()),
                email=email.strip().lower(),
                phone=phone.strip() if phone else None,
                password_hash=await self.auth.hash_password(temp_password),
                first_name=first_name,
                last_name=last_name,
                role_grants={role: RoleGrant(role=role, granted_by=created_by)},
                active_role=role,
                is_verified=True,
                admin_id=self._unique_admin_id(),
                is_first_login=True,
                credentials_expire_at=self._credentials_expiry(),
            )
        )
        logger.info(
            "admin_provisioned",
            identity_id=identity.id,
            admin_id=identity.admin_id,
            role=role.value,
            created_by=created_by,
        )
        return identity, temp_password

    async def bootstrap_super_admin(
        self,
        *,
        email: str,
        first_name: str,
        last_name: str,
        phone: Optional[str] = None,
    ) -> tuple[Identity, str]:
        return await self.provision(
            email=email,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            role=Role.SUPER_ADMIN,
        )

    def super_admin_exists(self) -> bool:
        return bool(self.identities.store.list_identities_with_roles([Role.SUPER_ADMIN]))

    async def create_admin(
        self,
        actor_id: str,
        *,
        email: str,
        first_name: str,
        last_name: str,
        phone: Optional[str] = None,
    ) -> Dict[str, Any]:
        identity, temp_password = await self.provision(
            email=email,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            created_by=actor_id,
        )
        delivered = await self.notifier.send(
            "admin_credentials",
            Recipient.of(identity),
            {
                "admin_id": identity.admin_id,
                "temp_password": temp_password,
                "ttl_hours": self.settings.admin_credentials_ttl_hours,
            },
        )
        if not delivered:
            logger.warning("admin_credentials_email_failed", identity_id=identity.id)
        return self._credential_payload(identity, temp_password, delivered)

    # -- sign-in -------------------------------------------------------------

    async def login(self, admin_id: str, password: str) -> Dict[str, Any]:
        identity = self.identities.find_by_admin_id(admin_id.strip())
        if not identity or not identity.is_admin:
            await self.auth.verify_password(password, None)
            raise AuthenticationError(
                "Invalid credentials", error_code=ErrorCode.INVALID_CREDENTIALS
            )
        identity = self.auth.ensure_not_locked(identity)
        if not identity.is_active:
            raise ForbiddenError(
                "Your account has been deactivated", error_code=ErrorCode.USER_INACTIVE
            )
        now = self._now()
        if (
            identity.is_first_login
            and identity.credentials_expire_at is not None
            and identity.credentials_expire_at <= now
        ):
            raise ForbiddenError(
                "Temporary credentials have expired; ask a super admin to resend them",
                error_code=ErrorCode.CREDENTIALS_EXPIRED,
            )
        if not await self.auth.verify_password(password, identity.password_hash):
            identity = self.identities.record_failed_login(identity.id)
            now = self._now()
            if is_locked(identity, now):
                minutes = minutes_remaining(identity, now)
                logger.warning("admin_account_locked", identity_id=identity.id)
                raise AccountLockedError(
                    f"Account is locked. Try again in {minutes} minutes",
                    detail={"minutesRemaining": minutes},
                )
            remaining = self.identities.remaining_attempts(identity)
            raise AuthenticationError(
                f"Invalid credentials. {remaining} attempts remaining before lockout",
                error_code=ErrorCode.INVALID_CREDENTIALS,
                detail={"remainingAttempts": remaining},
            )
        self.identities.reset_failed_login(identity.id)

        if identity.is_first_login:
            setup_token = self.signer.issue_setup_token(
                identity.id, email=identity.email, admin_id=identity.admin_id
            )
            logger.info("admin_login_requires_password_change", identity_id=identity.id)
            return {
                "requiresPasswordChange": True,
                "setupToken": setup_token,
                "user": sanitize_identity(identity),
            }

        identity = self.identities.record_login(identity.id)
        logger.info("admin_login_succeeded", identity_id=identity.id)
        return self.auth.issue_session(identity)

    async def change_password(
        self, identity_id: str, current_password: str, new_password: str
    ) -> Dict[str, Any]:
        identity = self._require_admin(identity_id)
        check = validate_password_strength(new_password, strict=True)
        if not check.valid:
            raise ValidationError(
                "Password must be at least 8 characters with upper and lower case letters, "
                "a number and a special character",
                error_code=ErrorCode.WEAK_PASSWORD,
                detail={"reasons": check.reasons},
            )
        if not await self.auth.verify_password(current_password, identity.password_hash):
            raise AuthenticationError(
                "Current password is incorrect", error_code=ErrorCode.INVALID_CREDENTIALS
            )
        if current_password == new_password:
            raise ValidationError(
                "New password must be different from the current password",
                error_code=ErrorCode.PASSWORD_REUSE_ERROR,
            )
        identity = self.identities.complete_admin_rotation(
            identity_id, password_hash=await self.auth.hash_password(new_password)
        )
        self.sessions.revoke_all(identity_id)
        identity = self.identities.record_login(identity_id)
        self.notifier.dispatch("password_changed", Recipient.of(identity), {})
        logger.info("admin_password_changed", identity_id=identity_id)
        return self.auth.issue_session(identity)

    # -- management ----------------------------------------------------------

    def list_admins(self) -> List[Dict[str, Any]]:
        now = self._now()
        admins = []
        for identity in self.identities.store.list_identities_with_roles(ADMIN_ROLES):
            entry = sanitize_identity(identity)
            entry.update(
                {
                    "isFirstLogin": identity.is_first_login,
                    "credentialsExpireAt": (
                        identity.credentials_expire_at.isoformat()
                        if identity.credentials_expire_at
                        else None
                    ),
                    "timeUntilExpiry": (
                        format_time_until(identity.credentials_expire_at, now)
                        if identity.is_first_login
                        else None
                    ),
                    "isLocked": is_locked(identity, now),
                    "failedAttempts": identity.failed_attempts,
                }
            )
            admins.append(entry)
        return admins

    async def reset_credentials(self, actor_id: str, target_id: str) -> Dict[str, Any]:
        self._not_self(actor_id, target_id, "reset credentials for")
        self._require_admin(target_id)
        temp_password = generate_temp_password()
        identity = self.identities.rotate_admin_credentials(
            target_id,
            password_hash=await self.auth.hash_password(temp_password),
            expires_at=self._credentials_expiry(),
        )
        self.sessions.revoke_all(target_id)
        delivered = await self.notifier.send(
            "admin_password_reset",
            Recipient.of(identity),
            {
                "admin_id": identity.admin_id,
                "temp_password": temp_password,
                "ttl_hours": self.settings.admin_credentials_ttl_hours,
            },
        )
        logger.info(
            "admin_credentials_reset",
            identity_id=target_id,
            actor_id=actor_id,
            email_sent=delivered,
        )
        return self._credential_payload(identity, temp_password, delivered)

    async def resend_credentials(self, actor_id: str, target_id: str) -> Dict[str, Any]:
        identity = self._require_admin(target_id)
        if not identity.is_first_login:
            raise ConflictError(
                "Admin has already completed first login",
                error_code=ErrorCode.INVALID_TRANSITION,
            )
        expires_at = identity.credentials_expire_at
        if expires_at is None or expires_at <= self._now():
            expires_at = self._credentials_expiry()
        temp_password = generate_temp_password()
        identity = self.identities.rotate_admin_credentials(
            target_id,
            password_hash=await self.auth.hash_password(temp_password),
            expires_at=expires_at,
        )
        delivered = await self.notifier.send(
            "admin_credentials",
            Recipient.of(identity),
            {
                "admin_id": identity.admin_id,
                "temp_password": temp_password,
                "ttl_hours": self.settings.admin_credentials_ttl_hours,
            },
        )
        logger.info("admin_credentials_resent", identity_id=target_id, actor_id=actor_id)
        return self._credential_payload(identity, temp_password, delivered)

    def set_active(self, actor_id: str, target_id: str, active: bool) -> Dict[str, Any]:
        if not active:
            self._not_self(actor_id, target_id, "deactivate")
        self._require_admin(target_id)
        identity = self.identities.update(target_id, is_active=active)
        if not active:
            self.sessions.revoke_all(target_id)
        logger.info(
            "admin_activation_changed", identity_id=target_id, actor_id=actor_id, active=active
        )
        return sanitize_identity(identity)

    def unlock(self, actor_id: str, target_id: str) -> Dict[str, Any]:
        self._require_admin(target_id)
        identity = self.identities.reset_failed_login(target_id)
        logger.info("admin_unlocked", identity_id=target_id, actor_id=actor_id)
        return sanitize_identity(identity)

    def delete(self, actor_id: str, target_id: str) -> None:
        self._not_self(actor_id, target_id, "delete")
        identity = self._require_admin(target_id)
        if identity.is_super_admin:
            raise ForbiddenError(
                "Super admin accounts cannot be deleted", error_code=ErrorCode.FORBIDDEN
            )
        self.identities.store.delete_identity(target_id)
        logger.info("admin_deleted", identity_id=target_id, actor_id=actor_id)
