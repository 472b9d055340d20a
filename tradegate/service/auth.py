from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import httpx

from tradegate.config import Settings
from tradegate.logging import get_logger
from tradegate.service.credentials import (
    TOKEN_TYPE_ACCESS,
    TOKEN_TYPE_ADMIN_SETUP,
    PasswordHashing,
    TokenSigner,
    generate_opaque_token,
    generate_otp,
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
from tradegate.service.identity import IdentityService, parse_role
from tradegate.service.lockout import is_locked, minutes_remaining
from tradegate.service.notifier import Notifier, Recipient
from tradegate.service.roles import RolePolicy
from tradegate.service.sessions import SessionStore
from tradegate.storage.models import Identity, OtpCheck, Role, RoleGrant

logger = get_logger(__name__)

FORGOT_PASSWORD_MESSAGE = "If the email exists, a password reset link has been sent"
GOOGLE_PROVIDER = "google"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def sanitize_identity(identity: Identity) -> Dict[str, Any]:
    """Client-facing projection; never carries hashes, codes or tokens."""
    data: Dict[str, Any] = {
        "id": identity.id,
        "firstName": identity.first_name,
        "lastName": identity.last_name,
        "email": identity.email,
        "phone": identity.phone,
        "companyName": identity.company_name,
        "businessType": identity.business_type,
        "gstNumber": identity.gst_number,
        "roles": identity.roles.to_list(),
        "activeRole": identity.active_role.value if identity.active_role else None,
        "isVerified": identity.is_verified,
        "isActive": identity.is_active,
        "lastLogin": _iso(identity.last_login),
        "createdAt": _iso(identity.created_at),
        "updatedAt": _iso(identity.updated_at),
    }
    if identity.is_admin:
        data["adminId"] = identity.admin_id
        data["isSuperAdmin"] = identity.is_super_admin
    return data


@dataclass
class AuthContext:
    identity: Identity
    role: Optional[str]
    token_type: str = TOKEN_TYPE_ACCESS

    @property
    def identity_id(self) -> str:
        return self.identity.id


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    return header.split(" ", 1)[1].strip() or None


class GoogleVerifier(Protocol):
    async def verify(self, id_token: str) -> Dict[str, Any]: ...


class GoogleTokenInfoVerifier:
    """Validates Google ID tokens against the tokeninfo endpoint."""

    def __init__(self, settings: Settings, *, timeout: float = 10.0) -> None:
        self.client_id = settings.google_client_id
        self.tokeninfo_url = settings.google_tokeninfo_url
        self.timeout = timeout

    async def verify(self, id_token: str) -> Dict[str, Any]:
        if not self.client_id:
            raise ServerError(
                "Google sign-in is not configured", error_code=ErrorCode.GOOGLE_AUTH_FAILED
            )
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(self.tokeninfo_url, params={"id_token": id_token})
        except httpx.HTTPError as exc:
            logger.error("google_tokeninfo_unreachable", error=str(exc))
            raise ServerError(
                "Google authentication failed", error_code=ErrorCode.GOOGLE_AUTH_FAILED
            ) from exc
        if response.status_code != 200:
            raise AuthenticationError(
                "Invalid Google token", error_code=ErrorCode.INVALID_GOOGLE_TOKEN
            )
        claims = response.json()
        if claims.get("aud") != self.client_id:
            raise AuthenticationError(
                "Invalid Google token", error_code=ErrorCode.INVALID_GOOGLE_TOKEN
            )
        if str(claims.get("email_verified", "")).lower() != "true":
            raise AuthenticationError(
                "Google email is not verified", error_code=ErrorCode.GOOGLE_AUTH_FAILED
            )
        return claims


class AuthService:
    """Session issuance flows for marketplace identities."""

    def __init__(
        self,
        *,
        identities: IdentityService,
        policy: RolePolicy,
        sessions: SessionStore,
        signer: TokenSigner,
        hashing: PasswordHashing,
        notifier: Notifier,
        settings: Settings,
        google_verifier: Optional[GoogleVerifier] = None,
    ) -> None:
        self.identities = identities
        self.policy = policy
        self.sessions = sessions
        self.signer = signer
        self.hashing = hashing
        self.notifier = notifier
        self.settings = settings
        self.google_verifier = google_verifier or GoogleTokenInfoVerifier(settings)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- shared helpers ------------------------------------------------------

    async def hash_password(self, plaintext: str) -> str:
        return await asyncio.to_thread(self.hashing.hash_password, plaintext)

    async def verify_password(self, plaintext: str, stored_hash: Optional[str]) -> bool:
        return await asyncio.to_thread(self.hashing.verify_password, plaintext, stored_hash)

    def issue_session(self, identity: Identity) -> Dict[str, Any]:
        """Mint an access/refresh pair for the identity's active role."""
        extra: Dict[str, Any] = {}
        if identity.is_admin:
            extra = {
                "isSuperAdmin": identity.is_super_admin,
                "roles": identity.roles.to_list(),
                "adminId": identity.admin_id,
            }
        access_token = self.signer.issue_access_token(
            identity.id,
            email=identity.email,
            role=identity.active_role.value if identity.active_role else None,
            extra=extra,
        )
        refresh_token, expires_at = self.signer.issue_refresh_token(identity.id)
        self.sessions.create_refresh_record(identity.id, refresh_token, expires_at)
        return {
            "user": sanitize_identity(identity),
            "accessToken": access_token,
            "refreshToken": refresh_token,
        }

    @staticmethod
    def _check_password_format(password: str) -> None:
        check = validate_password_strength(password)
        if not check.valid:
            raise ValidationError(
                "Password must be at least 8 characters and include a number and a special character",
                error_code=ErrorCode.INVALID_PASSWORD_FORMAT,
                detail={"reasons": check.reasons},
            )

    @staticmethod
    def _invalid_credentials() -> AuthenticationError:
        return AuthenticationError(
            "Invalid credentials", error_code=ErrorCode.INVALID_CREDENTIALS
        )

    @staticmethod
    def _gate_account(identity: Identity) -> None:
        if not identity.is_verified:
            raise ForbiddenError(
                "Please verify your account first", error_code=ErrorCode.USER_NOT_VERIFIED
            )
        if not identity.is_active:
            raise ForbiddenError(
                "Your account has been deactivated", error_code=ErrorCode.USER_INACTIVE
            )

    def ensure_not_locked(self, identity: Identity) -> Identity:
        now = self._now()
        identity = self.identities.clear_elapsed_lock(identity, now)
        if is_locked(identity, now):
            minutes = minutes_remaining(identity, now)
            raise AccountLockedError(
                f"Account is locked. Try again in {minutes} minutes",
                detail={"minutesRemaining": minutes},
            )
        return identity

    def _find_marketplace_identity(self, identifier: str) -> Optional[Identity]:
        identity = self.identities.find_by_email_or_phone(identifier.strip())
        # Admin accounts sign in through the admin-id namespace only
        if identity and identity.is_admin:
            return None
        return identity

    def _selectable_roles(self, identity: Identity) -> List[Role]:
        roles = []
        for role in identity.active_roles:
            if role == Role.SUPPLIER and self.policy.supplier_block_reason(identity.id):
                continue
            roles.append(role)
        return roles

    def _complete_login(
        self, identity: Identity, requested_role: Optional[str]
    ) -> Dict[str, Any]:
        """Pick the active role, then mint tokens or ask the client to choose.

        A requested role is honoured only when the account can use it. A single
        usable role always wins; with several, an unusable request is refused
        and no request at all asks the client to choose.
        """
        requested = parse_role(requested_role) if requested_role else None
        candidates = self._selectable_roles(identity)
        if not candidates:
            raise ForbiddenError(
                "No active role is available for this account",
                error_code=ErrorCode.ROLE_NOT_HELD,
            )
        if requested in candidates:
            chosen = requested
        elif len(candidates) == 1:
            chosen = candidates[0]
        elif requested is not None:
            raise ValidationError(
                f"Role {requested.value} is not available for this account",
                error_code=ErrorCode.INVALID_ROLE,
                detail={"availableRoles": [r.value for r in candidates]},
            )
        else:
            return {
                "requiresRoleSelection": True,
                "availableRoles": [r.value for r in candidates],
                "user": sanitize_identity(identity),
            }
        if identity.active_role != chosen:
            identity = self.identities.set_active_role(identity.id, chosen)
        identity = self.identities.record_login(identity.id)
        logger.info(
            "login_succeeded",
            identity_id=identity.id,
            role=identity.active_role.value if identity.active_role else None,
        )
        return self.issue_session(identity)

    async def _send_otp(self, identity: Identity) -> bool:
        otp = generate_otp(self.settings.otp_length)
        await self.sessions.store_otp(identity.id, otp, self.settings.otp_ttl_minutes)
        return await self.notifier.send(
            "otp",
            Recipient.of(identity),
            {"otp": otp, "ttl_minutes": self.settings.otp_ttl_minutes},
        )

    async def _consume_otp(self, identity: Identity, otp: str) -> None:
        result = await self.sessions.verify_otp(identity.id, otp.strip())
        if result == OtpCheck.EXPIRED:
            raise AuthenticationError("OTP has expired", error_code=ErrorCode.OTP_EXPIRED)
        if result != OtpCheck.VALID:
            raise AuthenticationError("Invalid OTP", error_code=ErrorCode.INVALID_OTP)

    # -- signup and verification --------------------------------------------

    async def signup(
        self,
        *,
        email: str,
        phone: Optional[str],
        password: str,
        first_name: str = "",
        last_name: str = "",
        company_name: Optional[str] = None,
        business_type: Optional[str] = None,
        gst_number: Optional[str] = None,
    ) -> Dict[str, Any]:
        email = email.strip().lower()
        phone = phone.strip() if phone else None
        self._check_password_format(password)
        if self.identities.find_by_email(email) or (
            phone and self.identities.find_by_phone(phone)
        ):
            raise ConflictError(
                "An account with this email or phone already exists",
                error_code=ErrorCode.USER_ALREADY_EXISTS,
            )
        identity = self.identities.create(
            Identity(
                id=str(uuid.uuid4()),
                email=email,
                phone=phone,
                password_hash=await self.hash_password(password),
                first_name=first_name,
                last_name=last_name,
                company_name=company_name,
                business_type=business_type,
                gst_number=gst_number,
                role_grants={Role.BUYER: RoleGrant(role=Role.BUYER)},
            )
        )
        otp_sent = await self._send_otp(identity)
        if not otp_sent:
            logger.warning("signup_otp_not_delivered", identity_id=identity.id)
        logger.info("signup_completed", identity_id=identity.id)
        return {
            "userId": identity.id,
            "email": identity.email,
            "phone": identity.phone,
            "otpSent": otp_sent,
        }

    async def verify_signup_otp(self, identifier: str, otp: str) -> Dict[str, Any]:
        identity = self._find_marketplace_identity(identifier)
        if not identity:
            raise NotFoundError("User not found", error_code=ErrorCode.USER_NOT_FOUND)
        if identity.is_verified:
            raise ConflictError(
                "Account is already verified", error_code=ErrorCode.ALREADY_VERIFIED
            )
        await self._consume_otp(identity, otp)
        await self.sessions.clear_otp(identity.id)
        identity = self.identities.mark_verified(identity.id)
        self.notifier.dispatch("welcome", Recipient.of(identity), {})
        return self._complete_login(identity, None)

    async def resend_otp(self, identifier: str) -> Dict[str, Any]:
        identity = self._find_marketplace_identity(identifier)
        if not identity:
            raise NotFoundError("User not found", error_code=ErrorCode.USER_NOT_FOUND)
        if identity.is_verified:
            raise ConflictError(
                "Account is already verified", error_code=ErrorCode.ALREADY_VERIFIED
            )
        if not await self._send_otp(identity):
            raise ServerError("Failed to send OTP", error_code=ErrorCode.OTP_SEND_FAILED)
        return {"otpSent": True}

    # -- password and OTP login ---------------------------------------------

    async def login(
        self, identifier: str, password: str, requested_role: Optional[str] = None
    ) -> Dict[str, Any]:
        identity = self._find_marketplace_identity(identifier)
        if not identity:
            # Burn comparable time so unknown identifiers are not distinguishable
            await self.verify_password(password, None)
            raise self._invalid_credentials()
        identity = self.ensure_not_locked(identity)
        if self.settings.reveal_account_state:
            self._gate_account(identity)
        if not await self.verify_password(password, identity.password_hash):
            identity = self.identities.record_failed_login(identity.id)
            if is_locked(identity, self._now()):
                minutes = minutes_remaining(identity, self._now())
                raise AccountLockedError(
                    f"Account is locked. Try again in {minutes} minutes",
                    detail={"minutesRemaining": minutes},
                )
            raise self._invalid_credentials()
        if not self.settings.reveal_account_state and (
            not identity.is_verified or not identity.is_active
        ):
            raise self._invalid_credentials()
        self.identities.reset_failed_login(identity.id)
        return self._complete_login(identity, requested_role)

    async def request_login_otp(self, identifier: str) -> Dict[str, Any]:
        identity = self._find_marketplace_identity(identifier)
        if not identity:
            raise NotFoundError("User not found", error_code=ErrorCode.USER_NOT_FOUND)
        identity = self.ensure_not_locked(identity)
        self._gate_account(identity)
        if not await self._send_otp(identity):
            raise ServerError("Failed to send OTP", error_code=ErrorCode.OTP_SEND_FAILED)
        return {"otpSent": True}

    async def verify_login_otp(
        self, identifier: str, otp: str, requested_role: Optional[str] = None
    ) -> Dict[str, Any]:
        identity = self._find_marketplace_identity(identifier)
        if not identity:
            raise NotFoundError("User not found", error_code=ErrorCode.USER_NOT_FOUND)
        identity = self.ensure_not_locked(identity)
        self._gate_account(identity)
        await self._consume_otp(identity, otp)
        await self.sessions.clear_otp(identity.id)
        self.identities.reset_failed_login(identity.id)
        return self._complete_login(identity, requested_role)

    async def social_google(
        self, id_token: str, requested_role: Optional[str] = None
    ) -> Dict[str, Any]:
        claims = await self.google_verifier.verify(id_token)
        google_uid = claims.get("sub")
        email = (claims.get("email") or "").strip().lower()
        if not google_uid or not email:
            raise AuthenticationError(
                "Invalid Google token", error_code=ErrorCode.INVALID_GOOGLE_TOKEN
            )
        store = self.identities.store
        identity = store.get_identity_by_provider(GOOGLE_PROVIDER, google_uid)
        if identity is None:
            identity = self.identities.find_by_email(email)
            if identity is None:
                identity = self.identities.create(
                    Identity(
                        id=str(uuid.uuid4()),
                        email=email,
                        phone=None,
                        # Random secret nobody knows; password login stays unusable
                        password_hash=await self.hash_password(generate_opaque_token(32)),
                        first_name=claims.get("given_name") or "",
                        last_name=claims.get("family_name") or "",
                        role_grants={Role.BUYER: RoleGrant(role=Role.BUYER)},
                        is_verified=True,
                    )
                )
                logger.info("social_signup_completed", identity_id=identity.id, provider=GOOGLE_PROVIDER)
            elif not identity.is_verified:
                identity = self.identities.mark_verified(identity.id)
            store.link_auth_provider(identity.id, GOOGLE_PROVIDER, google_uid)
        if identity.is_admin:
            raise self._invalid_credentials()
        if not identity.is_active:
            raise ForbiddenError(
                "Your account has been deactivated", error_code=ErrorCode.USER_INACTIVE
            )
        result = self._complete_login(identity, requested_role)
        result["isNewUser"] = not (identity.company_name and identity.phone)
        return result

    # -- token lifecycle -----------------------------------------------------

    async def refresh(self, refresh_token: str) -> Dict[str, Any]:
        claims = self.signer.verify_refresh_token(refresh_token)
        if not claims:
            raise AuthenticationError("Invalid refresh token", error_code=ErrorCode.INVALID_TOKEN)
        record = await self.sessions.find_valid_refresh_record(refresh_token)
        if not record or record.identity_id != claims["sub"]:
            raise AuthenticationError(
                "Refresh token expired or revoked",
                error_code=ErrorCode.REFRESH_TOKEN_EXPIRED,
            )
        identity = self.identities.find_by_id(record.identity_id)
        if not identity or not identity.is_active:
            raise ForbiddenError(
                "Your account has been deactivated", error_code=ErrorCode.USER_INACTIVE
            )
        extra = (
            {"isSuperAdmin": identity.is_super_admin, "roles": identity.roles.to_list(), "adminId": identity.admin_id}
            if identity.is_admin
            else None
        )
        access_token = self.signer.issue_access_token(
            identity.id,
            email=identity.email,
            role=identity.active_role.value if identity.active_role else None,
            extra=extra,
        )
        return {"accessToken": access_token, "refreshToken": refresh_token}

    async def switch_role(
        self,
        identity_id: str,
        role: str,
        *,
        refresh_token: Optional[str] = None,
        password: Optional[str] = None,
    ) -> Dict[str, Any]:
        identity = self.identities.require(identity_id)
        if password is not None and not await self.verify_password(password, identity.password_hash):
            raise self._invalid_credentials()
        identity = self.identities.switch_active_role(identity_id, role)
        if refresh_token:
            await self.sessions.revoke(refresh_token)
        logger.info("role_switched", identity_id=identity_id, role=identity.active_role.value)
        return self.issue_session(identity)

    async def logout(self, refresh_token: Optional[str]) -> None:
        if refresh_token:
            await self.sessions.revoke(refresh_token)

    async def logout_all(self, identity_id: str) -> int:
        revoked = self.sessions.revoke_all(identity_id)
        try:
            self.sessions.purge_expired()
        except Exception as exc:
            logger.warning("refresh_purge_failed", error=str(exc))
        logger.info("logout_all", identity_id=identity_id, revoked=revoked)
        return revoked

    # -- passwords -----------------------------------------------------------

    async def forgot_password(self, email: str) -> Dict[str, Any]:
        identity = self.identities.find_by_email(email.strip().lower())
        if identity and identity.is_active and not identity.is_admin:
            token = await self.sessions.store_reset_token(
                identity.id, self.settings.reset_token_ttl_minutes
            )
            base_url = self.settings.app_base_url.rstrip("/")
            self.notifier.dispatch(
                "password_reset",
                Recipient.of(identity),
                {
                    "reset_url": f"{base_url}/reset-password?token={token}",
                    "ttl_minutes": self.settings.reset_token_ttl_minutes,
                },
            )
            logger.info("password_reset_requested", identity_id=identity.id)
        return {"message": FORGOT_PASSWORD_MESSAGE}

    async def reset_password(self, token: str, new_password: str) -> Dict[str, Any]:
        self._check_password_format(new_password)
        identity_id = self.sessions.verify_reset_token(token)
        identity = self.identities.find_by_id(identity_id) if identity_id else None
        if not identity:
            raise ValidationError(
                "Invalid or expired reset token", error_code=ErrorCode.RESET_TOKEN_INVALID
            )
        if await self.verify_password(new_password, identity.password_hash):
            raise ValidationError(
                "New password must be different from the current password",
                error_code=ErrorCode.PASSWORD_REUSE_ERROR,
            )
        if await self.sessions.consume_reset_token(token) != identity.id:
            raise ValidationError(
                "Invalid or expired reset token", error_code=ErrorCode.RESET_TOKEN_INVALID
            )
        self.identities.set_password_hash(identity.id, await self.hash_password(new_password))
        self.sessions.invalidate_reset_tokens(identity.id)
        self.sessions.revoke_all(identity.id)
        self.identities.reset_failed_login(identity.id)
        self.notifier.dispatch("password_changed", Recipient.of(identity), {})
        logger.info("password_reset_completed", identity_id=identity.id)
        return {"message": "Password has been reset successfully"}

    async def change_password(
        self, identity_id: str, current_password: str, new_password: str
    ) -> Dict[str, Any]:
        identity = self.identities.require(identity_id)
        self._check_password_format(new_password)
        if not await self.verify_password(current_password, identity.password_hash):
            raise AuthenticationError(
                "Current password is incorrect", error_code=ErrorCode.INVALID_CREDENTIALS
            )
        if current_password == new_password:
            raise ValidationError(
                "New password must be different from the current password",
                error_code=ErrorCode.PASSWORD_REUSE_ERROR,
            )
        identity = self.identities.set_password_hash(
            identity_id, await self.hash_password(new_password)
        )
        self.sessions.revoke_all(identity_id)
        self.notifier.dispatch("password_changed", Recipient.of(identity), {})
        logger.info("password_changed", identity_id=identity_id)
        return self.issue_session(identity)

    def authenticate(
        self, authorization: Optional[str], *, allow_setup: bool = False
    ) -> Optional[AuthContext]:
        """Resolve a bearer header to a live identity.

        Access tokens are accepted always; admin setup tokens only when
        ``allow_setup`` is set. Deactivated or deleted identities never resolve.
        """
        token = extract_bearer(authorization)
        if not token:
            return None
        claims = self.signer.verify_access_token(token)
        token_type = TOKEN_TYPE_ACCESS
        if claims is None and allow_setup:
            claims = self.signer.verify_setup_token(token)
            token_type = TOKEN_TYPE_ADMIN_SETUP
        if claims is None:
            return None
        identity = self.identities.find_by_id(claims["sub"])
        if not identity or not identity.is_active:
            return None
        role = claims.get("role")
        if token_type == TOKEN_TYPE_ADMIN_SETUP:
            role = identity.active_role.value if identity.active_role else None
        return AuthContext(identity=identity, role=role, token_type=token_type)

    def me(self, identity_id: str) -> Dict[str, Any]:
        return sanitize_identity(self.identities.require(identity_id))
