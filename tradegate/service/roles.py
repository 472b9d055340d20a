from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from tradegate.config import Settings
from tradegate.service.errors import ErrorCode
from tradegate.storage.models import Role, Verification, VerificationStatus

SUPPLIER_REAPPLY_COOLDOWN_DAYS = 30

NOT_STARTED = "not_started"
NEVER_APPLIED = "never_applied"

_STATUS_MESSAGES = {
    VerificationStatus.PENDING: "Your application is waiting for admin review.",
    VerificationStatus.UNDER_REVIEW: "Your application is currently being reviewed by our team.",
    VerificationStatus.VERIFIED: "Your supplier account is verified and active!",
    VerificationStatus.REJECTED: "Your application was rejected. You can reapply after addressing the concerns.",
}


@dataclass
class SupplierRequestDecision:
    allowed: bool
    reason: Optional[ErrorCode] = None
    message: str = ""
    days_remaining: Optional[int] = None


@dataclass
class SupplierAccess:
    has_role: bool
    is_verified: bool
    status: str


class RolePolicy:
    """Read-only decisions about requesting and entering the supplier role."""

    def __init__(self, store, settings: Optional[Settings] = None) -> None:
        self.store = store
        days = settings.supplier_reapply_cooldown_days if settings else SUPPLIER_REAPPLY_COOLDOWN_DAYS
        self.cooldown = timedelta(days=days)

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def cooldown_days_remaining(
        self, verification: Verification, now: Optional[datetime] = None
    ) -> int:
        if verification.status != VerificationStatus.REJECTED:
            return 0
        rejected_at = verification.reviewed_at or verification.updated_at
        remaining = (rejected_at + self.cooldown) - (now or self._now())
        if remaining.total_seconds() <= 0:
            return 0
        return math.ceil(remaining.total_seconds() / 86400)

    def can_request_supplier_role(
        self, identity_id: str, now: Optional[datetime] = None
    ) -> SupplierRequestDecision:
        identity = self.store.get_identity(identity_id)
        if not identity:
            return SupplierRequestDecision(False, ErrorCode.USER_NOT_FOUND, "User not found")
        if identity.is_admin:
            return SupplierRequestDecision(
                False,
                ErrorCode.ADMIN_EXCLUSIVE,
                "Admin accounts cannot hold marketplace roles",
            )
        latest = self.store.latest_verification(identity_id)
        if latest is None:
            return SupplierRequestDecision(True)
        if latest.status == VerificationStatus.PENDING:
            return SupplierRequestDecision(
                False,
                ErrorCode.REQUEST_PENDING,
                "You already have a pending supplier application",
            )
        if latest.status == VerificationStatus.UNDER_REVIEW:
            return SupplierRequestDecision(
                False,
                ErrorCode.UNDER_REVIEW,
                "Your supplier application is under review",
            )
        if latest.status == VerificationStatus.VERIFIED:
            return SupplierRequestDecision(
                False, ErrorCode.ALREADY_VERIFIED, "You are already a verified supplier"
            )
        days = self.cooldown_days_remaining(latest, now)
        if days > 0:
            return SupplierRequestDecision(
                False,
                ErrorCode.COOLDOWN,
                f"You can reapply in {days} day{'s' if days != 1 else ''}",
                days_remaining=days,
            )
        return SupplierRequestDecision(True)

    def can_access_supplier_role(self, identity_id: str) -> SupplierAccess:
        identity = self.store.get_identity(identity_id)
        has_role = bool(identity and Role.SUPPLIER in identity.roles)
        latest = self.store.latest_verification(identity_id)
        status = latest.status.value if latest else NOT_STARTED
        return SupplierAccess(
            has_role=has_role,
            is_verified=bool(latest and latest.status == VerificationStatus.VERIFIED),
            status=status,
        )

    def supplier_block_reason(self, identity_id: str) -> Optional[str]:
        """Why switching into supplier is refused right now, or None."""
        latest = self.store.latest_verification(identity_id)
        if latest is None:
            return NEVER_APPLIED
        if latest.status == VerificationStatus.VERIFIED:
            return None
        return latest.status.value

    def supplier_status(self, identity_id: str) -> Dict[str, Any]:
        access = self.can_access_supplier_role(identity_id)
        has_draft = self.store.get_draft(identity_id) is not None
        latest = self.store.latest_verification(identity_id)
        if latest is None:
            return {
                "hasApplied": False,
                "status": NOT_STARTED,
                "canSwitch": False,
                "hasDraft": has_draft,
                "message": "You have not applied for supplier access yet.",
            }
        status: Dict[str, Any] = {
            "hasApplied": True,
            "status": latest.status.value,
            "isVerified": access.is_verified,
            "canSwitch": access.is_verified and access.has_role,
            "hasDraft": has_draft,
            "verifiedAt": latest.verified_at.isoformat() if latest.verified_at else None,
            "rejectionReason": latest.rejection_reason,
            "businessName": latest.fields.get("businessName"),
            "message": _STATUS_MESSAGES.get(latest.status, "Status unknown"),
        }
        if latest.status == VerificationStatus.REJECTED:
            status["daysRemaining"] = self.cooldown_days_remaining(latest)
        return status
