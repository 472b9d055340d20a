"""Supplier verification workflow.

Records move ``pending -> under_review -> verified | rejected``. Terminal
records are never reopened; reapplying after the cooldown creates a new
record. Every status change is a compare-and-set in the store, and any
supplier-grant change rides along in the same store call.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from tradegate.config import Settings
from tradegate.logging import get_logger
from tradegate.service.blobs import LocalBlobStore
from tradegate.service.errors import (
    ConflictError,
    ErrorCode,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from tradegate.service.notifier import Notifier, Recipient
from tradegate.service.roles import RolePolicy
from tradegate.storage.errors import ConstraintViolation, RoleExclusivityError
from tradegate.storage.models import (
    NON_TERMINAL_STATUSES,
    Role,
    RoleGrant,
    Verification,
    VerificationDraft,
    VerificationStatus,
)

logger = get_logger(__name__)

REQUIRED_BUSINESS_FIELDS = ("businessName", "businessType", "businessAddress")
ALLOWED_DOCUMENT_EXTENSIONS = frozenset({".pdf", ".doc", ".docx", ".jpg", ".jpeg", ".png"})

_DECISION_ERRORS = {
    ErrorCode.USER_NOT_FOUND: NotFoundError,
    ErrorCode.ADMIN_EXCLUSIVE: ForbiddenError,
    ErrorCode.REQUEST_PENDING: ConflictError,
    ErrorCode.UNDER_REVIEW: ConflictError,
    ErrorCode.ALREADY_VERIFIED: ConflictError,
    ErrorCode.COOLDOWN: ForbiddenError,
}
_TERMINAL_CONFLICTS = {
    VerificationStatus.VERIFIED: (ErrorCode.ALREADY_VERIFIED, "Verification is already approved"),
    VerificationStatus.REJECTED: (ErrorCode.ALREADY_REJECTED, "Verification is already rejected"),
    VerificationStatus.UNDER_REVIEW: (ErrorCode.UNDER_REVIEW, "Verification is already under review"),
}


def _inactive_supplier_grant(current: Optional[RoleGrant]) -> RoleGrant:
    if current is None:
        return RoleGrant(role=Role.SUPPLIER, is_active=False)
    return RoleGrant(
        role=Role.SUPPLIER,
        is_active=False,
        granted_at=current.granted_at,
        verified_at=None,
        granted_by=current.granted_by,
    )


def _active_supplier_grant(reviewer_id: str, now: datetime):
    def merge(current: Optional[RoleGrant]) -> RoleGrant:
        return RoleGrant(
            role=Role.SUPPLIER,
            is_active=True,
            granted_at=current.granted_at if current else now,
            verified_at=now,
            granted_by=reviewer_id,
        )

    return merge


class VerificationWorkflow:
    def __init__(
        self,
        store,
        policy: RolePolicy,
        notifier: Notifier,
        blobs: LocalBlobStore,
        settings: Settings,
    ) -> None:
        self.store = store
        self.policy = policy
        self.notifier = notifier
        self.blobs = blobs
        self.settings = settings

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _ensure_may_apply(self, identity_id: str) -> None:
        decision = self.policy.can_request_supplier_role(identity_id)
        if decision.allowed:
            return
        error_cls = _DECISION_ERRORS.get(decision.reason, ForbiddenError)
        detail = {}
        if decision.days_remaining is not None:
            detail["daysRemaining"] = decision.days_remaining
        raise error_cls(decision.message, error_code=decision.reason, detail=detail)

    def _notify(self, identity_id: str, template: str, data: Dict[str, Any]) -> None:
        identity = self.store.get_identity(identity_id)
        if not identity:
            return
        self.notifier.dispatch(template, Recipient.of(identity), data)

    # -- drafts --------------------------------------------------------------

    def save_draft(
        self, identity_id: str, fields: Dict[str, Any], step: Optional[int] = None
    ) -> VerificationDraft:
        self._ensure_may_apply(identity_id)

        def merge(current: Optional[VerificationDraft]) -> VerificationDraft:
            draft = current or VerificationDraft(identity_id=identity_id)
            draft.fields = {**draft.fields, **(fields or {})}
            if step is not None:
                draft.current_step = step
            return draft

        return self.store.upsert_draft(identity_id, merge)

    def get_draft(self, identity_id: str) -> Optional[VerificationDraft]:
        return self.store.get_draft(identity_id)

    def upload_document(
        self,
        identity_id: str,
        doc_type: str,
        data: bytes,
        content_type: str,
        filename: str,
    ) -> Dict[str, Any]:
        self._ensure_may_apply(identity_id)
        if not data:
            raise ValidationError("Document is empty")
        if len(data) > self.settings.max_document_bytes:
            raise ValidationError(
                "Document exceeds the maximum size",
                error_code=ErrorCode.DOCUMENT_TOO_LARGE,
                detail={"maxBytes": self.settings.max_document_bytes},
            )
        extension = Path(filename or "").suffix.lower()
        if extension not in ALLOWED_DOCUMENT_EXTENSIONS:
            raise ValidationError(
                "Only PDF, DOC, DOCX, JPG and PNG files are allowed",
                error_code=ErrorCode.UNSUPPORTED_DOCUMENT_TYPE,
            )
        stored = self.blobs.put(
            data, content_type, f"verification/{identity_id}/{doc_type}{extension}"
        )
        document = {
            "type": doc_type,
            "url": stored["url"],
            "key": stored["key"],
            "filename": filename,
            "contentType": content_type,
            "size": len(data),
            "uploadedAt": self._now().isoformat(),
        }

        def merge(current: Optional[VerificationDraft]) -> VerificationDraft:
            draft = current or VerificationDraft(identity_id=identity_id)
            draft.documents = [d for d in draft.documents if d.get("type") != doc_type]
            draft.documents.append(document)
            return draft

        self.store.upsert_draft(identity_id, merge)
        logger.info("verification_document_uploaded", identity_id=identity_id, doc_type=doc_type)
        return document

    # -- submission ----------------------------------------------------------

    async def submit(
        self,
        identity_id: str,
        fields: Optional[Dict[str, Any]] = None,
        documents: Optional[List[Dict[str, Any]]] = None,
    ) -> Verification:
        self._ensure_may_apply(identity_id)
        draft = self.store.get_draft(identity_id)
        merged_fields = {**(draft.fields if draft else {}), **(fields or {})}
        merged_documents = list(documents if documents is not None else (draft.documents if draft else []))
        missing = [f for f in REQUIRED_BUSINESS_FIELDS if not str(merged_fields.get(f) or "").strip()]
        if missing:
            raise ValidationError(
                "Missing required business information",
                error_code=ErrorCode.MISSING_FIELDS,
                detail={"missingFields": missing},
            )
        record = Verification.new_pending(identity_id, merged_fields, merged_documents)
        try:
            created = self.store.create_verification(
                record, grant_merge=_inactive_supplier_grant
            )
        except RoleExclusivityError as exc:
            raise ForbiddenError(
                "Admin accounts cannot hold marketplace roles",
                error_code=ErrorCode.ADMIN_EXCLUSIVE,
            ) from exc
        except ConstraintViolation as exc:
            # Lost a race with a concurrent submit for the same identity
            raise ConflictError(
                "You already have a pending supplier application",
                error_code=ErrorCode.REQUEST_PENDING,
            ) from exc
        self.store.delete_draft(identity_id)
        logger.info("verification_submitted", identity_id=identity_id, verification_id=created.id)
        self._notify(
            identity_id,
            "supplier_application_submitted",
            {"business_name": merged_fields.get("businessName")},
        )
        return created

    # -- reviewer decisions --------------------------------------------------

    def _transition_failed(self, verification_id: str) -> None:
        current = self.store.get_verification(verification_id)
        if not current:
            raise NotFoundError("Verification not found")
        code, message = _TERMINAL_CONFLICTS.get(
            current.status,
            (ErrorCode.INVALID_TRANSITION, f"Cannot change a {current.status.value} verification"),
        )
        raise ConflictError(message, error_code=code, detail={"status": current.status.value})

    async def mark_under_review(
        self, verification_id: str, reviewer_id: str, notes: Optional[str] = None
    ) -> Verification:
        updated = self.store.transition_verification(
            verification_id,
            expected={VerificationStatus.PENDING},
            status=VerificationStatus.UNDER_REVIEW,
            reviewer_id=reviewer_id,
            review_notes=notes,
        )
        if updated is None:
            self._transition_failed(verification_id)
        logger.info("verification_under_review", verification_id=verification_id, reviewer_id=reviewer_id)
        return updated

    async def approve(
        self, verification_id: str, reviewer_id: str, notes: Optional[str] = None
    ) -> Verification:
        now = self._now()
        updated = self.store.transition_verification(
            verification_id,
            expected=NON_TERMINAL_STATUSES,
            status=VerificationStatus.VERIFIED,
            grant_merge=_active_supplier_grant(reviewer_id, now),
            reviewer_id=reviewer_id,
            review_notes=notes,
            reviewed_at=now,
            verified_at=now,
        )
        if updated is None:
            self._transition_failed(verification_id)
        logger.info("verification_approved", verification_id=verification_id, reviewer_id=reviewer_id)
        self._notify(
            updated.identity_id,
            "supplier_approved",
            {"business_name": updated.fields.get("businessName")},
        )
        return updated

    async def reject(self, verification_id: str, reviewer_id: str, reason: str) -> Verification:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A rejection reason is required")
        now = self._now()
        updated = self.store.transition_verification(
            verification_id,
            expected=NON_TERMINAL_STATUSES,
            status=VerificationStatus.REJECTED,
            grant_merge=_inactive_supplier_grant,
            reviewer_id=reviewer_id,
            rejection_reason=reason,
            reviewed_at=now,
        )
        if updated is None:
            self._transition_failed(verification_id)
        logger.info("verification_rejected", verification_id=verification_id, reviewer_id=reviewer_id)
        self._notify(
            updated.identity_id,
            "supplier_rejected",
            {"reason": reason, "cooldown_days": self.policy.cooldown.days},
        )
        return updated

    async def grant_supplier(
        self, identity_id: str, reviewer_id: str, notes: Optional[str] = None
    ) -> Verification:
        """Administrative override that verifies an identity as a supplier.

        An open application is approved in place; otherwise a verified record
        attributed to the reviewer is created together with the active grant.
        """
        identity = self.store.get_identity(identity_id)
        if not identity:
            raise NotFoundError("User not found", error_code=ErrorCode.USER_NOT_FOUND)
        if identity.is_admin:
            raise ForbiddenError(
                "Admin accounts cannot hold marketplace roles",
                error_code=ErrorCode.ADMIN_EXCLUSIVE,
            )
        latest = self.store.latest_verification(identity_id)
        if latest and latest.status in NON_TERMINAL_STATUSES:
            return await self.approve(latest.id, reviewer_id, notes)
        grant = identity.role_grants.get(Role.SUPPLIER)
        if latest and latest.status == VerificationStatus.VERIFIED and grant and grant.is_active:
            raise ConflictError(
                "User is already a verified supplier", error_code=ErrorCode.ALREADY_VERIFIED
            )
        now = self._now()
        record = Verification(
            id=str(uuid.uuid4()),
            identity_id=identity_id,
            status=VerificationStatus.VERIFIED,
            fields=dict(latest.fields) if latest else {},
            documents=list(latest.documents) if latest else [],
            submitted_at=now,
            reviewed_at=now,
            reviewer_id=reviewer_id,
            review_notes=notes or "Granted by administrator",
            verified_at=now,
            created_at=now,
            updated_at=now,
        )
        created = self.store.create_verification(
            record, grant_merge=_active_supplier_grant(reviewer_id, now)
        )
        self.store.delete_draft(identity_id)
        logger.warning("supplier_role_granted_by_admin", identity_id=identity_id, reviewer_id=reviewer_id)
        self._notify(identity_id, "supplier_approved", {"business_name": record.fields.get("businessName")})
        return created

    def list_verifications(
        self, status: Optional[str] = None, limit: int = 100
    ) -> List[Verification]:
        parsed = None
        if status:
            try:
                parsed = VerificationStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown verification status: {status}") from None
        return self.store.list_verifications(parsed, limit=limit)
