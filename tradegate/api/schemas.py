from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from tradegate.storage.models import Verification, VerificationDraft

# Limits for free-form draft fields
MAX_JSON_DEPTH = 10
MAX_ARRAY_ITEMS = 100

_INVISIBLE = dict.fromkeys(
    [0x200B, 0x200C, 0x200D, 0xFEFF, *range(0x202A, 0x202F), *range(0x2066, 0x206A)]
)
_EMAIL = re.compile(
    r"^(?P<local>[a-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64})@"
    r"(?P<domain>(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?)$"
)
_PHONE = re.compile(r"^\+?[0-9]{3,15}$")


def _check_json_shape(value: Any, depth: int = 0) -> None:
    if depth > MAX_JSON_DEPTH:
        raise ValueError(f"nested deeper than {MAX_JSON_DEPTH} levels")
    if isinstance(value, dict):
        children = value.values()
    elif isinstance(value, list):
        if len(value) > MAX_ARRAY_ITEMS:
            raise ValueError(f"lists are limited to {MAX_ARRAY_ITEMS} items")
        children = value
    else:
        return
    for child in children:
        _check_json_shape(child, depth + 1)


def _normalize_unicode(value: str) -> str:
    """Drop zero-width and bidi control characters, then NFKC-normalize."""
    return unicodedata.normalize("NFKC", value.translate(_INVISIBLE))


def _validate_email(value: str) -> str:
    email = _normalize_unicode(value.strip().lower())
    if len(email) > 254 or not _EMAIL.match(email):
        raise ValueError("invalid email address")
    return email


def _validate_phone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    digits = re.sub(r"[\s()-]", "", value)
    if not digits:
        return None
    if not _PHONE.match(digits):
        raise ValueError("invalid phone number")
    return digits


class ApiModel(BaseModel):
    """Base for every wire model: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, serialize_by_alias=True
    )


# -- envelopes ---------------------------------------------------------------


class Envelope(ApiModel):
    success: bool = True
    message: Optional[str] = None
    data: Optional[Any] = None


class RoleSelectionResponse(ApiModel):
    success: bool = True
    requires_role_selection: bool = True
    available_roles: List[str]
    user: Dict[str, Any]


class ErrorResponse(ApiModel):
    success: bool = False
    message: str
    error_code: str
    details: Optional[Any] = None


# -- auth --------------------------------------------------------------------


class SignupRequest(ApiModel):
    email: str
    password: str = Field(..., max_length=128)
    phone: Optional[str] = None
    first_name: str = Field("", max_length=100)
    last_name: str = Field("", max_length=100)
    company_name: Optional[str] = Field(None, max_length=200)
    business_type: Optional[str] = Field(None, max_length=100)
    gst_number: Optional[str] = Field(None, max_length=32)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("phone")
    @classmethod
    def _phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)


class IdentifierRequest(ApiModel):
    """Email or phone number."""

    identifier: str = Field(..., min_length=3, max_length=254)

    @field_validator("identifier")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class VerifyOtpRequest(IdentifierRequest):
    otp: str = Field(..., min_length=4, max_length=10)


class LoginRequest(IdentifierRequest):
    password: str = Field(..., max_length=128)
    requested_role: Optional[str] = None


class OtpLoginVerifyRequest(VerifyOtpRequest):
    requested_role: Optional[str] = None


class GoogleLoginRequest(ApiModel):
    id_token: str = Field(..., min_length=1)
    requested_role: Optional[str] = None


class RefreshRequest(ApiModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(ApiModel):
    refresh_token: Optional[str] = None


class SwitchRoleRequest(ApiModel):
    role: str
    refresh_token: Optional[str] = None
    password: Optional[str] = Field(None, max_length=128)


class ForgotPasswordRequest(ApiModel):
    email: str

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(ApiModel):
    token: str = Field(..., min_length=1)
    new_password: str = Field(..., max_length=128)


class ChangePasswordRequest(ApiModel):
    current_password: str = Field(..., max_length=128)
    new_password: str = Field(..., max_length=128)


# -- verification ------------------------------------------------------------


class DraftRequest(ApiModel):
    fields: Dict[str, Any] = Field(default_factory=dict)
    step: Optional[int] = Field(None, ge=1, le=10)

    @field_validator("fields")
    @classmethod
    def _depth(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _check_json_shape(value)
        return value


class SubmitVerificationRequest(ApiModel):
    fields: Optional[Dict[str, Any]] = None
    documents: Optional[List[Dict[str, Any]]] = None

    @field_validator("fields")
    @classmethod
    def _depth(cls, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if value is not None:
            _check_json_shape(value)
        return value


class ReviewRequest(ApiModel):
    notes: Optional[str] = Field(None, max_length=2000)


class RejectRequest(ApiModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class VerificationResponse(ApiModel):
    id: str
    identity_id: str = Field(serialization_alias="userId")
    status: str
    fields: Dict[str, Any]
    documents: List[Dict[str, Any]]
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    reviewer_id: Optional[str] = None
    review_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    verified_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_record(
        cls,
        record: Verification,
        presign: Optional[Callable[[str], str]] = None,
    ) -> "VerificationResponse":
        documents = record.documents
        if presign is not None:
            documents = [
                {**doc, "downloadUrl": presign(doc["key"])} if doc.get("key") else doc
                for doc in record.documents
            ]
        return cls(
            id=record.id,
            identity_id=record.identity_id,
            status=record.status.value,
            fields=record.fields,
            documents=documents,
            submitted_at=record.submitted_at,
            reviewed_at=record.reviewed_at,
            reviewer_id=record.reviewer_id,
            review_notes=record.review_notes,
            rejection_reason=record.rejection_reason,
            verified_at=record.verified_at,
            created_at=record.created_at,
        )


class DraftResponse(ApiModel):
    fields: Dict[str, Any]
    documents: List[Dict[str, Any]]
    current_step: int
    updated_at: datetime

    @classmethod
    def from_draft(cls, draft: VerificationDraft) -> "DraftResponse":
        return cls(
            fields=draft.fields,
            documents=draft.documents,
            current_step=draft.current_step,
            updated_at=draft.updated_at,
        )


# -- admin -------------------------------------------------------------------


class AdminLoginRequest(ApiModel):
    admin_id: str = Field(..., min_length=1, max_length=32)
    password: str = Field(..., max_length=128)


class AdminCreateRequest(ApiModel):
    email: str
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field("", max_length=100)
    phone: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("phone")
    @classmethod
    def _phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)
