from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Stable machine-readable codes surfaced as ``errorCode`` to clients."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    MISSING_FIELDS = "MISSING_FIELDS"
    INVALID_PASSWORD_FORMAT = "INVALID_PASSWORD_FORMAT"
    WEAK_PASSWORD = "WEAK_PASSWORD"
    PASSWORD_REUSE_ERROR = "PASSWORD_REUSE_ERROR"
    DOCUMENT_TOO_LARGE = "DOCUMENT_TOO_LARGE"
    UNSUPPORTED_DOCUMENT_TYPE = "UNSUPPORTED_DOCUMENT_TYPE"

    USER_ALREADY_EXISTS = "USER_ALREADY_EXISTS"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    USER_NOT_VERIFIED = "USER_NOT_VERIFIED"
    USER_INACTIVE = "USER_INACTIVE"
    ALREADY_VERIFIED = "ALREADY_VERIFIED"

    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    REFRESH_TOKEN_EXPIRED = "REFRESH_TOKEN_EXPIRED"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    INVALID_OTP = "INVALID_OTP"
    OTP_EXPIRED = "OTP_EXPIRED"
    OTP_SEND_FAILED = "OTP_SEND_FAILED"
    RESET_TOKEN_INVALID = "RESET_TOKEN_INVALID"
    INVALID_GOOGLE_TOKEN = "INVALID_GOOGLE_TOKEN"
    GOOGLE_AUTH_FAILED = "GOOGLE_AUTH_FAILED"

    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    CREDENTIALS_EXPIRED = "CREDENTIALS_EXPIRED"
    PASSWORD_CHANGE_REQUIRED = "PASSWORD_CHANGE_REQUIRED"

    ROLE_NOT_HELD = "ROLE_NOT_HELD"
    INVALID_ROLE = "INVALID_ROLE"
    ADMIN_EXCLUSIVE = "ADMIN_EXCLUSIVE"
    LAST_ROLE = "LAST_ROLE"
    SUPPLIER_NOT_VERIFIED = "SUPPLIER_NOT_VERIFIED"

    REQUEST_PENDING = "REQUEST_PENDING"
    UNDER_REVIEW = "UNDER_REVIEW"
    COOLDOWN = "COOLDOWN"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    ALREADY_REJECTED = "ALREADY_REJECTED"

    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every flow either returns a payload or raises exactly one of these. Each
    subclass pins the HTTP status class; the ``error_code`` narrows it to a
    stable :class:`ErrorCode` the client can branch on.
    """

    status_code: int = 400
    error_code: str = ErrorCode.VALIDATION_ERROR.value

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = (
                error_code.value if isinstance(error_code, ErrorCode) else error_code
            )
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = ErrorCode.VALIDATION_ERROR.value


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = ErrorCode.UNAUTHORIZED.value


class ForbiddenError(ServiceError):
    """Caller is known but policy denies the action (403)."""
    status_code = 403
    error_code = ErrorCode.FORBIDDEN.value


class AccountLockedError(ForbiddenError):
    """Too many failed attempts; carries the remaining lock time (403)."""
    error_code = ErrorCode.ACCOUNT_LOCKED.value


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = ErrorCode.NOT_FOUND.value


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = ErrorCode.CONFLICT.value


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = ErrorCode.INTERNAL_ERROR.value


__all__ = [
    "ErrorCode",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "AccountLockedError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
