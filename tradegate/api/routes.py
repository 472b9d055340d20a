from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, Header, Path, Query, UploadFile
from fastapi.responses import FileResponse

from tradegate.api.schemas import (
    AdminCreateRequest,
    AdminLoginRequest,
    ChangePasswordRequest,
    DraftRequest,
    DraftResponse,
    Envelope,
    ForgotPasswordRequest,
    GoogleLoginRequest,
    IdentifierRequest,
    LoginRequest,
    LogoutRequest,
    OtpLoginVerifyRequest,
    RefreshRequest,
    RejectRequest,
    ResetPasswordRequest,
    ReviewRequest,
    RoleSelectionResponse,
    SignupRequest,
    SubmitVerificationRequest,
    SwitchRoleRequest,
    VerificationResponse,
    VerifyOtpRequest,
)
from tradegate.logging import get_logger
from tradegate.service.auth import AuthContext
from tradegate.service.errors import (
    AuthenticationError,
    ErrorCode,
    ForbiddenError,
    NotFoundError,
)
from tradegate.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


# -- dependencies ------------------------------------------------------------


def _unauthorized() -> AuthenticationError:
    return AuthenticationError(
        "Invalid or expired access token", error_code=ErrorCode.INVALID_TOKEN
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    ctx = get_runtime().auth.authenticate(authorization)
    if not ctx:
        raise _unauthorized()
    return ctx


async def get_admin_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    ctx = get_runtime().auth.authenticate(authorization)
    if not ctx:
        raise _unauthorized()
    if not ctx.identity.is_admin:
        raise ForbiddenError("Admin access required", error_code=ErrorCode.FORBIDDEN)
    if ctx.identity.is_first_login:
        raise ForbiddenError(
            "Change your temporary password before continuing",
            error_code=ErrorCode.PASSWORD_CHANGE_REQUIRED,
        )
    return ctx


async def get_super_admin_principal(
    principal: AuthContext = Depends(get_admin_principal),
) -> AuthContext:
    if not principal.identity.is_super_admin:
        raise ForbiddenError("Super admin access required", error_code=ErrorCode.FORBIDDEN)
    return principal


async def get_setup_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Admin setup token from a first login, or a full admin access token."""
    ctx = get_runtime().auth.authenticate(authorization, allow_setup=True)
    if not ctx:
        raise _unauthorized()
    if not ctx.identity.is_admin:
        raise ForbiddenError("Admin access required", error_code=ErrorCode.FORBIDDEN)
    return ctx


def _session_response(result: Dict[str, Any], message: str):
    if result.get("requiresRoleSelection"):
        return RoleSelectionResponse(
            available_roles=result["availableRoles"], user=result["user"]
        )
    return Envelope(message=message, data=result)


# -- auth --------------------------------------------------------------------


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest):
    """Register an unverified buyer and send a verification code."""
    result = await get_runtime().auth.signup(
        email=body.email,
        phone=body.phone,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        company_name=body.company_name,
        business_type=body.business_type,
        gst_number=body.gst_number,
    )
    return Envelope(message="Signup successful. Please verify your account.", data=result)


@router.post("/auth/verify-otp", tags=["auth"])
async def verify_otp(body: VerifyOtpRequest):
    result = await get_runtime().auth.verify_signup_otp(body.identifier, body.otp)
    return _session_response(result, "Account verified successfully")


@router.post("/auth/resend-otp", response_model=Envelope, tags=["auth"])
async def resend_otp(body: IdentifierRequest):
    result = await get_runtime().auth.resend_otp(body.identifier)
    return Envelope(message="OTP sent successfully", data=result)


@router.post("/auth/login", tags=["auth"])
async def login(body: LoginRequest):
    """Password login.

    Returns a session, or ``requiresRoleSelection`` with the candidate roles
    when the account holds several and none was requested.
    """
    result = await get_runtime().auth.login(
        body.identifier, body.password, body.requested_role
    )
    return _session_response(result, "Login successful")


@router.post("/auth/login/otp", response_model=Envelope, tags=["auth"])
async def request_login_otp(body: IdentifierRequest):
    result = await get_runtime().auth.request_login_otp(body.identifier)
    return Envelope(message="OTP sent successfully", data=result)


@router.post("/auth/login/otp/verify", tags=["auth"])
async def verify_login_otp(body: OtpLoginVerifyRequest):
    result = await get_runtime().auth.verify_login_otp(
        body.identifier, body.otp, body.requested_role
    )
    return _session_response(result, "Login successful")


@router.post("/auth/social/google", tags=["auth"])
async def social_google(body: GoogleLoginRequest):
    result = await get_runtime().auth.social_google(body.id_token, body.requested_role)
    return _session_response(result, "Login successful")


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest):
    result = await get_runtime().auth.refresh(body.refresh_token)
    return Envelope(message="Token refreshed", data=result)


@router.post("/auth/switch-role", response_model=Envelope, tags=["auth"])
async def switch_role(body: SwitchRoleRequest, principal: AuthContext = Depends(get_principal)):
    result = await get_runtime().auth.switch_role(
        principal.identity_id,
        body.role,
        refresh_token=body.refresh_token,
        password=body.password,
    )
    return Envelope(message=f"Switched to {body.role} role", data=result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest):
    await get_runtime().auth.logout(body.refresh_token)
    return Envelope(message="Logged out successfully")


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_principal)):
    revoked = await get_runtime().auth.logout_all(principal.identity_id)
    return Envelope(message="Logged out from all devices", data={"revoked": revoked})


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    result = await get_runtime().auth.forgot_password(body.email)
    return Envelope(message=result["message"])


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    result = await get_runtime().auth.reset_password(body.token, body.new_password)
    return Envelope(message=result["message"])


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_principal)
):
    if principal.identity.is_admin:
        raise ForbiddenError(
            "Admins change passwords through the admin endpoint",
            error_code=ErrorCode.FORBIDDEN,
        )
    result = await get_runtime().auth.change_password(
        principal.identity_id, body.current_password, body.new_password
    )
    return Envelope(message="Password changed successfully", data=result)


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    return Envelope(data=get_runtime().auth.me(principal.identity_id))


# -- supplier role and verification ------------------------------------------


@router.get("/roles/supplier/status", response_model=Envelope, tags=["roles"])
async def supplier_status(principal: AuthContext = Depends(get_principal)):
    return Envelope(data=get_runtime().policy.supplier_status(principal.identity_id))


@router.put("/verification/draft", response_model=Envelope, tags=["verification"])
async def save_draft(body: DraftRequest, principal: AuthContext = Depends(get_principal)):
    draft = get_runtime().verification.save_draft(
        principal.identity_id, body.fields, body.step
    )
    return Envelope(message="Draft saved", data=DraftResponse.from_draft(draft))


@router.get("/verification/draft", response_model=Envelope, tags=["verification"])
async def get_draft(principal: AuthContext = Depends(get_principal)):
    draft = get_runtime().verification.get_draft(principal.identity_id)
    return Envelope(data=DraftResponse.from_draft(draft) if draft else None)


@router.post("/verification/documents", response_model=Envelope, tags=["verification"])
async def upload_document(
    file: UploadFile = File(...),
    doc_type: str = Form(..., alias="docType", min_length=1, max_length=64),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    max_bytes = runtime.settings.max_document_bytes
    # Read one byte past the cap so oversize uploads are detected without buffering them whole
    data = await file.read(max_bytes + 1)
    document = runtime.verification.upload_document(
        principal.identity_id,
        doc_type,
        data,
        file.content_type or "application/octet-stream",
        file.filename or "",
    )
    return Envelope(message="Document uploaded", data=document)


@router.post("/verification/submit", response_model=Envelope, status_code=201, tags=["verification"])
async def submit_verification(
    body: SubmitVerificationRequest, principal: AuthContext = Depends(get_principal)
):
    record = await get_runtime().verification.submit(
        principal.identity_id, body.fields, body.documents
    )
    return Envelope(
        message="Supplier application submitted",
        data=VerificationResponse.from_record(record),
    )


# -- reviewer actions --------------------------------------------------------


@router.get("/admin/verifications", response_model=Envelope, tags=["admin"])
async def list_verifications(
    status: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(get_admin_principal),
):
    records = get_runtime().verification.list_verifications(status, limit=limit)
    presign = get_runtime().blobs.presign
    return Envelope(data=[VerificationResponse.from_record(r, presign) for r in records])


@router.post("/admin/verifications/{verification_id}/review", response_model=Envelope, tags=["admin"])
async def mark_under_review(
    body: ReviewRequest,
    verification_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_principal),
):
    record = await get_runtime().verification.mark_under_review(
        verification_id, principal.identity_id, body.notes
    )
    return Envelope(message="Verification under review", data=VerificationResponse.from_record(record))


@router.post("/admin/verifications/{verification_id}/approve", response_model=Envelope, tags=["admin"])
async def approve_verification(
    body: ReviewRequest,
    verification_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_principal),
):
    record = await get_runtime().verification.approve(
        verification_id, principal.identity_id, body.notes
    )
    return Envelope(message="Supplier approved", data=VerificationResponse.from_record(record))


@router.post("/admin/verifications/{verification_id}/reject", response_model=Envelope, tags=["admin"])
async def reject_verification(
    body: RejectRequest,
    verification_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_principal),
):
    record = await get_runtime().verification.reject(
        verification_id, principal.identity_id, body.reason
    )
    return Envelope(message="Supplier rejected", data=VerificationResponse.from_record(record))


@router.post("/admin/users/{identity_id}/grant-supplier", response_model=Envelope, tags=["admin"])
async def grant_supplier(
    body: ReviewRequest,
    identity_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_principal),
):
    record = await get_runtime().verification.grant_supplier(
        identity_id, principal.identity_id, body.notes
    )
    return Envelope(message="Supplier role granted", data=VerificationResponse.from_record(record))


# -- admin accounts ----------------------------------------------------------


@router.post("/admin/auth/login", response_model=Envelope, tags=["admin"])
async def admin_login(body: AdminLoginRequest):
    result = await get_runtime().admin.login(body.admin_id, body.password)
    if result.get("requiresPasswordChange"):
        return Envelope(message="Password change required", data=result)
    return Envelope(message="Login successful", data=result)


@router.post("/admin/auth/change-password", response_model=Envelope, tags=["admin"])
async def admin_change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_setup_principal)
):
    result = await get_runtime().admin.change_password(
        principal.identity_id, body.current_password, body.new_password
    )
    return Envelope(message="Password changed successfully", data=result)


@router.get("/admin/admins", response_model=Envelope, tags=["admin"])
async def list_admins(principal: AuthContext = Depends(get_super_admin_principal)):
    return Envelope(data=get_runtime().admin.list_admins())


@router.post("/admin/admins", response_model=Envelope, status_code=201, tags=["admin"])
async def create_admin(
    body: AdminCreateRequest, principal: AuthContext = Depends(get_super_admin_principal)
):
    result = await get_runtime().admin.create_admin(
        principal.identity_id,
        email=body.email,
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
    )
    message = (
        "Admin created; credentials were emailed"
        if result["emailSent"]
        else "Admin created; email delivery failed, share the credentials below securely"
    )
    return Envelope(message=message, data=result)


@router.post("/admin/admins/{identity_id}/reset-credentials", response_model=Envelope, tags=["admin"])
async def reset_admin_credentials(
    identity_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_super_admin_principal),
):
    result = await get_runtime().admin.reset_credentials(principal.identity_id, identity_id)
    return Envelope(message="Admin credentials reset", data=result)


@router.post("/admin/admins/{identity_id}/resend-credentials", response_model=Envelope, tags=["admin"])
async def resend_admin_credentials(
    identity_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_super_admin_principal),
):
    result = await get_runtime().admin.resend_credentials(principal.identity_id, identity_id)
    return Envelope(message="Admin credentials resent", data=result)


@router.patch("/admin/admins/{identity_id}/activate", response_model=Envelope, tags=["admin"])
async def activate_admin(
    identity_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_super_admin_principal),
):
    data = get_runtime().admin.set_active(principal.identity_id, identity_id, True)
    return Envelope(message="Admin activated", data=data)


@router.patch("/admin/admins/{identity_id}/deactivate", response_model=Envelope, tags=["admin"])
async def deactivate_admin(
    identity_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_super_admin_principal),
):
    data = get_runtime().admin.set_active(principal.identity_id, identity_id, False)
    return Envelope(message="Admin deactivated", data=data)


@router.patch("/admin/admins/{identity_id}/unlock", response_model=Envelope, tags=["admin"])
async def unlock_admin(
    identity_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_super_admin_principal),
):
    data = get_runtime().admin.unlock(principal.identity_id, identity_id)
    return Envelope(message="Admin unlocked", data=data)


@router.delete("/admin/admins/{identity_id}", response_model=Envelope, tags=["admin"])
async def delete_admin(
    identity_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_super_admin_principal),
):
    get_runtime().admin.delete(principal.identity_id, identity_id)
    return Envelope(message="Admin deleted")


# -- files -------------------------------------------------------------------


@router.get("/files/{key:path}", tags=["files"])
async def download_file(
    key: str,
    expires: str = Query(...),
    sig: str = Query(...),
):
    blobs = get_runtime().blobs
    valid, error = blobs.validate(key, expires, sig)
    if not valid:
        raise ForbiddenError(error or "invalid download link", error_code=ErrorCode.FORBIDDEN)
    try:
        path = blobs.open_path(key)
    except FileNotFoundError:
        raise NotFoundError("File not found") from None
    return FileResponse(path)
