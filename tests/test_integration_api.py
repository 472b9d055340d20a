"""End-to-end HTTP tests against the FastAPI app.

Covers the response envelopes, the error shape, security headers, and the
full supplier journey from signup through admin approval to role selection.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from tradegate import app as app_module

PASSWORD = "Secret123!"
ADMIN_PASSWORD = "Str0ng!Pass"


@pytest.fixture
def client(recording_runtime):
    with TestClient(app_module.app) as test_client:
        yield test_client


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _signup_and_verify(client, runtime, email="asha@example.com", phone="+91 98000 00001"):
    response = client.post(
        "/api/auth/signup",
        json={
            "email": email,
            "password": PASSWORD,
            "phone": phone,
            "firstName": "Asha",
            "lastName": "Rao",
            "companyName": "Acme Traders",
        },
    )
    assert response.status_code == 201
    otp = runtime.notifier.last_otp(email)
    response = client.post("/api/auth/verify-otp", json={"identifier": email, "otp": otp})
    assert response.status_code == 200
    return response.json()["data"]


def _admin_session(client, runtime):
    identity, temp_password = asyncio.run(
        runtime.admin.bootstrap_super_admin(
            email="root@example.com", first_name="Root", last_name="Admin"
        )
    )
    response = client.post(
        "/api/admin/auth/login",
        json={"adminId": identity.admin_id, "password": temp_password},
    )
    assert response.status_code == 200
    setup_token = response.json()["data"]["setupToken"]
    response = client.post(
        "/api/admin/auth/change-password",
        json={"currentPassword": temp_password, "newPassword": ADMIN_PASSWORD},
        headers=_bearer(setup_token),
    )
    assert response.status_code == 200
    return response.json()["data"]


class TestEnvelopes:
    def test_signup_envelope(self, client, recording_runtime):
        response = client.post(
            "/api/auth/signup",
            json={"email": "Asha@Example.com", "password": PASSWORD, "firstName": "Asha"},
        )
        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["data"]["email"] == "asha@example.com"
        assert body["data"]["otpSent"] is True
        assert "passwordHash" not in str(body)

    def test_validation_error_shape(self, client):
        response = client.post(
            "/api/auth/signup", json={"email": "not-an-email", "password": PASSWORD}
        )
        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["errorCode"] == "VALIDATION_ERROR"
        assert body["details"][0]["field"] == "email"

    def test_service_error_shape(self, client, recording_runtime):
        _signup_and_verify(client, recording_runtime)
        response = client.post(
            "/api/auth/signup",
            json={"email": "asha@example.com", "password": PASSWORD},
        )
        assert response.status_code == 409
        body = response.json()
        assert body == {
            "success": False,
            "message": body["message"],
            "errorCode": "USER_ALREADY_EXISTS",
            "details": None,
        }

    def test_missing_token(self, client):
        response = client.get("/api/auth/me")
        assert response.status_code == 401
        assert response.json()["errorCode"] == "INVALID_TOKEN"

    def test_forgot_password_is_generic(self, client):
        response = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
        assert response.status_code == 200
        assert response.json()["message"] == "If the email exists, a password reset link has been sent"


class TestHeadersAndHealth:
    def test_security_headers(self, client):
        response = client.post(
            "/api/auth/login",
            json={"identifier": "ghost@example.com", "password": PASSWORD},
            headers={"X-Request-ID": "req-123"},
        )
        assert response.status_code == 401
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "no-store" in response.headers["Cache-Control"]

    def test_request_id_generated(self, client):
        response = client.get("/healthz")
        assert response.headers.get("X-Request-ID")

    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["redis"] == {"status": "disabled"}


class TestMarketplaceSession:
    def test_me_and_logout(self, client, recording_runtime):
        session = _signup_and_verify(client, recording_runtime)
        response = client.get("/api/auth/me", headers=_bearer(session["accessToken"]))
        assert response.status_code == 200
        me = response.json()["data"]
        assert me["email"] == "asha@example.com"
        assert me["phone"] == "+919800000001"
        assert me["roles"] == ["buyer"]

        response = client.post("/api/auth/refresh", json={"refreshToken": session["refreshToken"]})
        assert response.status_code == 200
        assert response.json()["data"]["accessToken"]

        assert client.post("/api/auth/logout", json={"refreshToken": session["refreshToken"]}).status_code == 200
        assert client.post("/api/auth/logout", json={"refreshToken": session["refreshToken"]}).status_code == 200
        response = client.post("/api/auth/refresh", json={"refreshToken": session["refreshToken"]})
        assert response.status_code == 401
        assert response.json()["errorCode"] == "REFRESH_TOKEN_EXPIRED"

    def test_marketplace_token_cannot_reach_admin_routes(self, client, recording_runtime):
        session = _signup_and_verify(client, recording_runtime)
        response = client.get("/api/admin/verifications", headers=_bearer(session["accessToken"]))
        assert response.status_code == 403

    def test_supplier_switch_refused_before_approval(self, client, recording_runtime):
        session = _signup_and_verify(client, recording_runtime)
        response = client.post(
            "/api/auth/switch-role",
            json={"role": "supplier"},
            headers=_bearer(session["accessToken"]),
        )
        assert response.status_code == 403
        body = response.json()
        assert body["errorCode"] == "SUPPLIER_NOT_VERIFIED"
        assert body["details"] == {"reason": "never_applied"}


class TestAdminAccess:
    def test_setup_token_is_limited(self, client, recording_runtime):
        identity, temp_password = asyncio.run(
            recording_runtime.admin.bootstrap_super_admin(
                email="root@example.com", first_name="Root", last_name="Admin"
            )
        )
        response = client.post(
            "/api/admin/auth/login",
            json={"adminId": identity.admin_id, "password": temp_password},
        )
        data = response.json()["data"]
        assert data["requiresPasswordChange"] is True
        assert "accessToken" not in data
        response = client.get("/api/admin/admins", headers=_bearer(data["setupToken"]))
        assert response.status_code == 401

    def test_super_admin_creates_admin(self, client, recording_runtime):
        session = _admin_session(client, recording_runtime)
        response = client.post(
            "/api/admin/admins",
            json={"email": "ops@example.com", "firstName": "Ops", "lastName": "Team"},
            headers=_bearer(session["accessToken"]),
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["emailSent"] is True
        assert data["admin"]["adminId"]

        response = client.get("/api/admin/admins", headers=_bearer(session["accessToken"]))
        emails = {entry["email"] for entry in response.json()["data"]}
        assert emails == {"root@example.com", "ops@example.com"}

    def test_admin_id_login_wrong_password(self, client, recording_runtime):
        identity, _ = asyncio.run(
            recording_runtime.admin.bootstrap_super_admin(
                email="root@example.com", first_name="Root", last_name="Admin"
            )
        )
        response = client.post(
            "/api/admin/auth/login",
            json={"adminId": identity.admin_id, "password": "Wrong123!"},
        )
        assert response.status_code == 401
        assert response.json()["details"] == {"remainingAttempts": 4}


class TestSupplierJourney:
    def test_signup_to_supplier_role(self, client, recording_runtime):
        session = _signup_and_verify(client, recording_runtime)
        user_headers = _bearer(session["accessToken"])

        response = client.put(
            "/api/verification/draft",
            json={"fields": {"businessName": "Acme Traders"}, "step": 2},
            headers=user_headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["currentStep"] == 2

        response = client.post(
            "/api/verification/documents",
            files={"file": ("gst.pdf", b"%PDF-1.4 certificate", "application/pdf")},
            data={"docType": "gst_certificate"},
            headers=user_headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["type"] == "gst_certificate"

        response = client.post(
            "/api/verification/submit",
            json={"fields": {"businessType": "wholesale", "businessAddress": "12 Market Road"}},
            headers=user_headers,
        )
        assert response.status_code == 201
        submitted = response.json()["data"]
        assert submitted["status"] == "pending"
        assert submitted["userId"] == session["user"]["id"]

        response = client.post("/api/verification/submit", json={}, headers=user_headers)
        assert response.status_code == 409
        assert response.json()["errorCode"] == "REQUEST_PENDING"

        admin = _admin_session(client, recording_runtime)
        admin_headers = _bearer(admin["accessToken"])
        response = client.get("/api/admin/verifications?status=pending", headers=admin_headers)
        records = response.json()["data"]
        assert [r["id"] for r in records] == [submitted["id"]]
        download_url = records[0]["documents"][0]["downloadUrl"]
        download = client.get(download_url)
        assert download.status_code == 200
        assert download.content == b"%PDF-1.4 certificate"

        response = client.post(
            f"/api/admin/verifications/{submitted['id']}/approve", json={}, headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "verified"

        response = client.post(
            f"/api/admin/verifications/{submitted['id']}/reject",
            json={"reason": "too late"},
            headers=admin_headers,
        )
        assert response.status_code == 409

        response = client.get("/api/roles/supplier/status", headers=user_headers)
        assert response.json()["data"]["canSwitch"] is True

        response = client.post(
            "/api/auth/login", json={"identifier": "asha@example.com", "password": PASSWORD}
        )
        body = response.json()
        assert body["requiresRoleSelection"] is True
        assert body["availableRoles"] == ["buyer", "supplier"]

        response = client.post(
            "/api/auth/login",
            json={"identifier": "asha@example.com", "password": PASSWORD, "requestedRole": "supplier"},
        )
        assert response.json()["data"]["user"]["activeRole"] == "supplier"

    def test_tampered_download_link(self, client):
        response = client.get("/api/files/verification/x.pdf?expires=9999999999&sig=bad")
        assert response.status_code == 403
