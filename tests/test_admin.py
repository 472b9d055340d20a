"""Admin provisioning, first-login rotation and super-admin management."""

from datetime import datetime, timedelta, timezone

import pytest

from tradegate.service.admin import format_time_until
from tradegate.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ErrorCode,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from tradegate.service.notifier import EmailService, Notifier
from tradegate.storage.models import Role

NEW_PASSWORD = "Str0ng!Pass"


async def _super_admin(services):
    identity, temp_password = await services.admin.bootstrap_super_admin(
        email="root@example.com", first_name="Root", last_name="Admin"
    )
    return identity, temp_password


async def _active_super_admin(services):
    identity, temp_password = await _super_admin(services)
    await services.admin.change_password(identity.id, temp_password, NEW_PASSWORD)
    return services.identities.find_by_id(identity.id)


class TestProvisioning:
    async def test_bootstrap_creates_first_login_super_admin(self, services):
        identity, temp_password = await _super_admin(services)
        assert identity.roles.to_list() == ["super_admin"]
        assert identity.active_role is Role.SUPER_ADMIN
        assert identity.is_first_login is True
        assert identity.is_verified is True
        assert identity.admin_id.startswith("A")
        assert identity.credentials_expire_at > datetime.now(timezone.utc) + timedelta(hours=23)
        assert services.hashing.verify_password(temp_password, identity.password_hash)
        assert services.admin.super_admin_exists()

    async def test_create_admin_emails_credentials(self, services):
        root = await _active_super_admin(services)
        result = await services.admin.create_admin(
            root.id, email="ops@example.com", first_name="Ops", last_name="Team"
        )
        assert result["emailSent"] is True
        assert "credentials" not in result
        message = services.notifier.last("admin_credentials")
        assert message.recipient.email == "ops@example.com"
        assert message.data["admin_id"] == result["admin"]["adminId"]
        created = services.identities.find_by_email("ops@example.com")
        assert created.roles.to_list() == ["admin"]
        assert created.role_grants[Role.ADMIN].granted_by == root.id

    async def test_credentials_returned_when_email_fails(self, services):
        root = await _active_super_admin(services)
        services.notifier.deliver = False
        result = await services.admin.create_admin(
            root.id, email="ops@example.com", first_name="Ops", last_name="Team"
        )
        assert result["emailSent"] is False
        credentials = result["credentials"]
        created = services.identities.find_by_email("ops@example.com")
        assert credentials["adminId"] == created.admin_id
        assert services.hashing.verify_password(
            credentials["temporaryPassword"], created.password_hash
        )

    async def test_credentials_returned_when_email_is_not_configured(self, services):
        root = await _active_super_admin(services)
        services.admin.notifier = Notifier(EmailService())
        result = await services.admin.create_admin(
            root.id, email="ops@example.com", first_name="Ops", last_name="Team"
        )
        assert result["emailSent"] is False
        created = services.identities.find_by_email("ops@example.com")
        assert result["credentials"]["adminId"] == created.admin_id
        assert services.hashing.verify_password(
            result["credentials"]["temporaryPassword"], created.password_hash
        )

    async def test_dev_mode_email_counts_as_delivered(self, services):
        root = await _active_super_admin(services)
        services.admin.notifier = Notifier(EmailService(dev_mode=True))
        result = await services.admin.create_admin(
            root.id, email="ops@example.com", first_name="Ops", last_name="Team"
        )
        assert result["emailSent"] is True
        assert "credentials" not in result

    async def test_duplicate_email(self, services, make_identity):
        make_identity("taken@example.com")
        with pytest.raises(ConflictError):
            await services.admin.provision(
                email="taken@example.com", first_name="Ops", last_name="Team"
            )

    async def test_marketplace_role_rejected(self, services):
        with pytest.raises(ValidationError):
            await services.admin.provision(
                email="ops@example.com", first_name="Ops", last_name="Team", role=Role.BUYER
            )


class TestAdminLogin:
    async def test_first_login_returns_setup_token_only(self, services):
        identity, temp_password = await _super_admin(services)
        result = await services.admin.login(identity.admin_id.lower(), temp_password)
        assert result["requiresPasswordChange"] is True
        assert "accessToken" not in result
        assert "refreshToken" not in result
        claims = services.signer.verify_setup_token(result["setupToken"])
        assert claims["sub"] == identity.id
        assert services.signer.verify_access_token(result["setupToken"]) is None
        assert services.store.refresh_records == {}

    async def test_setup_token_only_authenticates_when_allowed(self, services):
        identity, temp_password = await _super_admin(services)
        result = await services.admin.login(identity.admin_id, temp_password)
        header = f"Bearer {result['setupToken']}"
        assert services.auth.authenticate(header) is None
        ctx = services.auth.authenticate(header, allow_setup=True)
        assert ctx.identity_id == identity.id
        assert ctx.token_type == "admin_setup"

    async def test_password_change_completes_rotation(self, services):
        identity, temp_password = await _super_admin(services)
        session = await services.admin.change_password(identity.id, temp_password, NEW_PASSWORD)
        assert session["accessToken"]
        claims = services.signer.verify_access_token(session["accessToken"])
        assert claims["isSuperAdmin"] is True
        assert claims["adminId"] == identity.admin_id
        stored = services.identities.find_by_id(identity.id)
        assert stored.is_first_login is False
        assert stored.credentials_expire_at is None
        assert stored.credentials_used is True

        result = await services.admin.login(identity.admin_id, NEW_PASSWORD)
        assert result["accessToken"]
        assert result["user"]["isSuperAdmin"] is True
        with pytest.raises(AuthenticationError):
            await services.admin.login(identity.admin_id, temp_password)

    async def test_weak_new_password(self, services):
        identity, temp_password = await _super_admin(services)
        with pytest.raises(ValidationError) as exc_info:
            await services.admin.change_password(identity.id, temp_password, "alllower1!")
        assert exc_info.value.error_code == ErrorCode.WEAK_PASSWORD.value

    async def test_expired_temporary_credentials(self, services):
        identity, temp_password = await _super_admin(services)
        services.identities.update(
            identity.id,
            credentials_expire_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        )
        with pytest.raises(ForbiddenError) as exc_info:
            await services.admin.login(identity.admin_id, temp_password)
        assert exc_info.value.error_code == ErrorCode.CREDENTIALS_EXPIRED.value

    async def test_wrong_password_reports_remaining_attempts(self, services):
        identity, _ = await _super_admin(services)
        with pytest.raises(AuthenticationError) as exc_info:
            await services.admin.login(identity.admin_id, "Wrong123!")
        assert exc_info.value.detail == {"remainingAttempts": 4}
        for _ in range(3):
            with pytest.raises(AuthenticationError):
                await services.admin.login(identity.admin_id, "Wrong123!")
        with pytest.raises(AccountLockedError):
            await services.admin.login(identity.admin_id, "Wrong123!")

    async def test_unknown_admin_id(self, services):
        with pytest.raises(AuthenticationError) as exc_info:
            await services.admin.login("AZZZZZ", "Whatever1!")
        assert exc_info.value.error_code == ErrorCode.INVALID_CREDENTIALS.value

    async def test_deactivated_admin(self, services):
        root = await _active_super_admin(services)
        result = await services.admin.create_admin(
            root.id, email="ops@example.com", first_name="Ops", last_name="Team"
        )
        target_id = result["admin"]["id"]
        services.admin.set_active(root.id, target_id, False)
        with pytest.raises(ForbiddenError) as exc_info:
            await services.admin.login(result["admin"]["adminId"], "Whatever1!")
        assert exc_info.value.error_code == ErrorCode.USER_INACTIVE.value


class TestManagement:
    async def _with_admin(self, services):
        root = await _active_super_admin(services)
        result = await services.admin.create_admin(
            root.id, email="ops@example.com", first_name="Ops", last_name="Team"
        )
        return root, result["admin"]["id"]

    async def test_list_admins(self, services):
        root, admin_id = await self._with_admin(services)
        admins = {entry["id"]: entry for entry in services.admin.list_admins()}
        assert set(admins) == {root.id, admin_id}
        assert admins[admin_id]["isFirstLogin"] is True
        assert admins[admin_id]["timeUntilExpiry"].startswith("23h")
        assert admins[root.id]["timeUntilExpiry"] is None
        assert admins[admin_id]["isLocked"] is False

    async def test_reset_credentials(self, services):
        root, admin_id = await self._with_admin(services)
        result = await services.admin.reset_credentials(root.id, admin_id)
        assert result["emailSent"] is True
        message = services.notifier.last("admin_password_reset")
        stored = services.identities.find_by_id(admin_id)
        assert stored.is_first_login is True
        assert services.hashing.verify_password(message.data["temp_password"], stored.password_hash)

    async def test_reset_own_credentials_forbidden(self, services):
        root, _ = await self._with_admin(services)
        with pytest.raises(ForbiddenError):
            await services.admin.reset_credentials(root.id, root.id)

    async def test_resend_only_before_first_login(self, services):
        root, admin_id = await self._with_admin(services)
        result = await services.admin.resend_credentials(root.id, admin_id)
        assert result["emailSent"] is True
        with pytest.raises(ConflictError) as exc_info:
            await services.admin.resend_credentials(root.id, root.id)
        assert exc_info.value.error_code == ErrorCode.INVALID_TRANSITION.value

    async def test_resend_extends_expired_credentials(self, services):
        root, admin_id = await self._with_admin(services)
        services.identities.update(
            admin_id, credentials_expire_at=datetime.now(timezone.utc) - timedelta(hours=1)
        )
        await services.admin.resend_credentials(root.id, admin_id)
        stored = services.identities.find_by_id(admin_id)
        assert stored.credentials_expire_at > datetime.now(timezone.utc)

    async def test_deactivate_rules(self, services):
        root, admin_id = await self._with_admin(services)
        with pytest.raises(ForbiddenError):
            services.admin.set_active(root.id, root.id, False)
        assert services.admin.set_active(root.id, admin_id, False)["isActive"] is False
        assert services.admin.set_active(root.id, admin_id, True)["isActive"] is True

    async def test_unlock(self, services):
        root, admin_id = await self._with_admin(services)
        for _ in range(5):
            services.identities.record_failed_login(admin_id)
        services.admin.unlock(root.id, admin_id)
        stored = services.identities.find_by_id(admin_id)
        assert stored.failed_attempts == 0
        assert stored.locked_until is None

    async def test_delete_rules(self, services):
        root, admin_id = await self._with_admin(services)
        with pytest.raises(ForbiddenError):
            services.admin.delete(root.id, root.id)
        second_root, _ = await services.admin.bootstrap_super_admin(
            email="root2@example.com", first_name="Second", last_name="Root"
        )
        with pytest.raises(ForbiddenError):
            services.admin.delete(root.id, second_root.id)
        services.admin.delete(root.id, admin_id)
        assert services.identities.find_by_id(admin_id) is None
        with pytest.raises(NotFoundError):
            services.admin.delete(root.id, admin_id)

    async def test_marketplace_identity_is_not_an_admin_target(self, services, make_identity):
        root, _ = await self._with_admin(services)
        buyer = make_identity()
        with pytest.raises(NotFoundError):
            services.admin.unlock(root.id, buyer.id)


class TestFormatTimeUntil:
    def test_formats(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert format_time_until(now + timedelta(hours=5, minutes=7), now) == "5h 7m"
        assert format_time_until(now + timedelta(minutes=42), now) == "42m"
        assert format_time_until(now - timedelta(seconds=1), now) == "expired"
        assert format_time_until(None, now) is None
