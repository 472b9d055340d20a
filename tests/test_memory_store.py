"""Tests for the in-memory store: uniqueness, grants and atomic transitions."""

import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from tradegate.storage.errors import ConstraintViolation, RoleExclusivityError
from tradegate.storage.memory import MemoryStore
from tradegate.storage.models import (
    Identity,
    OtpCheck,
    Role,
    RoleGrant,
    Verification,
    VerificationStatus,
)


def _now():
    return datetime.now(timezone.utc)


def _buyer(email="buyer@example.com", phone=None, **kwargs):
    return Identity(
        id=str(uuid.uuid4()),
        email=email,
        phone=phone,
        password_hash="hash",
        role_grants={Role.BUYER: RoleGrant(role=Role.BUYER)},
        active_role=Role.BUYER,
        **kwargs,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


class TestIdentityUniqueness:
    def test_email_unique_case_insensitive(self, memory_store):
        memory_store.create_identity(_buyer("Trader@Example.com"))
        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.create_identity(_buyer("trader@example.com"))
        assert exc_info.value.detail["field"] == "email"

    def test_phone_unique(self, memory_store):
        memory_store.create_identity(_buyer("a@example.com", phone="+919800000001"))
        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.create_identity(_buyer("b@example.com", phone="+919800000001"))
        assert exc_info.value.detail["field"] == "phone"

    def test_lookup_by_email_or_phone(self, memory_store):
        created = memory_store.create_identity(_buyer("a@example.com", phone="+919800000001"))
        assert memory_store.get_identity_by_email_or_phone("A@EXAMPLE.COM").id == created.id
        assert memory_store.get_identity_by_email_or_phone("+919800000001").id == created.id
        assert memory_store.get_identity_by_email_or_phone("nobody@example.com") is None

    def test_admin_id_lookup_is_case_insensitive(self, memory_store):
        admin = Identity(
            id="adm",
            email="ops@example.com",
            phone=None,
            password_hash="hash",
            role_grants={Role.ADMIN: RoleGrant(role=Role.ADMIN)},
            active_role=Role.ADMIN,
            admin_id="AB2C3D",
        )
        memory_store.create_identity(admin)
        assert memory_store.get_identity_by_admin_id("ab2c3d").id == "adm"

    def test_returned_records_are_copies(self, memory_store):
        created = memory_store.create_identity(_buyer())
        created.first_name = "Changed"
        assert memory_store.get_identity(created.id).first_name == ""


class TestIdentityUpdates:
    def test_protected_fields_need_dedicated_operations(self, memory_store):
        created = memory_store.create_identity(_buyer())
        for field_name in ("role_grants", "active_role", "failed_attempts", "otp"):
            with pytest.raises(ValueError):
                memory_store.update_identity(created.id, **{field_name: None})

    def test_update_missing_identity_returns_none(self, memory_store):
        assert memory_store.update_identity("missing", first_name="x") is None

    def test_update_enforces_uniqueness(self, memory_store):
        memory_store.create_identity(_buyer("a@example.com"))
        second = memory_store.create_identity(_buyer("b@example.com"))
        with pytest.raises(ConstraintViolation):
            memory_store.update_identity(second.id, email="A@example.com")


class TestRoleGrants:
    def test_admin_grant_rejected_for_buyer(self, memory_store):
        created = memory_store.create_identity(_buyer())
        with pytest.raises(RoleExclusivityError):
            memory_store.upsert_role_grant(
                created.id, Role.ADMIN, lambda current: RoleGrant(role=Role.ADMIN)
            )
        assert memory_store.get_identity(created.id).roles.to_list() == ["buyer"]

    def test_last_role_cannot_be_removed(self, memory_store):
        created = memory_store.create_identity(_buyer())
        with pytest.raises(ConstraintViolation):
            memory_store.delete_role_grant(created.id, Role.BUYER)

    def test_removing_active_role_keeps_identity_consistent(self, memory_store):
        created = memory_store.create_identity(_buyer())
        memory_store.upsert_role_grant(
            created.id, Role.SUPPLIER, lambda current: RoleGrant(role=Role.SUPPLIER)
        )
        memory_store.set_active_role(created.id, Role.SUPPLIER)
        updated = memory_store.delete_role_grant(created.id, Role.SUPPLIER)
        assert updated.roles.to_list() == ["buyer"]
        assert updated.active_role in (None, Role.BUYER)

    def test_active_role_requires_active_grant(self, memory_store):
        created = memory_store.create_identity(_buyer())
        memory_store.upsert_role_grant(
            created.id,
            Role.SUPPLIER,
            lambda current: RoleGrant(role=Role.SUPPLIER, is_active=False),
        )
        with pytest.raises(ConstraintViolation):
            memory_store.set_active_role(created.id, Role.SUPPLIER)
        assert memory_store.get_identity(created.id).active_role is Role.BUYER


class TestFailedAttempts:
    def test_lock_applied_at_threshold(self, memory_store):
        created = memory_store.create_identity(_buyer())
        until = _now() + timedelta(minutes=30)
        for _ in range(4):
            identity = memory_store.increment_failed_attempts(
                created.id, threshold=5, lock_until=until
            )
        assert identity.failed_attempts == 4
        assert identity.locked_until is None
        identity = memory_store.increment_failed_attempts(created.id, threshold=5, lock_until=until)
        assert identity.failed_attempts == 5
        assert identity.locked_until == until

    def test_reset_clears_counter_and_lock(self, memory_store):
        created = memory_store.create_identity(_buyer())
        memory_store.increment_failed_attempts(
            created.id, threshold=1, lock_until=_now() + timedelta(minutes=5)
        )
        identity = memory_store.reset_failed_attempts(created.id)
        assert identity.failed_attempts == 0
        assert identity.locked_until is None

    def test_concurrent_increments_are_not_lost(self, memory_store):
        created = memory_store.create_identity(_buyer())
        until = _now() + timedelta(minutes=30)

        def hit():
            memory_store.increment_failed_attempts(created.id, threshold=100, lock_until=until)

        threads = [threading.Thread(target=hit) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert memory_store.get_identity(created.id).failed_attempts == 20


class TestOtp:
    def test_otp_is_single_use(self, memory_store):
        created = memory_store.create_identity(_buyer())
        memory_store.set_otp(created.id, "123456", _now() + timedelta(minutes=10))
        assert memory_store.consume_otp(created.id, "000000", _now()) is OtpCheck.INVALID
        assert memory_store.consume_otp(created.id, "123456", _now()) is OtpCheck.VALID
        assert memory_store.consume_otp(created.id, "123456", _now()) is OtpCheck.INVALID

    def test_expired_otp(self, memory_store):
        created = memory_store.create_identity(_buyer())
        memory_store.set_otp(created.id, "123456", _now() - timedelta(seconds=1))
        assert memory_store.consume_otp(created.id, "123456", _now()) is OtpCheck.EXPIRED

    def test_concurrent_consumers_only_one_wins(self, memory_store):
        created = memory_store.create_identity(_buyer())
        memory_store.set_otp(created.id, "654321", _now() + timedelta(minutes=10))
        results = []
        lock = threading.Lock()

        def consume():
            outcome = memory_store.consume_otp(created.id, "654321", _now())
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=consume) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count(OtpCheck.VALID) == 1


class TestVerifications:
    def test_one_open_verification_per_identity(self, memory_store):
        created = memory_store.create_identity(_buyer())
        memory_store.create_verification(Verification.new_pending(created.id, {}, []))
        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.create_verification(Verification.new_pending(created.id, {}, []))
        assert exc_info.value.detail["constraint"] == "one_open_verification"

    def test_concurrent_creates_only_one_succeeds(self, memory_store):
        created = memory_store.create_identity(_buyer())
        outcomes = []
        lock = threading.Lock()

        def submit():
            try:
                memory_store.create_verification(Verification.new_pending(created.id, {}, []))
                outcome = "ok"
            except ConstraintViolation:
                outcome = "conflict"
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=submit) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert outcomes.count("ok") == 1
        assert len(memory_store.list_verifications()) == 1

    def test_transition_is_compare_and_set(self, memory_store):
        created = memory_store.create_identity(_buyer())
        record = memory_store.create_verification(Verification.new_pending(created.id, {}, []))
        approved = memory_store.transition_verification(
            record.id,
            expected={VerificationStatus.PENDING},
            status=VerificationStatus.VERIFIED,
            verified_at=_now(),
        )
        assert approved.status is VerificationStatus.VERIFIED
        again = memory_store.transition_verification(
            record.id,
            expected={VerificationStatus.PENDING},
            status=VerificationStatus.REJECTED,
        )
        assert again is None
        assert memory_store.get_verification(record.id).status is VerificationStatus.VERIFIED

    def test_transition_applies_grant_change_together(self, memory_store):
        created = memory_store.create_identity(_buyer())
        record = memory_store.create_verification(
            Verification.new_pending(created.id, {}, []),
            grant_merge=lambda current: RoleGrant(role=Role.SUPPLIER, is_active=False),
        )
        assert memory_store.get_identity(created.id).role_grants[Role.SUPPLIER].is_active is False
        memory_store.transition_verification(
            record.id,
            expected={VerificationStatus.PENDING},
            status=VerificationStatus.VERIFIED,
            grant_merge=lambda current: RoleGrant(role=Role.SUPPLIER, is_active=True),
        )
        assert memory_store.get_identity(created.id).role_grants[Role.SUPPLIER].is_active is True

    def test_terminal_record_allows_new_application(self, memory_store):
        created = memory_store.create_identity(_buyer())
        first = memory_store.create_verification(Verification.new_pending(created.id, {}, []))
        memory_store.transition_verification(
            first.id,
            expected={VerificationStatus.PENDING},
            status=VerificationStatus.REJECTED,
            rejection_reason="blurry",
        )
        second = memory_store.create_verification(Verification.new_pending(created.id, {}, []))
        assert memory_store.latest_verification(created.id).id == second.id
        rejected = memory_store.list_verifications(VerificationStatus.REJECTED)
        assert [r.id for r in rejected] == [first.id]


class TestSessionsAndTokens:
    def test_refresh_record_revocation(self, memory_store):
        created = memory_store.create_identity(_buyer())
        memory_store.create_refresh_record(created.id, "h1", _now() + timedelta(days=1))
        memory_store.create_refresh_record(created.id, "h2", _now() + timedelta(days=1))
        assert memory_store.revoke_refresh_record("h1") is True
        assert memory_store.revoke_refresh_record("h1") is False
        assert memory_store.revoke_refresh_record("unknown") is False
        assert memory_store.revoke_all_refresh_records(created.id) == 1

    def test_purge_expired_refresh_records(self, memory_store):
        created = memory_store.create_identity(_buyer())
        memory_store.create_refresh_record(created.id, "old", _now() - timedelta(seconds=1))
        memory_store.create_refresh_record(created.id, "new", _now() + timedelta(days=1))
        assert memory_store.purge_expired_refresh_records(_now()) == 1
        assert memory_store.find_refresh_record("old") is None
        assert memory_store.find_refresh_record("new") is not None


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        created = store.create_identity(_buyer("persist@example.com"))
        store.upsert_role_grant(
            created.id,
            Role.SUPPLIER,
            lambda current: RoleGrant(role=Role.SUPPLIER, is_active=False),
        )
        store.create_verification(Verification.new_pending(created.id, {"businessName": "Acme"}, []))

        reloaded = MemoryStore(fs_root=str(tmp_path))
        identity = reloaded.get_identity_by_email("persist@example.com")
        assert identity.id == created.id
        assert identity.role_grants[Role.SUPPLIER].is_active is False
        latest = reloaded.latest_verification(created.id)
        assert latest.fields == {"businessName": "Acme"}
        assert latest.status is VerificationStatus.PENDING

    def test_delete_identity_cascades(self, memory_store):
        created = memory_store.create_identity(_buyer())
        memory_store.create_refresh_record(created.id, "h1", _now() + timedelta(days=1))
        memory_store.link_auth_provider(created.id, "google", "g-1")
        assert memory_store.delete_identity(created.id) is True
        assert memory_store.find_refresh_record("h1") is None
        assert memory_store.get_identity_by_provider("google", "g-1") is None
        assert memory_store.delete_identity(created.id) is False
