"""Role set and identity record rules."""

import pytest

from tradegate.storage.errors import ConstraintViolation, RoleExclusivityError
from tradegate.storage.models import (
    Identity,
    Role,
    RoleGrant,
    RoleSet,
    Verification,
    VerificationStatus,
)


def _identity(**kwargs):
    defaults = dict(id="u1", email="a@example.com", phone=None, password_hash=None)
    defaults.update(kwargs)
    return Identity(**defaults)


class TestRoleSet:
    def test_marketplace_roles_combine(self):
        roles = RoleSet([Role.SUPPLIER, Role.BUYER])
        assert roles.to_list() == ["buyer", "supplier"]
        assert not roles.is_admin

    def test_admin_role_must_be_sole_member(self):
        with pytest.raises(RoleExclusivityError):
            RoleSet([Role.ADMIN, Role.BUYER])
        with pytest.raises(RoleExclusivityError):
            RoleSet(["super_admin", "admin"])

    def test_with_role_rejects_mixing(self):
        roles = RoleSet([Role.BUYER])
        with pytest.raises(RoleExclusivityError):
            roles.with_role(Role.ADMIN)
        with pytest.raises(RoleExclusivityError):
            RoleSet([Role.SUPER_ADMIN]).with_role("supplier")

    def test_with_and_without_role_return_new_sets(self):
        base = RoleSet(["buyer"])
        grown = base.with_role("supplier")
        assert "supplier" in grown
        assert "supplier" not in base
        assert grown.without_role(Role.BUYER).to_list() == ["supplier"]

    def test_contains_ignores_unknown_values(self):
        assert "wizard" not in RoleSet([Role.BUYER])

    def test_unknown_role_rejected(self):
        with pytest.raises(ValueError):
            RoleSet(["wizard"])


class TestIdentity:
    def test_mixed_admin_grants_rejected(self):
        with pytest.raises(RoleExclusivityError):
            _identity(
                role_grants={
                    Role.ADMIN: RoleGrant(role=Role.ADMIN),
                    Role.BUYER: RoleGrant(role=Role.BUYER),
                }
            )

    def test_active_role_must_be_held(self):
        with pytest.raises(ConstraintViolation):
            _identity(
                role_grants={Role.BUYER: RoleGrant(role=Role.BUYER)},
                active_role=Role.SUPPLIER,
            )

    def test_active_roles_skip_inactive_grants(self):
        identity = _identity(
            role_grants={
                Role.BUYER: RoleGrant(role=Role.BUYER),
                Role.SUPPLIER: RoleGrant(role=Role.SUPPLIER, is_active=False),
            },
            active_role="buyer",
        )
        assert identity.active_role is Role.BUYER
        assert identity.active_roles == [Role.BUYER]
        assert identity.roles.to_list() == ["buyer", "supplier"]

    def test_admin_flags(self):
        identity = _identity(role_grants={Role.SUPER_ADMIN: RoleGrant(role=Role.SUPER_ADMIN)})
        assert identity.is_admin
        assert identity.is_super_admin

    def test_full_name_trims_missing_parts(self):
        assert _identity(first_name="Asha").full_name == "Asha"
        assert _identity(first_name="Asha", last_name="Rao").full_name == "Asha Rao"


def test_new_pending_verification_is_open():
    record = Verification.new_pending("u1", {"businessName": "Acme"}, [])
    assert record.status is VerificationStatus.PENDING
    assert record.submitted_at is not None
    assert not record.is_terminal
