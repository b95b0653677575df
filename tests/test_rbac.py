"""
Tests for roles, capabilities and the authorization guard
"""

import pytest

from branch_ledger.rbac import (
    AuthorizationGuard, Capability, Principal, Role, ROLE_CAPABILITIES
)
from branch_ledger.errors import PermissionDenied


class TestRoleCapabilities:
    """The capability lookup table"""

    def test_ledger_write_granted_to_all_roles(self):
        for role in Role:
            assert Capability.LEDGER_WRITE in ROLE_CAPABILITIES[role]

    def test_approval_resolve_for_managers_and_admins(self):
        assert Capability.APPROVAL_RESOLVE not in ROLE_CAPABILITIES[Role.TELLER]
        assert Capability.APPROVAL_RESOLVE in ROLE_CAPABILITIES[Role.MANAGER]
        assert Capability.APPROVAL_RESOLVE in ROLE_CAPABILITIES[Role.ADMIN]

    def test_role_values(self):
        assert Role("Teller") == Role.TELLER
        assert Role("Manager") == Role.MANAGER
        assert Role("Admin") == Role.ADMIN


class TestAuthorizationGuard:
    """Test guard decisions"""

    def setup_method(self):
        self.guard = AuthorizationGuard()
        self.teller = Principal("teller-1", Role.TELLER)
        self.manager = Principal("mgr-1", Role.MANAGER)
        self.admin = Principal("admin-1", Role.ADMIN)

    def test_authorize_returns_principal(self):
        assert self.guard.authorize(self.teller, Capability.LEDGER_WRITE) is self.teller
        assert self.guard.authorize(self.manager, Capability.APPROVAL_RESOLVE) is self.manager
        assert self.guard.authorize(self.admin, Capability.APPROVAL_RESOLVE) is self.admin

    def test_teller_cannot_resolve(self):
        with pytest.raises(PermissionDenied) as exc_info:
            self.guard.authorize(self.teller, Capability.APPROVAL_RESOLVE)

        assert exc_info.value.principal_id == "teller-1"
        assert exc_info.value.capability == "approval_resolve"
        assert exc_info.value.code == "PERMISSION_DENIED"

    def test_missing_principal_denied(self):
        with pytest.raises(PermissionDenied):
            self.guard.authorize(None, Capability.LEDGER_WRITE)
        assert not self.guard.is_authorized(None, Capability.LEDGER_WRITE)

    @pytest.mark.parametrize("role", list(Role))
    def test_suspended_principal_denied_everything(self, role):
        suspended = Principal("s-1", role, is_suspended=True)

        for capability in Capability:
            with pytest.raises(PermissionDenied):
                self.guard.authorize(suspended, capability)
            assert not self.guard.is_authorized(suspended, capability)

    def test_is_authorized(self):
        assert self.guard.is_authorized(self.teller, Capability.LEDGER_WRITE)
        assert not self.guard.is_authorized(self.teller, Capability.APPROVAL_RESOLVE)

    def test_principal_is_immutable(self):
        with pytest.raises(Exception):
            self.teller.role = Role.ADMIN
