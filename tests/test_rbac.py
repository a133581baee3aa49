"""
Tests for clinisafe.rbac -- role table for the safety service.
"""

import pytest

from clinisafe.models import Role
from clinisafe.rbac import Action, check_permission, get_permissions_for_role, require_permission


class TestRBAC:
    @pytest.mark.parametrize("role", [Role.CLINICIAN, Role.PHARMACIST])
    def test_clinical_roles_can_override_and_resolve(self, role):
        assert check_permission(role, Action.OVERRIDE_SAFETY_CHECK) is True
        assert check_permission(role, Action.RESOLVE_REVIEW) is True
        assert check_permission(role, Action.ESCALATE_REVIEW) is True

    def test_clinicians_cannot_export_audit(self):
        assert check_permission(Role.CLINICIAN, Action.EXPORT_AUDIT) is False

    def test_auditor_is_read_only(self):
        assert check_permission(Role.AUDITOR, Action.VIEW_SAFETY) is True
        assert check_permission(Role.AUDITOR, Action.EXPORT_AUDIT) is True
        assert check_permission(Role.AUDITOR, Action.OVERRIDE_SAFETY_CHECK) is False
        assert check_permission(Role.AUDITOR, Action.VALIDATE_SAFETY) is False

    def test_admin_assigns_but_does_not_decide(self):
        assert check_permission(Role.ADMIN, Action.ASSIGN_REVIEW) is True
        assert check_permission(Role.ADMIN, Action.RESOLVE_REVIEW) is False
        assert check_permission(Role.ADMIN, Action.OVERRIDE_SAFETY_CHECK) is False

    def test_require_permission_raises_on_denied(self):
        with pytest.raises(PermissionError, match="override_safety_check"):
            require_permission(Role.AUDITOR, Action.OVERRIDE_SAFETY_CHECK)

    def test_require_permission_passes_on_allowed(self):
        require_permission(Role.PHARMACIST, Action.VALIDATE_SAFETY)

    def test_permissions_cover_every_action(self):
        perms = get_permissions_for_role(Role.AUDITOR)
        assert set(perms) == {a.value for a in Action}
        assert perms["export_audit"] is True
        assert perms["resolve_review"] is False
