"""
Role-Based Access Control for the safety service.

Table-driven: each role maps to the set of actions it may perform, and
anything not listed is denied.  Enforcement happens in ``SafetyService``
only; the ledger, queue and orchestrator trust their callers.

**Roles:**

* CLINICIAN  -- validates plans, overrides checks, works the review queue.
* PHARMACIST -- same clinical authority over checks and reviews.
* ADMIN      -- can see everything and export audit trails, but makes no
  clinical decisions.
* AUDITOR    -- read-only access to checks, reports and audit exports.

DISCLAIMER: This is an in-process access layer.  Production deployments
should take identities and roles from an enterprise identity provider.
"""

from __future__ import annotations

import enum

from clinisafe.models import Role


class Action(str, enum.Enum):
    VIEW_SAFETY = "view_safety"
    VALIDATE_SAFETY = "validate_safety"
    OVERRIDE_SAFETY_CHECK = "override_safety_check"
    ASSIGN_REVIEW = "assign_review"
    RESOLVE_REVIEW = "resolve_review"
    ESCALATE_REVIEW = "escalate_review"
    EXPORT_AUDIT = "export_audit"


_CLINICAL_ACTIONS = frozenset({
    Action.VIEW_SAFETY,
    Action.VALIDATE_SAFETY,
    Action.OVERRIDE_SAFETY_CHECK,
    Action.ASSIGN_REVIEW,
    Action.RESOLVE_REVIEW,
    Action.ESCALATE_REVIEW,
})

_PERMISSIONS: dict[Role, frozenset[Action]] = {
    Role.CLINICIAN: _CLINICAL_ACTIONS,
    Role.PHARMACIST: _CLINICAL_ACTIONS,
    Role.ADMIN: frozenset({Action.VIEW_SAFETY, Action.ASSIGN_REVIEW, Action.EXPORT_AUDIT}),
    Role.AUDITOR: frozenset({Action.VIEW_SAFETY, Action.EXPORT_AUDIT}),
}


def check_permission(role: Role, action: Action) -> bool:
    """Return True if ``role`` may perform ``action``."""
    return action in _PERMISSIONS.get(role, frozenset())


def require_permission(role: Role, action: Action) -> None:
    """Raise unless ``role`` may perform ``action``.

    Raises:
        PermissionError: If the role is not permitted.
    """
    if not check_permission(role, action):
        raise PermissionError(
            f"Role '{role.value}' is not permitted to perform action '{action.value}'."
        )


def get_permissions_for_role(role: Role) -> dict[str, bool]:
    """Every known action mapped to whether ``role`` may perform it."""
    return {action.value: check_permission(role, action) for action in Action}
