"""
Safety Check Ledger.

Persistence-backed lifecycle for ``SafetyCheck`` records.  Checks are
append-only: the ledger records them once, and the override operation is
the only mutation afterwards.  Nothing is ever deleted.

**Override guard:**  a check may be overridden only while it is BLOCKED or
FLAGGED.  PASSED and PENDING checks have nothing to override, and an
OVERRIDDEN check already carries a documented decision.  The write is
conditional on the status that was read, so two clinicians overriding the
same check concurrently cannot both succeed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from clinisafe.audit import AuditEventType, AuditLog
from clinisafe.errors import ConcurrentModificationError, InvalidTransitionError, NotFoundError
from clinisafe.models import (
    OverrideReason,
    ReviewQueueItem,
    SafetyCheck,
    SafetyCheckStatus,
    SafetyOverride,
    utc_now,
)
from clinisafe.store import PagePosition, SafetyStore

logger = logging.getLogger(__name__)

OVERRIDABLE_STATUSES = frozenset({SafetyCheckStatus.BLOCKED, SafetyCheckStatus.FLAGGED})


class SafetyCheckLedger:
    """Records safety checks and applies overrides."""

    def __init__(
        self,
        store: SafetyStore,
        audit_log: AuditLog,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._audit_log = audit_log
        self._clock = clock

    def record(self, check: SafetyCheck, review_item: Optional[ReviewQueueItem] = None) -> SafetyCheck:
        """Persist a newly classified check.

        When ``review_item`` is given it is written in the same transaction,
        so a check that needs review is never stored without its item.
        """
        if review_item is None:
            self._store.insert_safety_check(check)
        else:
            self._store.insert_check_with_review(check, review_item)
        self._audit_log.record(
            AuditEventType.SAFETY_CHECK_RECORDED,
            patient_id=check.patient_id,
            target_entity=check.id,
            metadata={
                "check_type": check.check_type.value,
                "severity": check.severity.value,
                "status": check.status.value,
                "encounter_id": check.encounter_id,
            },
        )
        logger.info(
            f"Recorded {check.status.value} {check.check_type.value} check {check.id} "
            f"for patient {check.patient_id}"
        )
        return check

    def get(self, check_id: str) -> SafetyCheck | None:
        return self._store.get_safety_check(check_id)

    def require(self, check_id: str) -> SafetyCheck:
        check = self._store.get_safety_check(check_id)
        if check is None:
            raise NotFoundError("SafetyCheck", check_id)
        return check

    def find(
        self,
        filters: dict[str, Any],
        first: int,
        after: Optional[PagePosition] = None,
    ) -> tuple[list[SafetyCheck], bool, int]:
        """Newest-first page of checks; see ``SafetyStore.query_safety_checks``."""
        return self._store.query_safety_checks(filters, first, after)

    def active_alerts(self, patient_id: str) -> list[SafetyCheck]:
        return self._store.active_alerts(patient_id)

    def override(
        self,
        check_id: str,
        reason: OverrideReason,
        justification: str,
        overridden_by: str,
        expires_in_hours: Optional[float] = None,
    ) -> SafetyCheck:
        """Document a clinician's decision to proceed despite a check.

        Args:
            check_id: The check to override.
            reason: Enumerated override reason.
            justification: Free-text justification (at least 10 characters).
            overridden_by: User ID of the overriding clinician.
            expires_in_hours: Optional lifetime; None means no expiry.

        Returns:
            The updated check with status OVERRIDDEN.

        Raises:
            ValueError: If ``expires_in_hours`` is zero or negative.
            NotFoundError: If the check does not exist.
            InvalidTransitionError: If the check is not BLOCKED or FLAGGED.
            ConcurrentModificationError: If the check changed between read
                and write.
        """
        check = self.require(check_id)
        if check.status not in OVERRIDABLE_STATUSES:
            raise InvalidTransitionError(
                f"Cannot override a {check.status.value} safety check. "
                f"Allowed from: {sorted(s.value for s in OVERRIDABLE_STATUSES)}"
            )

        if expires_in_hours is not None and expires_in_hours <= 0:
            raise ValueError("expires_in_hours must be positive when given")

        now = self._clock()
        override = SafetyOverride(
            reason=reason,
            justification=justification,
            overridden_by=overridden_by,
            overridden_at=now,
            expires_at=(
                now + timedelta(hours=expires_in_hours) if expires_in_hours is not None else None
            ),
        )

        if not self._store.apply_override(check_id, check.status, override, now):
            raise ConcurrentModificationError(
                f"Safety check {check_id} changed while it was being overridden"
            )

        self._audit_log.record(
            AuditEventType.SAFETY_CHECK_OVERRIDDEN,
            patient_id=check.patient_id,
            target_entity=check_id,
            actor_id=overridden_by,
            metadata={
                "previous_status": check.status.value,
                "reason": reason.value,
                "justification": justification,
                "expires_at": override.expires_at.isoformat() if override.expires_at else None,
            },
        )
        logger.info(f"Safety check {check_id} overridden by {overridden_by} ({reason.value})")

        return self.require(check_id)
