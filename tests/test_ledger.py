"""
Tests for clinisafe.ledger and clinisafe.store -- Safety Check Ledger.

Covers: recording and retrieval, filtered newest-first paging, active
alerts, override semantics and guards, and the conditional write that
stops two overrides of the same check from both landing.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from clinisafe.audit import AuditEventType
from clinisafe.errors import (
    ConcurrentModificationError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
)
from clinisafe.models import (
    OverrideReason,
    SafetyCheck,
    SafetyCheckStatus,
    SafetyCheckType,
    SafetySeverity,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def _make_check(clock, **kwargs) -> SafetyCheck:
    defaults = {
        "patient_id": "patient-1",
        "check_type": SafetyCheckType.DRUG_INTERACTION,
        "status": SafetyCheckStatus.BLOCKED,
        "severity": SafetySeverity.CONTRAINDICATED,
        "title": "Validation Failed: MEDICATION",
        "related_conditions": ["I10"],
        "guideline_references": ["ACC/AHA 2023"],
        "created_at": clock(),
        "updated_at": clock(),
    }
    defaults.update(kwargs)
    return SafetyCheck(**defaults)


JUSTIFICATION = "Cardiology consulted; benefit outweighs interaction risk"


# ---------------------------------------------------------------------------
# 1. Recording and retrieval
# ---------------------------------------------------------------------------

class TestRecord:
    def test_record_and_get_round_trip(self, ledger, clock):
        check = ledger.record(_make_check(clock, encounter_id="enc-1"))
        loaded = ledger.get(check.id)
        assert loaded == check

    def test_record_is_audited(self, ledger, audit_log, clock):
        check = ledger.record(_make_check(clock))
        entries = audit_log.query("patient-1", event_type=AuditEventType.SAFETY_CHECK_RECORDED)
        assert entries[0].target_entity == check.id

    def test_record_with_review_item_writes_both(self, ledger, queue, clock):
        check = _make_check(clock)
        item = queue.new_item(check)
        ledger.record(check, review_item=item)
        assert ledger.get(check.id) == check
        assert queue.for_check(check.id).id == item.id

    def test_failed_review_item_rolls_back_check(self, ledger, queue, clock):
        first = _make_check(clock)
        item = queue.new_item(first)
        ledger.record(first, review_item=item)

        second = _make_check(clock)
        clashing = item.model_copy(update={"safety_check_id": second.id})
        with pytest.raises(PersistenceError):
            ledger.record(second, review_item=clashing)
        assert ledger.get(second.id) is None

    def test_get_unknown_returns_none(self, ledger):
        assert ledger.get("missing") is None

    def test_require_unknown_raises(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.require("missing")


# ---------------------------------------------------------------------------
# 2. Listing
# ---------------------------------------------------------------------------

class TestFind:
    def test_newest_first_with_keyset_paging(self, ledger, clock):
        ids = []
        for _ in range(5):
            ids.append(ledger.record(_make_check(clock)).id)
            clock.advance(minutes=1)

        page, has_next, total = ledger.find({"patient_id": "patient-1"}, first=2)
        assert [c.id for c in page] == ids[::-1][:2]
        assert has_next is True
        assert total == 5

        last = page[-1]
        page2, has_next2, _ = ledger.find({"patient_id": "patient-1"}, first=10, after=(last.created_at, last.id))
        assert [c.id for c in page2] == ids[::-1][2:]
        assert has_next2 is False

    def test_shared_timestamp_pages_stably(self, ledger, clock):
        ids = {ledger.record(_make_check(clock)).id for _ in range(4)}
        seen = []
        after = None
        while True:
            page, has_next, _ = ledger.find({}, first=1, after=after)
            seen.extend(c.id for c in page)
            if not has_next:
                break
            after = (page[-1].created_at, page[-1].id)
        assert len(seen) == 4
        assert set(seen) == ids

    def test_filters(self, ledger, clock):
        ledger.record(_make_check(clock, encounter_id="enc-1"))
        ledger.record(_make_check(clock, severity=SafetySeverity.WARNING, status=SafetyCheckStatus.FLAGGED))
        ledger.record(_make_check(clock, patient_id="patient-2"))

        _, _, total = ledger.find({"patient_id": "patient-1", "severity": SafetySeverity.WARNING}, first=10)
        assert total == 1
        page, _, _ = ledger.find({"encounter_id": "enc-1"}, first=10)
        assert len(page) == 1
        _, _, total = ledger.find({"check_type": SafetyCheckType.ALLERGY_CONFLICT}, first=10)
        assert total == 0


# ---------------------------------------------------------------------------
# 3. Active alerts
# ---------------------------------------------------------------------------

class TestActiveAlerts:
    def test_only_severe_open_checks_worst_first(self, ledger, clock):
        critical = ledger.record(_make_check(clock, severity=SafetySeverity.CRITICAL, status=SafetyCheckStatus.FLAGGED))
        clock.advance(minutes=1)
        contraindicated = ledger.record(_make_check(clock))
        ledger.record(_make_check(clock, severity=SafetySeverity.WARNING, status=SafetyCheckStatus.FLAGGED))
        ledger.record(_make_check(clock, severity=SafetySeverity.CRITICAL, status=SafetyCheckStatus.PENDING))
        ledger.record(_make_check(clock, patient_id="patient-2"))

        alerts = ledger.active_alerts("patient-1")
        assert [a.id for a in alerts] == [contraindicated.id, critical.id]

    def test_overridden_check_leaves_active_alerts(self, ledger, clock):
        check = ledger.record(_make_check(clock))
        ledger.override(check.id, OverrideReason.SPECIALIST_APPROVED, JUSTIFICATION, "dr_lee")
        assert ledger.active_alerts("patient-1") == []


# ---------------------------------------------------------------------------
# 4. Override
# ---------------------------------------------------------------------------

class TestOverride:
    def test_override_without_expiry(self, ledger, clock):
        check = ledger.record(_make_check(clock))
        clock.advance(minutes=5)
        updated = ledger.override(check.id, OverrideReason.CLINICAL_JUDGMENT, JUSTIFICATION, "dr_lee")

        assert updated.status == SafetyCheckStatus.OVERRIDDEN
        assert updated.override is not None
        assert updated.override.overridden_by == "dr_lee"
        assert updated.override.overridden_at == clock()
        assert updated.override.expires_at is None
        assert updated.updated_at == clock()

    def test_override_with_two_hour_expiry(self, ledger, clock):
        check = ledger.record(_make_check(clock))
        updated = ledger.override(check.id, OverrideReason.MONITORING_IN_PLACE, JUSTIFICATION, "dr_lee",
                                  expires_in_hours=2)
        window = updated.override.expires_at - updated.override.overridden_at
        assert window == timedelta(hours=2)

    @pytest.mark.parametrize("hours", [0, -1])
    def test_non_positive_expiry_rejected(self, ledger, clock, hours):
        check = ledger.record(_make_check(clock))
        with pytest.raises(ValueError):
            ledger.override(check.id, OverrideReason.MONITORING_IN_PLACE, JUSTIFICATION, "dr_lee",
                            expires_in_hours=hours)
        assert ledger.get(check.id).status == SafetyCheckStatus.BLOCKED
        assert ledger.get(check.id).override is None

    def test_flagged_check_can_be_overridden(self, ledger, clock):
        check = ledger.record(_make_check(clock, status=SafetyCheckStatus.FLAGGED, severity=SafetySeverity.CRITICAL))
        updated = ledger.override(check.id, OverrideReason.DOSAGE_ADJUSTED, JUSTIFICATION, "dr_lee")
        assert updated.status == SafetyCheckStatus.OVERRIDDEN

    @pytest.mark.parametrize("status", [SafetyCheckStatus.PASSED, SafetyCheckStatus.PENDING])
    def test_non_alert_checks_cannot_be_overridden(self, ledger, clock, status):
        check = ledger.record(_make_check(clock, status=status, severity=SafetySeverity.INFO))
        with pytest.raises(InvalidTransitionError):
            ledger.override(check.id, OverrideReason.CLINICAL_JUDGMENT, JUSTIFICATION, "dr_lee")

    def test_second_override_rejected(self, ledger, clock):
        check = ledger.record(_make_check(clock))
        ledger.override(check.id, OverrideReason.CLINICAL_JUDGMENT, JUSTIFICATION, "dr_lee")
        with pytest.raises(InvalidTransitionError):
            ledger.override(check.id, OverrideReason.CLINICAL_JUDGMENT, JUSTIFICATION, "dr_kim")

    def test_unknown_check(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.override("missing", OverrideReason.CLINICAL_JUDGMENT, JUSTIFICATION, "dr_lee")

    def test_override_is_audited(self, ledger, audit_log, clock):
        check = ledger.record(_make_check(clock))
        ledger.override(check.id, OverrideReason.PATIENT_INFORMED_CONSENT, JUSTIFICATION, "dr_lee")
        entries = audit_log.query("patient-1", event_type=AuditEventType.SAFETY_CHECK_OVERRIDDEN)
        assert len(entries) == 1
        assert entries[0].actor_id == "dr_lee"
        assert entries[0].metadata["previous_status"] == "BLOCKED"

    def test_lost_race_raises_and_keeps_first_override(self, ledger, store, clock):
        check = ledger.record(_make_check(clock))
        stale = ledger.get(check.id)

        ledger.override(check.id, OverrideReason.CLINICAL_JUDGMENT, JUSTIFICATION, "dr_lee")

        # a second writer that read the check before the first override landed
        original_get = store.get_safety_check
        store.get_safety_check = lambda check_id: stale
        try:
            with pytest.raises(ConcurrentModificationError):
                ledger.override(check.id, OverrideReason.SPECIALIST_APPROVED, JUSTIFICATION, "dr_kim")
        finally:
            store.get_safety_check = original_get

        final = ledger.get(check.id)
        assert final.override.overridden_by == "dr_lee"
        assert final.override.reason == OverrideReason.CLINICAL_JUDGMENT
