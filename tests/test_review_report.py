"""
Tests for clinisafe.review_report -- Safety Review Reports.
"""

from __future__ import annotations

from datetime import timedelta

from clinisafe.models import (
    OverrideReason,
    ReviewQueueStatus,
    SafetyCheck,
    SafetyCheckStatus,
    SafetyCheckType,
    SafetySeverity,
)
from clinisafe.review_report import generate_review_report


def _record_check(ledger, clock) -> SafetyCheck:
    return ledger.record(SafetyCheck(
        patient_id="patient-1",
        check_type=SafetyCheckType.RENAL_ADJUSTMENT,
        status=SafetyCheckStatus.FLAGGED,
        severity=SafetySeverity.CRITICAL,
        title="Review Required: MEDICATION",
        description="Dose exceeds renal limit. Deviation factors: renal impairment",
        clinical_rationale="ML Validator Confidence: 81.0%",
        created_at=clock(),
        updated_at=clock(),
    ))


class TestReviewReport:
    def test_report_without_review_item(self, ledger, clock):
        check = _record_check(ledger, clock)
        d = generate_review_report(check, now=clock()).to_dict()
        assert d["safety_check_id"] == check.id
        assert d["severity"] == "CRITICAL"
        assert d["review"]["id"] is None
        assert d["review"]["is_overdue"] is False
        assert [e["event"] for e in d["timeline"]] == ["CHECK_RECORDED"]
        assert "not constitute" in d["disclaimer"].lower()

    def test_reasoning_chain_follows_narrative(self, ledger, clock):
        check = _record_check(ledger, clock)
        report = generate_review_report(check, now=clock())
        assert report.reasoning_chain == [
            "Review Required: MEDICATION",
            "Dose exceeds renal limit. Deviation factors: renal impairment",
            "ML Validator Confidence: 81.0%",
        ]

    def test_full_timeline(self, ledger, queue, clock):
        check = _record_check(ledger, clock)
        item = queue.enqueue(check)
        clock.advance(minutes=5)
        queue.assign(item.id, "pharm-3")
        clock.advance(minutes=5)
        check = ledger.override(check.id, OverrideReason.DOSAGE_ADJUSTED,
                                "Dose reduced to 50% per CrCl", "pharm-3", expires_in_hours=24)
        clock.advance(minutes=5)
        item = queue.resolve(item.id, ReviewQueueStatus.APPROVED, resolved_by="pharm-3", notes="adjusted")

        d = generate_review_report(check, item, now=clock()).to_dict()
        assert [e["event"] for e in d["timeline"]] == [
            "CHECK_RECORDED",
            "REVIEW_ENQUEUED",
            "REVIEW_ASSIGNED",
            "CHECK_OVERRIDDEN",
            "REVIEW_APPROVED",
        ]
        assert d["review"]["status"] == "APPROVED"
        assert d["review"]["priority"] == "P1_HIGH"

    def test_overdue_flag(self, ledger, queue, clock):
        check = _record_check(ledger, clock)
        item = queue.enqueue(check)
        report = generate_review_report(check, item, now=clock() + timedelta(hours=5))
        assert report.is_overdue is True
