"""
Safety Review Report Generator.

Builds the summary a reviewer reads before deciding a review queue item:
what the check is, why it was raised (the validator narrative), and a
timeline of everything that has happened to the check and its review item
so far.

DISCLAIMER: Review reports are decision-support summaries.  They do not
constitute clinical assessments or treatment recommendations.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from clinisafe.models import ReviewQueueItem, SafetyCheck, utc_now


class ReviewReport:
    """A structured safety review summary for one check."""

    def __init__(
        self,
        safety_check_id: str,
        patient_id: str,
        check_type: str,
        severity: str,
        status: str,
        review_item_id: Optional[str],
        review_status: Optional[str],
        priority: Optional[str],
        sla_deadline: Optional[str],
        is_overdue: bool,
        timeline: list[dict[str, str]],
        reasoning_chain: list[str],
        generated_at: str,
    ) -> None:
        self.safety_check_id = safety_check_id
        self.patient_id = patient_id
        self.check_type = check_type
        self.severity = severity
        self.status = status
        self.review_item_id = review_item_id
        self.review_status = review_status
        self.priority = priority
        self.sla_deadline = sla_deadline
        self.is_overdue = is_overdue
        self.timeline = timeline
        self.reasoning_chain = reasoning_chain
        self.generated_at = generated_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_type": "Safety Review Report",
            "disclaimer": (
                "This report is a decision-support summary for clinician review. "
                "It does not constitute a clinical assessment or treatment decision."
            ),
            "safety_check_id": self.safety_check_id,
            "patient_id": self.patient_id,
            "check_type": self.check_type,
            "severity": self.severity,
            "status": self.status,
            "review": {
                "id": self.review_item_id,
                "status": self.review_status,
                "priority": self.priority,
                "sla_deadline": self.sla_deadline,
                "is_overdue": self.is_overdue,
            },
            "timeline": self.timeline,
            "reasoning_chain": self.reasoning_chain,
            "generated_at": self.generated_at,
        }

    def __repr__(self) -> str:
        return (
            f"ReviewReport(check={self.safety_check_id}, "
            f"severity={self.severity}, review={self.review_status})"
        )


def generate_review_report(
    check: SafetyCheck,
    item: Optional[ReviewQueueItem] = None,
    now: Optional[datetime] = None,
) -> ReviewReport:
    """Build a report for ``check`` and, if it has one, its review item.

    Args:
        check: The safety check under review.
        item: The check's review queue item, if it was enqueued.
        now: Evaluation time for the overdue flag; defaults to now (UTC).
    """
    now = now or utc_now()
    reasoning = [check.title]
    if check.description:
        reasoning.append(check.description)
    if check.clinical_rationale:
        reasoning.append(check.clinical_rationale)

    return ReviewReport(
        safety_check_id=check.id,
        patient_id=check.patient_id,
        check_type=check.check_type.value,
        severity=check.severity.value,
        status=check.status.value,
        review_item_id=item.id if item else None,
        review_status=item.status.value if item else None,
        priority=item.priority.value if item else None,
        sla_deadline=item.sla_deadline.isoformat() if item else None,
        is_overdue=item.is_overdue(now) if item else False,
        timeline=_build_timeline(check, item),
        reasoning_chain=reasoning,
        generated_at=now.isoformat(),
    )


def _build_timeline(check: SafetyCheck, item: Optional[ReviewQueueItem]) -> list[dict[str, str]]:
    """Chronological events for the check and its review item."""
    events: list[dict[str, str]] = [{
        "event": "CHECK_RECORDED",
        "timestamp": check.created_at.isoformat(),
        "description": f"{check.severity.value} {check.check_type.value} check recorded as {check.status.value}.",
    }]

    if check.override:
        ov = check.override
        expiry = f" until {ov.expires_at.isoformat()}" if ov.expires_at else ""
        events.append({
            "event": "CHECK_OVERRIDDEN",
            "timestamp": ov.overridden_at.isoformat(),
            "description": f"Overridden by {ov.overridden_by} ({ov.reason.value}){expiry}.",
        })

    if item is not None:
        events.append({
            "event": "REVIEW_ENQUEUED",
            "timestamp": item.created_at.isoformat(),
            "description": f"Queued for review at {item.priority.value}, due {item.sla_deadline.isoformat()}.",
        })
        if item.assigned_at:
            events.append({
                "event": "REVIEW_ASSIGNED",
                "timestamp": item.assigned_at.isoformat(),
                "description": f"Assigned to {item.assigned_to}.",
            })
        if item.resolution:
            res = item.resolution
            detail = res.escalation_reason or res.notes
            events.append({
                "event": f"REVIEW_{res.decision.value}",
                "timestamp": res.resolved_at.isoformat(),
                "description": f"{res.decision.value} by {res.resolved_by}."
                + (f" {detail}" if detail else ""),
            })

    events.sort(key=lambda e: datetime.fromisoformat(e["timestamp"]))
    return events
