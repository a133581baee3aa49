"""
Synthetic Scenario: Care Plan Safety Review Walkthrough
=======================================================

This script runs the Clinisafe workflow end to end using entirely
synthetic data.  No real patient data, PHI or PII is used, and no ML
validator needs to be running: a scripted validator stands in for it.

The scenario simulates a clinician proposing a three-item care plan for a
patient with reduced kidney function.

Steps demonstrated:
  1. Load service settings from YAML
  2. Validate the care plan (one blocker, one warning, one clean pass)
  3. Work the review queue: assign, then approve
  4. Override the blocking check with a documented justification
  5. Page through the patient's safety checks
  6. Generate a Safety Review Report
  7. Export the audit log for compliance review

DISCLAIMER: This is a synthetic demonstration.  Safety checks are
decision support; every outcome requires review by a licensed clinician.

Usage:
    python examples/synthetic_scenario.py
"""

from __future__ import annotations

import json
import tempfile
from pathlib import Path
from typing import Optional

from clinisafe.audit import AuditLog
from clinisafe.config import ServiceSettings, configure_logging, load_settings_from_yaml
from clinisafe.models import (
    AlertLevel,
    GuidelineInfo,
    PatientContext,
    Recommendation,
    ReviewQueueStatus,
    Role,
    ValidationResult,
    ValidationTier,
)
from clinisafe.service import Actor, SafetyService
from clinisafe.store import SafetyStore


class ScriptedValidator:
    """Answers with canned results keyed by recommendation code."""

    SCRIPT = {
        "RX-METFORMIN-2000": ValidationResult(
            is_valid=False,
            confidence_score=0.94,
            validation_tier=ValidationTier.BLOCKED,
            alert_level=AlertLevel.CRITICAL,
            alert_message="Metformin contraindicated at eGFR below 30",
            deviation_factors=["contraindicated with renal impairment"],
            alternative_recommendation="Consider a DPP-4 inhibitor",
        ),
        "RX-LISINOPRIL-40": ValidationResult(
            confidence_score=0.71,
            validation_tier=ValidationTier.HIGH_CONFIDENCE,
            alert_level=AlertLevel.HIGH,
            alert_message="Dose above typical starting range",
            deviation_factors=["dose above renal-adjusted maximum"],
            requires_review=True,
        ),
    }

    def health_check(self) -> bool:
        return True

    def validate_recommendation(
        self,
        patient_context: PatientContext,
        recommendation: Recommendation,
        guideline: Optional[GuidelineInfo] = None,
    ) -> ValidationResult:
        return self.SCRIPT.get(
            recommendation.code or "",
            ValidationResult(confidence_score=0.97, validation_tier=ValidationTier.HIGH_CONFIDENCE),
        )

    def validate_batch(
        self,
        patient_context: PatientContext,
        recommendations: list[Recommendation],
        guideline: Optional[GuidelineInfo] = None,
    ) -> list[ValidationResult]:
        return [self.validate_recommendation(patient_context, r, guideline) for r in recommendations]


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def main() -> None:
    _banner("Clinisafe Synthetic Scenario: Care Plan Safety Review")
    print("DISCLAIMER: All data in this demo is entirely synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Settings
    # ------------------------------------------------------------------
    _banner("Step 1: Load Service Settings")

    sample_yaml = Path(__file__).parent / "clinisafe.yaml"
    if sample_yaml.exists():
        settings = load_settings_from_yaml(sample_yaml)
        print(f"Loaded settings from {sample_yaml.name}")
    else:
        settings = ServiceSettings()
        print("Using built-in default settings")

    # Keep the demo database out of the configured location.
    demo_dir = tempfile.mkdtemp(prefix="clinisafe-demo-")
    settings = settings.model_copy(update={"database_path": str(Path(demo_dir) / "safety.db")})
    configure_logging(settings)
    print(f"  database: {settings.database_path}")
    print(f"  max_concurrency: {settings.max_concurrency}")

    audit_log = AuditLog()
    service = SafetyService(
        SafetyStore(settings.database_path),
        ScriptedValidator(),
        audit_log=audit_log,
        settings=settings,
    )

    prescriber = Actor(user_id="dr_synthetic_001", role=Role.CLINICIAN)
    pharmacist = Actor(user_id="pharm_synthetic_002", role=Role.PHARMACIST)
    auditor = Actor(user_id="auditor_synthetic_003", role=Role.AUDITOR)

    # ------------------------------------------------------------------
    # Step 2: Validate a care plan
    # ------------------------------------------------------------------
    _banner("Step 2: Validate Care Plan")

    result = service.validate_safety(prescriber, {
        "patient_id": "synthetic-patient-A",
        "encounter_id": "synthetic-encounter-1",
        "patient_context": {
            "condition_codes": ["E11.9", "N18.4"],
            "medication_codes": ["RX-ATORVASTATIN-20"],
            "lab_values": {"egfr": 24.0},
            "age": 67,
        },
        "recommendations": [
            {"id": "rec-1", "type": "MEDICATION", "code": "RX-METFORMIN-2000",
             "text": "Start metformin 1000 mg twice daily"},
            {"id": "rec-2", "type": "MEDICATION", "code": "RX-LISINOPRIL-40",
             "text": "Start lisinopril 40 mg daily"},
            {"id": "rec-3", "type": "LIFESTYLE", "text": "Walk 30 minutes daily"},
        ],
    })
    print(f"is_valid: {result.is_valid}")
    print(f"requires_review: {result.requires_review}")
    for check in result.checks:
        print(f"  - [{check.status.value}/{check.severity.value}] {check.check_type.value}: {check.title}")
    print(f"Review items queued: {len(result.review_queue_items)}")

    blocker = result.blockers[0]
    warning_item = next(
        i for i in result.review_queue_items if i.safety_check_id == result.warnings[0].id
    )

    # ------------------------------------------------------------------
    # Step 3: Review queue
    # ------------------------------------------------------------------
    _banner("Step 3: Work the Review Queue")

    queue = service.review_queue(pharmacist)
    for entry in queue.nodes:
        item = entry.item
        print(f"  {item.priority.value}  {item.status.value}  due {item.sla_deadline.isoformat()}")

    entry = service.assign_review(pharmacist, {"review_id": warning_item.id})
    print(f"\nAssigned to {entry.item.assigned_to}. Status: {entry.item.status.value}")
    entry = service.resolve_review(pharmacist, {
        "review_id": warning_item.id,
        "decision": "APPROVED",
        "notes": "Start at 10 mg and titrate; recheck potassium in one week.",
    })
    print(f"Resolved. Status: {entry.item.status.value}")
    print(f"My open reviews: {service.my_review_queue(pharmacist, status=ReviewQueueStatus.IN_REVIEW).total_count}")

    # ------------------------------------------------------------------
    # Step 4: Override
    # ------------------------------------------------------------------
    _banner("Step 4: Override the Blocking Check")

    overridden = service.override_safety_check(prescriber, {
        "check_id": blocker.id,
        "reason": "NO_ALTERNATIVE_AVAILABLE",
        "justification": "Synthetic: formulary alternatives exhausted, nephrology consulted.",
        "expires_in_hours": 24,
    })
    print(f"Check status: {overridden.status.value}")
    print(f"  expires_at: {overridden.override.expires_at.isoformat()}")
    print(f"Active alerts: {len(service.active_safety_alerts(prescriber, 'synthetic-patient-A'))}")

    # ------------------------------------------------------------------
    # Step 5: Paging
    # ------------------------------------------------------------------
    _banner("Step 5: Page Through Safety Checks")

    page = service.safety_checks_for_patient(auditor, "synthetic-patient-A", first=1)
    page_number = 1
    while True:
        for node in page.nodes:
            print(f"  page {page_number}: {node.check_type.value} ({node.status.value})")
        if not page.page_info.has_next_page:
            break
        page_number += 1
        page = service.safety_checks_for_patient(
            auditor, "synthetic-patient-A", first=1, after=page.page_info.end_cursor
        )

    # ------------------------------------------------------------------
    # Step 6: Safety Review Report
    # ------------------------------------------------------------------
    _banner("Step 6: Safety Review Report")

    print(json.dumps(service.review_report(auditor, blocker.id), indent=2, default=str))

    # ------------------------------------------------------------------
    # Step 7: Audit export
    # ------------------------------------------------------------------
    _banner("Step 7: Audit Log Export (Compliance Review)")

    export = service.export_audit(auditor, "synthetic-patient-A")
    print(json.dumps(export["export_metadata"], indent=2))
    for entry in export["entries"]:
        print(f"  {entry['event_type']:<28} actor={entry['actor_id']}")

    valid, broken_at = audit_log.verify_chain()
    print(f"\nFull chain verification: valid={valid}, broken_at={broken_at}")

    _banner("Scenario Complete")
    print("All data was synthetic. No real patients, PHI, or PII.")


if __name__ == "__main__":
    main()
