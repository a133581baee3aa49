"""
Safety Classifier -- Validator Output to Safety Taxonomy.

Maps one ``(patient_context, recommendation, validation_result)`` triple
onto a ``SafetyCheck``.  The mapping is pure and deterministic: no I/O, no
clock other than the one passed in, and every combination of alert level
and validation tier yields exactly one severity and one status.

**Check type** -- deviation factors are scanned in a fixed precedence
order (case-insensitive substring match).  Factors are not mutually
exclusive ("drug dosage too high" mentions both), so the order is part of
the contract:

    contraindication > drug/interaction > allergy > dosage/dose >
    duplicate/therapy > age/pediatric/geriatric > pregnancy >
    renal/kidney > hepatic/liver

With no match, medications default to DRUG_INTERACTION and everything
else to CONTRAINDICATION.

**Severity** -- CRITICAL->CONTRAINDICATED, HIGH->CRITICAL, MEDIUM->WARNING,
LOW/NONE->INFO.

**Status** -- BLOCKED if alert is CRITICAL or tier is BLOCKED; FLAGGED for
HIGH/MEDIUM alerts; PENDING for NEEDS_REVIEW; otherwise PASSED.

DISCLAIMER: The classifier translates validator output into workflow
states.  It does not decide clinical correctness.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from clinisafe.models import (
    AlertLevel,
    PatientContext,
    Recommendation,
    RecommendationType,
    ReviewPriority,
    SafetyCheck,
    SafetyCheckStatus,
    SafetyCheckType,
    SafetySeverity,
    ValidationResult,
    ValidationTier,
    utc_now,
)


# ---------------------------------------------------------------------------
# Mapping tables
# ---------------------------------------------------------------------------

# Ordered: first matching entry wins.
_CHECK_TYPE_KEYWORDS: tuple[tuple[SafetyCheckType, tuple[str, ...]], ...] = (
    (SafetyCheckType.CONTRAINDICATION, ("contraindic",)),
    (SafetyCheckType.DRUG_INTERACTION, ("interaction", "drug")),
    (SafetyCheckType.ALLERGY_CONFLICT, ("allergy",)),
    (SafetyCheckType.DOSAGE_VALIDATION, ("dosage", "dose")),
    (SafetyCheckType.DUPLICATE_THERAPY, ("duplicate", "therapy")),
    (SafetyCheckType.AGE_APPROPRIATENESS, ("age", "pediatric", "geriatric")),
    (SafetyCheckType.PREGNANCY_SAFETY, ("pregnan",)),
    (SafetyCheckType.RENAL_ADJUSTMENT, ("renal", "kidney")),
    (SafetyCheckType.HEPATIC_ADJUSTMENT, ("hepatic", "liver")),
)

_SEVERITY_BY_ALERT: dict[AlertLevel, SafetySeverity] = {
    AlertLevel.CRITICAL: SafetySeverity.CONTRAINDICATED,
    AlertLevel.HIGH: SafetySeverity.CRITICAL,
    AlertLevel.MEDIUM: SafetySeverity.WARNING,
    AlertLevel.LOW: SafetySeverity.INFO,
    AlertLevel.NONE: SafetySeverity.INFO,
}

_PRIORITY_BY_SEVERITY: dict[SafetySeverity, ReviewPriority] = {
    SafetySeverity.CONTRAINDICATED: ReviewPriority.P0_CRITICAL,
    SafetySeverity.CRITICAL: ReviewPriority.P1_HIGH,
    SafetySeverity.WARNING: ReviewPriority.P2_MEDIUM,
    SafetySeverity.INFO: ReviewPriority.P3_LOW,
}

_MAX_SIMILAR_PLANS = 3


# ---------------------------------------------------------------------------
# Inference
# ---------------------------------------------------------------------------

def infer_check_type(
    result: ValidationResult, recommendation: Recommendation
) -> SafetyCheckType:
    """Infer the check type from deviation factors, in fixed precedence."""
    factors = [f.lower() for f in result.deviation_factors if f]
    for check_type, keywords in _CHECK_TYPE_KEYWORDS:
        if any(kw in factor for factor in factors for kw in keywords):
            return check_type

    if recommendation.type == RecommendationType.MEDICATION:
        return SafetyCheckType.DRUG_INTERACTION
    return SafetyCheckType.CONTRAINDICATION


def infer_severity(alert_level: AlertLevel) -> SafetySeverity:
    """Total mapping from validator alert level to severity."""
    return _SEVERITY_BY_ALERT[alert_level]


def infer_status(result: ValidationResult) -> SafetyCheckStatus:
    """Total mapping from alert level and tier to check status."""
    if result.alert_level == AlertLevel.CRITICAL or result.validation_tier == ValidationTier.BLOCKED:
        return SafetyCheckStatus.BLOCKED
    if result.alert_level in (AlertLevel.HIGH, AlertLevel.MEDIUM):
        return SafetyCheckStatus.FLAGGED
    if result.validation_tier == ValidationTier.NEEDS_REVIEW:
        return SafetyCheckStatus.PENDING
    return SafetyCheckStatus.PASSED


def derive_priority(severity: SafetySeverity) -> ReviewPriority:
    """Review priority for a check of the given severity."""
    return _PRIORITY_BY_SEVERITY[severity]


def requires_review(check: SafetyCheck, result: ValidationResult) -> bool:
    """Whether a classified check must be routed to the review queue."""
    return (
        check.severity == SafetySeverity.CRITICAL
        or check.status == SafetyCheckStatus.BLOCKED
        or result.validation_tier == ValidationTier.NEEDS_REVIEW
    )


# ---------------------------------------------------------------------------
# Narrative
# ---------------------------------------------------------------------------

def build_title(result: ValidationResult, recommendation: Recommendation) -> str:
    rec_type = recommendation.type.value
    if result.is_anomaly:
        return f"Anomaly Detected: {rec_type}"
    if not result.is_valid:
        return f"Validation Failed: {rec_type}"
    if result.requires_review or result.validation_tier == ValidationTier.NEEDS_REVIEW:
        return f"Review Required: {rec_type}"
    return "Recommendation Validation"


def build_description(result: ValidationResult) -> str:
    description = result.alert_message or "Recommendation validation result"
    factors = [f for f in result.deviation_factors if f]
    if factors:
        description += f". Deviation factors: {', '.join(factors)}"
    return description


def build_rationale(result: ValidationResult) -> str:
    parts = [f"ML Validator Confidence: {result.confidence_score * 100:.1f}%"]
    if result.is_anomaly:
        parts.append(f"Anomaly Score: {result.anomaly_score * 100:.1f}%")
    if result.alternative_recommendation:
        parts.append(f"Suggested alternative: {result.alternative_recommendation}")
    if result.similar_plan_ids:
        similar = ", ".join(result.similar_plan_ids[:_MAX_SIMILAR_PLANS])
        parts.append(f"Similar approved plans: {similar}")
    return ". ".join(parts)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def classify(
    patient_id: str,
    recommendation: Recommendation,
    result: ValidationResult,
    patient_context: PatientContext,
    encounter_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SafetyCheck:
    """Build the ``SafetyCheck`` for one validator result.

    Args:
        patient_id: Patient the recommendation was proposed for.
        recommendation: The recommendation that was validated.
        result: The validator's parsed response.
        patient_context: Context that was sent with the recommendation.
        encounter_id: Optional encounter reference.
        now: Creation timestamp; defaults to the current UTC time.

    Returns:
        An unsaved ``SafetyCheck``.
    """
    now = now or utc_now()
    return SafetyCheck(
        patient_id=patient_id,
        encounter_id=encounter_id,
        check_type=infer_check_type(result, recommendation),
        trigger_medication_code=recommendation.code,
        trigger_condition_code=(
            patient_context.condition_codes[0] if patient_context.condition_codes else None
        ),
        status=infer_status(result),
        severity=infer_severity(result.alert_level),
        title=build_title(result, recommendation),
        description=build_description(result),
        clinical_rationale=build_rationale(result),
        related_medications=list(patient_context.medication_codes),
        related_conditions=list(patient_context.condition_codes),
        created_at=now,
        updated_at=now,
    )
