"""
Core data models for the Clinisafe recommendation safety engine.

Enumerations are string-valued so that persisted rows and audit exports
carry the exact taxonomy names (``BLOCKED``, ``P0_CRITICAL`` ...) and can be
inspected without decoding.  Values arriving from the ML validator are
parsed into these enums at the boundary; an unknown value is rejected
there rather than being stored.

DISCLAIMER: These models describe decision-support records.  A safety
check is a routing signal for clinician review, not a clinical judgement.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now() -> datetime:
    """Default clock for every component that stamps a time."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class SafetyCheckType(str, enum.Enum):
    """Category of safety concern raised for a recommendation."""

    DRUG_INTERACTION = "DRUG_INTERACTION"
    ALLERGY_CONFLICT = "ALLERGY_CONFLICT"
    CONTRAINDICATION = "CONTRAINDICATION"
    DOSAGE_VALIDATION = "DOSAGE_VALIDATION"
    DUPLICATE_THERAPY = "DUPLICATE_THERAPY"
    AGE_APPROPRIATENESS = "AGE_APPROPRIATENESS"
    PREGNANCY_SAFETY = "PREGNANCY_SAFETY"
    RENAL_ADJUSTMENT = "RENAL_ADJUSTMENT"
    HEPATIC_ADJUSTMENT = "HEPATIC_ADJUSTMENT"


class SafetySeverity(str, enum.Enum):
    """Ordered severity: INFO < WARNING < CRITICAL < CONTRAINDICATED."""

    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"
    CONTRAINDICATED = "CONTRAINDICATED"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    SafetySeverity.INFO: 0,
    SafetySeverity.WARNING: 1,
    SafetySeverity.CRITICAL: 2,
    SafetySeverity.CONTRAINDICATED: 3,
}


class SafetyCheckStatus(str, enum.Enum):
    """Lifecycle status of a safety check.

    * ``PASSED``     -- nothing actionable.
    * ``PENDING``    -- the validator asked for human review.
    * ``FLAGGED``    -- elevated alert; the recommendation may proceed with care.
    * ``BLOCKED``    -- the recommendation must not proceed without override.
    * ``OVERRIDDEN`` -- a clinician documented a decision to proceed.
    """

    PENDING = "PENDING"
    PASSED = "PASSED"
    FLAGGED = "FLAGGED"
    BLOCKED = "BLOCKED"
    OVERRIDDEN = "OVERRIDDEN"


class ReviewQueueStatus(str, enum.Enum):
    """Lifecycle states for a review queue item.

    ``PENDING_REVIEW`` and ``IN_REVIEW`` are open; the other three are
    terminal and no transition leaves them.
    """

    PENDING_REVIEW = "PENDING_REVIEW"
    IN_REVIEW = "IN_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ESCALATED = "ESCALATED"


OPEN_REVIEW_STATUSES = frozenset({ReviewQueueStatus.PENDING_REVIEW, ReviewQueueStatus.IN_REVIEW})


class ReviewPriority(str, enum.Enum):
    """Review priority; determines the SLA deadline at enqueue time."""

    P0_CRITICAL = "P0_CRITICAL"
    P1_HIGH = "P1_HIGH"
    P2_MEDIUM = "P2_MEDIUM"
    P3_LOW = "P3_LOW"


class OverrideReason(str, enum.Enum):
    """Documented reasons a clinician may proceed despite a safety check."""

    CLINICAL_JUDGMENT = "CLINICAL_JUDGMENT"
    PATIENT_INFORMED_CONSENT = "PATIENT_INFORMED_CONSENT"
    NO_ALTERNATIVE_AVAILABLE = "NO_ALTERNATIVE_AVAILABLE"
    MONITORING_IN_PLACE = "MONITORING_IN_PLACE"
    DOSAGE_ADJUSTED = "DOSAGE_ADJUSTED"
    SPECIALIST_APPROVED = "SPECIALIST_APPROVED"


class AlertLevel(str, enum.Enum):
    """Validator urgency signal, the primary driver of severity and status."""

    NONE = "NONE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ValidationTier(str, enum.Enum):
    """Validator's own confidence bucket."""

    HIGH_CONFIDENCE = "HIGH_CONFIDENCE"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    BLOCKED = "BLOCKED"


class RecommendationType(str, enum.Enum):
    """Kind of care recommendation submitted for validation."""

    MEDICATION = "MEDICATION"
    PROCEDURE = "PROCEDURE"
    LIFESTYLE = "LIFESTYLE"
    MONITORING = "MONITORING"
    REFERRAL = "REFERRAL"
    EDUCATION = "EDUCATION"
    OTHER = "OTHER"


class Role(str, enum.Enum):
    """Caller roles recognised by the service layer."""

    CLINICIAN = "CLINICIAN"
    PHARMACIST = "PHARMACIST"
    ADMIN = "ADMIN"
    AUDITOR = "AUDITOR"


# ---------------------------------------------------------------------------
# Validator boundary models
# ---------------------------------------------------------------------------

class PatientContext(BaseModel):
    """Clinical context sent alongside every recommendation.

    Only ``condition_codes`` is required; the validator tolerates sparse
    context and so does the classifier.
    """

    condition_codes: list[str] = Field(
        ...,
        description="Active condition codes (ICD-10 or SNOMED).",
    )
    medication_codes: list[str] = Field(default_factory=list)
    lab_codes: list[str] = Field(default_factory=list)
    lab_values: dict[str, float] = Field(default_factory=dict)
    complications: list[str] = Field(default_factory=list)
    risk_factors: list[str] = Field(default_factory=list)
    immunocompromised: Optional[bool] = None
    age: Optional[int] = Field(default=None, ge=0, le=150)
    sex: Optional[str] = None


class Recommendation(BaseModel):
    """A proposed care recommendation (medication, procedure, lifestyle ...)."""

    id: Optional[str] = Field(
        default=None,
        description="Caller's recommendation identifier, echoed back for correlation.",
    )
    type: RecommendationType
    code: Optional[str] = None
    text: str = Field(..., min_length=1)
    dosage: Optional[str] = None
    frequency: Optional[str] = None


class GuidelineInfo(BaseModel):
    """Optional guideline provenance forwarded to the validator."""

    source: Optional[str] = None
    evidence_grade: Optional[str] = None
    age_days: Optional[int] = Field(default=None, ge=0)


class ValidationResult(BaseModel):
    """One validator response, parsed from the wire (snake_case JSON).

    Additional fields are ignored.  Missing optional fields fall back to
    neutral defaults; enum fields outside the closed vocabulary fail
    validation so they never reach a persisted record.
    """

    model_config = ConfigDict(extra="ignore")

    is_valid: bool = True
    confidence_score: float = Field(default=0.0, ge=0, le=1)
    validation_tier: ValidationTier
    is_anomaly: bool = False
    anomaly_score: float = Field(default=0.0, ge=0, le=1)
    deviation_factors: list[str] = Field(default_factory=list)
    alternative_recommendation: Optional[str] = None
    alternative_confidence: Optional[float] = Field(default=None, ge=0, le=1)
    alert_level: AlertLevel = AlertLevel.NONE
    alert_message: str = ""
    requires_review: bool = False
    similar_plan_ids: list[str] = Field(default_factory=list)
    predicted_class: Optional[str] = None

    @field_validator("deviation_factors", "similar_plan_ids", mode="before")
    @classmethod
    def none_to_empty_list(cls, v):
        return [] if v is None else v

    @field_validator("alert_message", mode="before")
    @classmethod
    def none_to_empty_string(cls, v):
        return "" if v is None else v

    def is_clean_pass(self) -> bool:
        """No alert and high confidence: nothing to record as a check."""
        return (
            self.alert_level == AlertLevel.NONE
            and self.validation_tier == ValidationTier.HIGH_CONFIDENCE
        )


# ---------------------------------------------------------------------------
# Safety domain records
# ---------------------------------------------------------------------------

class SafetyOverride(BaseModel):
    """A clinician's documented decision to proceed despite a check."""

    reason: OverrideReason
    justification: str = Field(..., min_length=10)
    overridden_by: str = Field(..., min_length=1)
    overridden_at: datetime
    expires_at: Optional[datetime] = Field(
        default=None,
        description="None means the override does not expire.",
    )

    def is_active(self, now: datetime) -> bool:
        return self.expires_at is None or now < self.expires_at


class SafetyCheck(BaseModel):
    """One classified safety concern for a patient/recommendation pair.

    Append-only: created by the orchestrator, mutated only by the override
    operation, never deleted.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    patient_id: str = Field(..., min_length=1)
    encounter_id: Optional[str] = None
    check_type: SafetyCheckType
    trigger_medication_code: Optional[str] = None
    trigger_condition_code: Optional[str] = None
    status: SafetyCheckStatus
    severity: SafetySeverity
    title: str
    description: str = ""
    clinical_rationale: str = ""
    related_medications: list[str] = Field(default_factory=list)
    related_conditions: list[str] = Field(default_factory=list)
    related_allergies: list[str] = Field(default_factory=list)
    guideline_references: list[str] = Field(default_factory=list)
    override: Optional[SafetyOverride] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def override_matches_status(self) -> "SafetyCheck":
        overridden = self.status == SafetyCheckStatus.OVERRIDDEN
        if overridden and self.override is None:
            raise ValueError("OVERRIDDEN safety check requires override metadata")
        if not overridden and self.override is not None:
            raise ValueError(
                f"override metadata present on a {self.status.value} safety check"
            )
        return self


class ReviewResolution(BaseModel):
    """Terminal decision recorded on a review queue item."""

    resolved_by: str
    resolved_at: datetime
    decision: ReviewQueueStatus
    notes: Optional[str] = None
    escalation_reason: Optional[str] = None


class ReviewQueueItem(BaseModel):
    """A unit of required human attention tied to exactly one safety check.

    ``sla_deadline`` is fixed when the item is enqueued.  Overdue is derived
    on every read through :meth:`is_overdue` and is never stored.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    patient_id: str = Field(..., min_length=1)
    safety_check_id: str = Field(..., min_length=1)
    recommendation_id: Optional[str] = None
    status: ReviewQueueStatus = ReviewQueueStatus.PENDING_REVIEW
    priority: ReviewPriority
    assigned_to: Optional[str] = None
    assigned_at: Optional[datetime] = None
    sla_deadline: datetime
    resolution: Optional[ReviewResolution] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def is_overdue(self, now: datetime) -> bool:
        return now > self.sla_deadline and self.status in OPEN_REVIEW_STATUSES
