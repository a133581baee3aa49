"""
Validation Orchestrator -- Batch Validation to Partitioned Safety Checks.

Drives the ML validator over every recommendation proposed for one patient
and turns the answers into safety checks:

    1. Probe validator health.  Unhealthy means an empty, successful
       outcome: clinicians are never blocked by a validator outage.
    2. Validate each recommendation independently on a bounded thread
       pool.  Clean passes (no alert, HIGH_CONFIDENCE) are recorded as
       details only; everything else is classified into a SafetyCheck.
    3. Partition the checks into blockers (BLOCKED), warnings (FLAGGED or
       PENDING) and passed (everything else).
    4. A failure on one item is logged, audited and skipped; the other
       items' results are kept.

When a ledger and review queue are wired in, each generated check is
persisted and, where it needs human attention, enqueued for review.
Persistence failures are not absorbed: an outcome is never returned for
checks that were not written.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Optional, Protocol

from pydantic import BaseModel, Field

from clinisafe.audit import ALL_PATIENTS, AuditEventType, AuditLog
from clinisafe.classifier import classify, infer_severity, requires_review
from clinisafe.errors import ValidatorError
from clinisafe.ledger import SafetyCheckLedger
from clinisafe.models import (
    GuidelineInfo,
    PatientContext,
    Recommendation,
    ReviewQueueItem,
    SafetyCheck,
    SafetyCheckStatus,
    SafetyCheckType,
    SafetySeverity,
    ValidationResult,
    ValidationTier,
    utc_now,
)
from clinisafe.review_queue import ReviewQueue

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 4

VALIDATOR_UNAVAILABLE_MESSAGE = "Validator unavailable - contraindication check skipped"
CONTRAINDICATION_ERROR_MESSAGE = "Error during contraindication check"


class Validator(Protocol):
    """What the orchestrator needs from a validator client."""

    def health_check(self) -> bool: ...

    def validate_recommendation(
        self,
        patient_context: PatientContext,
        recommendation: Recommendation,
        guideline: Optional[GuidelineInfo] = None,
    ) -> ValidationResult: ...

    def validate_batch(
        self,
        patient_context: PatientContext,
        recommendations: list[Recommendation],
        guideline: Optional[GuidelineInfo] = None,
    ) -> list[ValidationResult | ValidatorError]: ...


# ---------------------------------------------------------------------------
# Outcome models
# ---------------------------------------------------------------------------

class ValidationDetail(BaseModel):
    """Per-recommendation record of what the validator said."""

    recommendation_id: Optional[str] = None
    recommendation_text: str
    validation_result: ValidationResult
    generated_check: Optional[SafetyCheck] = Field(
        default=None,
        description="Absent for clean passes and for checks outside the requested types.",
    )


class ValidationOutcome(BaseModel):
    """Partitioned result of one validation batch.

    Every check in ``checks`` appears in exactly one of ``blockers``,
    ``warnings`` or ``passed``.
    """

    checks: list[SafetyCheck] = Field(default_factory=list)
    blockers: list[SafetyCheck] = Field(default_factory=list)
    warnings: list[SafetyCheck] = Field(default_factory=list)
    passed: list[SafetyCheck] = Field(default_factory=list)
    validation_details: list[ValidationDetail] = Field(default_factory=list)
    review_items: list[ReviewQueueItem] = Field(default_factory=list)
    degraded: bool = Field(
        default=False,
        description="True when the validator was unavailable and nothing was checked.",
    )


class AnomalyDetail(BaseModel):
    recommendation_text: str
    anomaly_score: float
    deviation_factors: list[str] = Field(default_factory=list)


class AnomalyReport(BaseModel):
    anomalies: list[SafetyCheck] = Field(default_factory=list)
    details: list[AnomalyDetail] = Field(default_factory=list)


class ContraindicationResult(BaseModel):
    has_contraindication: bool
    severity: SafetySeverity
    details: Optional[str] = None
    alternative_recommendation: Optional[str] = None


def partition(checks: list[SafetyCheck]) -> tuple[list[SafetyCheck], list[SafetyCheck], list[SafetyCheck]]:
    """Split checks into ``(blockers, warnings, passed)`` by status."""
    blockers, warnings, passed = [], [], []
    for check in checks:
        if check.status == SafetyCheckStatus.BLOCKED:
            blockers.append(check)
        elif check.status in (SafetyCheckStatus.FLAGGED, SafetyCheckStatus.PENDING):
            warnings.append(check)
        else:
            passed.append(check)
    return blockers, warnings, passed


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class ValidationOrchestrator:
    """Runs recommendations through the validator and classifies the results.

    Args:
        validator: A ``ValidatorClient`` or anything with the same methods.
        ledger: Where generated checks are recorded.  Optional; without it
            checks are returned but not persisted.
        queue: Where checks needing review are enqueued.  Only used when a
            ledger is also configured, since an item references a stored check.
        audit_log: Receives degraded-mode and per-item failure events.
        max_concurrency: Upper bound on in-flight validator calls per batch.
        clock: Timestamp source for generated checks.
    """

    def __init__(
        self,
        validator: Validator,
        ledger: Optional[SafetyCheckLedger] = None,
        queue: Optional[ReviewQueue] = None,
        audit_log: Optional[AuditLog] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._validator = validator
        self._ledger = ledger
        self._queue = queue
        self._audit_log = audit_log if audit_log is not None else AuditLog()
        self._max_concurrency = max_concurrency
        self._clock = clock

    # -- helpers --

    def _validate_one(
        self,
        patient_id: str,
        patient_context: PatientContext,
        recommendation: Recommendation,
        guideline: Optional[GuidelineInfo],
    ) -> Optional[ValidationResult]:
        try:
            return self._validator.validate_recommendation(
                patient_context, recommendation, guideline
            )
        except ValidatorError as e:
            logger.error(
                f"Validation failed for recommendation "
                f"{recommendation.id or recommendation.text!r}: {e}"
            )
            self._audit_log.record(
                AuditEventType.VALIDATION_ITEM_FAILED,
                patient_id=patient_id,
                target_entity=recommendation.id or "",
                metadata={"recommendation_type": recommendation.type.value, "error": str(e)},
            )
            return None

    def _record_degraded(self, patient_id: str, operation: str) -> None:
        logger.warning(f"ML validator is not available; {operation} skipped for patient {patient_id}")
        self._audit_log.record(
            AuditEventType.VALIDATION_DEGRADED,
            patient_id=patient_id or ALL_PATIENTS,
            metadata={"operation": operation},
        )

    # -- operations --

    def validate_and_generate_checks(
        self,
        patient_id: str,
        patient_context: PatientContext,
        recommendations: list[Recommendation],
        encounter_id: Optional[str] = None,
        check_types: Optional[list[SafetyCheckType]] = None,
        guideline: Optional[GuidelineInfo] = None,
    ) -> ValidationOutcome:
        """Validate every recommendation and build the partitioned outcome.

        Args:
            patient_id: Patient the recommendations are for.
            patient_context: Clinical context sent with every request.
            recommendations: Recommendations to validate, in caller order.
            encounter_id: Optional encounter stamped on generated checks.
            check_types: When given, only checks of these types are emitted.
            guideline: Optional guideline provenance forwarded to the validator.

        Returns:
            A ``ValidationOutcome``.  ``validation_details`` follows input
            order, minus items whose validation failed.
        """
        if not self._validator.health_check():
            self._record_degraded(patient_id, "validation")
            return ValidationOutcome(degraded=True)

        if not recommendations:
            return ValidationOutcome()

        workers = min(self._max_concurrency, len(recommendations))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="clinisafe-validate") as pool:
            results = list(pool.map(
                lambda rec: self._validate_one(patient_id, patient_context, rec, guideline),
                recommendations,
            ))

        wanted = set(check_types) if check_types else None
        outcome = ValidationOutcome()

        for recommendation, result in zip(recommendations, results):
            if result is None:
                continue

            check = None
            if not result.is_clean_pass():
                check = classify(
                    patient_id,
                    recommendation,
                    result,
                    patient_context,
                    encounter_id=encounter_id,
                    now=self._clock(),
                )
                if wanted is not None and check.check_type not in wanted:
                    if check.status != SafetyCheckStatus.PASSED:
                        logger.warning(
                            f"Dropping {check.status.value} {check.check_type.value} verdict for "
                            f"recommendation {recommendation.id or recommendation.text!r}: "
                            f"type not in requested check types"
                        )
                    check = None

            if check is not None:
                if self._ledger is not None:
                    item = None
                    if self._queue is not None and requires_review(check, result):
                        item = self._queue.new_item(check, recommendation_id=recommendation.id)
                    self._ledger.record(check, review_item=item)
                    if item is not None:
                        self._queue.announce(item)
                        outcome.review_items.append(item)
                outcome.checks.append(check)

            outcome.validation_details.append(ValidationDetail(
                recommendation_id=recommendation.id,
                recommendation_text=recommendation.text,
                validation_result=result,
                generated_check=check,
            ))

        outcome.blockers, outcome.warnings, outcome.passed = partition(outcome.checks)
        logger.info(
            f"Validated {len(recommendations)} recommendations for patient {patient_id}: "
            f"{len(outcome.blockers)} blocked, {len(outcome.warnings)} warnings, "
            f"{len(outcome.passed)} passed, "
            f"{len(recommendations) - len(outcome.validation_details)} failed"
        )
        return outcome

    def detect_anomalies(
        self,
        patient_id: str,
        patient_context: PatientContext,
        recommendations: list[Recommendation],
        encounter_id: Optional[str] = None,
    ) -> AnomalyReport:
        """One batch call; only anomalous results become checks.

        Anomaly checks are returned, not persisted.  A failed batch call
        yields an empty report; a malformed element is audited and skipped
        while the rest of the batch is still classified.
        """
        if not self._validator.health_check():
            self._record_degraded(patient_id, "anomaly detection")
            return AnomalyReport()

        try:
            results = self._validator.validate_batch(patient_context, recommendations)
        except ValidatorError as e:
            logger.error(f"Batch anomaly detection failed for patient {patient_id}: {e}")
            self._audit_log.record(
                AuditEventType.VALIDATION_ITEM_FAILED,
                patient_id=patient_id,
                metadata={"operation": "anomaly detection", "error": str(e)},
            )
            return AnomalyReport()

        report = AnomalyReport()
        for recommendation, result in zip(recommendations, results):
            if isinstance(result, ValidatorError):
                logger.error(
                    f"Skipping anomaly result for recommendation "
                    f"{recommendation.id or recommendation.text!r}: {result}"
                )
                self._audit_log.record(
                    AuditEventType.VALIDATION_ITEM_FAILED,
                    patient_id=patient_id,
                    target_entity=recommendation.id or "",
                    metadata={
                        "operation": "anomaly detection",
                        "recommendation_type": recommendation.type.value,
                        "error": str(result),
                    },
                )
                continue
            if not result.is_anomaly:
                continue
            report.anomalies.append(classify(
                patient_id,
                recommendation,
                result,
                patient_context,
                encounter_id=encounter_id,
                now=self._clock(),
            ))
            report.details.append(AnomalyDetail(
                recommendation_text=recommendation.text,
                anomaly_score=result.anomaly_score,
                deviation_factors=result.deviation_factors,
            ))
        return report

    def check_contraindications(
        self,
        patient_context: PatientContext,
        recommendation: Recommendation,
        patient_id: str = ALL_PATIENTS,
    ) -> ContraindicationResult:
        """Ask the validator whether a single recommendation is contraindicated.

        Never raises for validator trouble; an unavailable or failing
        validator yields ``has_contraindication=False`` at INFO severity with
        an explanatory message.
        """
        if not self._validator.health_check():
            self._record_degraded(patient_id, "contraindication check")
            return ContraindicationResult(
                has_contraindication=False,
                severity=SafetySeverity.INFO,
                details=VALIDATOR_UNAVAILABLE_MESSAGE,
            )

        try:
            result = self._validator.validate_recommendation(patient_context, recommendation)
        except ValidatorError as e:
            logger.error(f"Error checking contraindications: {e}")
            return ContraindicationResult(
                has_contraindication=False,
                severity=SafetySeverity.INFO,
                details=CONTRAINDICATION_ERROR_MESSAGE,
            )

        contraindicated = not result.is_valid and (
            result.validation_tier == ValidationTier.BLOCKED
            or any("contraindic" in f.lower() for f in result.deviation_factors)
        )
        return ContraindicationResult(
            has_contraindication=contraindicated,
            severity=infer_severity(result.alert_level),
            details=result.alert_message or None,
            alternative_recommendation=result.alternative_recommendation,
        )
