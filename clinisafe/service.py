"""
Safety Service -- Query and Mutation Surface.

The entry point the rest of the platform calls.  Every operation takes the
calling ``Actor`` first, checks the actor's role against the RBAC table,
validates its input with a pydantic model, and then delegates to the
ledger, review queue or orchestrator.

**Errors seen by callers:**

* ``InputValidationError`` -- malformed input, short justification or
  escalation text, unknown enum value, bad cursor.
* ``NotFoundError``        -- a mutation or report targets an unknown id.
  Single-record queries return None instead.
* ``InvalidTransitionError`` / ``ConcurrentModificationError`` -- the
  record is not in a state that allows the operation.
* ``PermissionError``      -- the actor's role does not allow the action.
* ``PersistenceError``     -- a write failed; nothing was reported as done.

Validator outages never surface here: ``validate_safety`` then returns an
empty result with ``validator_available`` False.

**Pagination:** collections are returned as a ``Connection`` of edges with
opaque cursors.  A cursor is base64 of ``"<created_at ISO>|<id>"``, so
records sharing a timestamp still page in a stable order.
"""

from __future__ import annotations

import base64
import binascii
import logging
from datetime import datetime
from typing import Any, Callable, Optional, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from clinisafe.audit import AuditEventType, AuditLog
from clinisafe.config import DEFAULT_SETTINGS, ServiceSettings
from clinisafe.errors import InputValidationError
from clinisafe.ledger import SafetyCheckLedger
from clinisafe.models import (
    OverrideReason,
    PatientContext,
    Recommendation,
    ReviewPriority,
    ReviewQueueItem,
    ReviewQueueStatus,
    Role,
    SafetyCheck,
    SafetyCheckStatus,
    SafetyCheckType,
    SafetySeverity,
    utc_now,
)
from clinisafe.orchestrator import ValidationDetail, ValidationOrchestrator, Validator
from clinisafe.rbac import Action, require_permission
from clinisafe.review_queue import ReviewQueue
from clinisafe.review_report import generate_review_report
from clinisafe.store import PagePosition, SafetyStore
from clinisafe.validator_client import ValidatorClient

logger = logging.getLogger(__name__)

MIN_TEXT_LENGTH = 10

InputT = TypeVar("InputT", bound=BaseModel)


# ---------------------------------------------------------------------------
# Caller identity
# ---------------------------------------------------------------------------

class Actor(BaseModel):
    """The authenticated user behind a request."""

    user_id: str = Field(..., min_length=1)
    role: Role


# ---------------------------------------------------------------------------
# Cursors and connections
# ---------------------------------------------------------------------------

def encode_cursor(created_at: datetime, record_id: str) -> str:
    raw = f"{created_at.isoformat()}|{record_id}"
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> PagePosition:
    """Inverse of :func:`encode_cursor`.

    Raises:
        InputValidationError: If the cursor was not produced by this service.
    """
    try:
        raw = base64.b64decode(cursor.encode("ascii"), validate=True).decode("utf-8")
        timestamp, record_id = raw.split("|", 1)
        return datetime.fromisoformat(timestamp), record_id
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise InputValidationError(
            "Invalid pagination cursor",
            [{"loc": ["after"], "msg": str(e), "type": "cursor"}],
        ) from e


class PageInfo(BaseModel):
    has_next_page: bool
    has_previous_page: bool
    start_cursor: Optional[str] = None
    end_cursor: Optional[str] = None


class Edge(BaseModel):
    node: Any
    cursor: str


class Connection(BaseModel):
    edges: list[Edge]
    page_info: PageInfo
    total_count: int

    @property
    def nodes(self) -> list[Any]:
        return [edge.node for edge in self.edges]


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

class SafetyCheckFilter(BaseModel):
    patient_id: Optional[str] = None
    encounter_id: Optional[str] = None
    check_type: Optional[SafetyCheckType] = None
    status: Optional[SafetyCheckStatus] = None
    severity: Optional[SafetySeverity] = None


class ReviewQueueFilter(BaseModel):
    patient_id: Optional[str] = None
    assigned_to: Optional[str] = None
    status: Optional[ReviewQueueStatus] = None
    priority: Optional[ReviewPriority] = None


class ValidateSafetyInput(BaseModel):
    patient_id: str = Field(..., min_length=1)
    encounter_id: Optional[str] = None
    patient_context: PatientContext
    recommendations: list[Recommendation] = Field(..., min_length=1)
    check_types: Optional[list[SafetyCheckType]] = None


def _require_min_text(value: Optional[str], field: str) -> Optional[str]:
    if value is not None and len(value.strip()) < MIN_TEXT_LENGTH:
        raise ValueError(f"{field} must be at least {MIN_TEXT_LENGTH} characters")
    return value.strip() if value is not None else None


class OverrideSafetyCheckInput(BaseModel):
    check_id: str = Field(..., min_length=1)
    reason: OverrideReason
    justification: str
    expires_in_hours: Optional[float] = Field(default=None, gt=0)

    @field_validator("justification")
    @classmethod
    def justification_long_enough(cls, v: str) -> str:
        return _require_min_text(v, "Justification")


class AssignReviewInput(BaseModel):
    review_id: str = Field(..., min_length=1)
    assignee_id: Optional[str] = Field(
        default=None,
        description="Defaults to the calling user (self-assignment).",
    )


class ResolveReviewInput(BaseModel):
    review_id: str = Field(..., min_length=1)
    decision: ReviewQueueStatus
    notes: Optional[str] = None
    escalation_reason: Optional[str] = None

    @field_validator("decision")
    @classmethod
    def decision_is_terminal(cls, v: ReviewQueueStatus) -> ReviewQueueStatus:
        if v in (ReviewQueueStatus.PENDING_REVIEW, ReviewQueueStatus.IN_REVIEW):
            raise ValueError("Decision must be APPROVED, REJECTED or ESCALATED")
        return v

    @model_validator(mode="after")
    def escalation_needs_reason(self) -> "ResolveReviewInput":
        if self.decision == ReviewQueueStatus.ESCALATED:
            if self.escalation_reason is None:
                raise ValueError("Escalation reason is required when escalating")
            self.escalation_reason = _require_min_text(self.escalation_reason, "Escalation reason")
        return self


class EscalateReviewInput(BaseModel):
    review_id: str = Field(..., min_length=1)
    reason: str

    @field_validator("reason")
    @classmethod
    def reason_long_enough(cls, v: str) -> str:
        return _require_min_text(v, "Escalation reason")


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------

class ReviewQueueEntry(BaseModel):
    """A review item as seen by callers, with its derived overdue flag."""

    item: ReviewQueueItem
    is_overdue: bool
    safety_check: Optional[SafetyCheck] = None


class SafetyValidationResult(BaseModel):
    is_valid: bool
    requires_review: bool
    validator_available: bool = True
    checks: list[SafetyCheck] = Field(default_factory=list)
    blockers: list[SafetyCheck] = Field(default_factory=list)
    warnings: list[SafetyCheck] = Field(default_factory=list)
    passed: list[SafetyCheck] = Field(default_factory=list)
    validation_details: list[ValidationDetail] = Field(default_factory=list)
    review_queue_items: list[ReviewQueueItem] = Field(default_factory=list)


def _parse(model: type[InputT], data: Any) -> InputT:
    if isinstance(data, model):
        data = data.model_dump()
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise InputValidationError(
            f"Invalid {model.__name__}",
            e.errors(include_url=False, include_context=False),
        ) from e


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class SafetyService:
    """Wires the safety components together behind RBAC and input checks.

    All collaborators are passed in, so tests can run against a temporary
    database, a fake validator and a fixed clock.
    """

    def __init__(
        self,
        store: SafetyStore,
        validator: Validator,
        audit_log: Optional[AuditLog] = None,
        settings: ServiceSettings = DEFAULT_SETTINGS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.audit_log = audit_log if audit_log is not None else AuditLog()
        self._clock = clock
        self.ledger = SafetyCheckLedger(store, self.audit_log, clock=clock)
        self.queue = ReviewQueue(store, self.audit_log, clock=clock)
        self.orchestrator = ValidationOrchestrator(
            validator,
            ledger=self.ledger,
            queue=self.queue,
            audit_log=self.audit_log,
            max_concurrency=settings.max_concurrency,
            clock=clock,
        )

    @classmethod
    def from_settings(cls, settings: ServiceSettings) -> "SafetyService":
        return cls(
            store=SafetyStore(settings.database_path),
            validator=ValidatorClient.from_settings(settings),
            settings=settings,
        )

    # -- helpers --

    def _page_args(self, first: Optional[int], after: Optional[str]) -> tuple[int, Optional[PagePosition]]:
        if first is None:
            first = self.settings.default_page_size
        if first < 1:
            raise InputValidationError(
                "first must be a positive integer",
                [{"loc": ["first"], "msg": "must be >= 1", "type": "value_error"}],
            )
        first = min(first, self.settings.max_page_size)
        return first, decode_cursor(after) if after else None

    @staticmethod
    def _connection(
        nodes: list[Any],
        keys: list[tuple[datetime, str]],
        has_next: bool,
        total: int,
        paged: bool,
    ) -> Connection:
        edges = [
            Edge(node=node, cursor=encode_cursor(created_at, record_id))
            for node, (created_at, record_id) in zip(nodes, keys)
        ]
        return Connection(
            edges=edges,
            page_info=PageInfo(
                has_next_page=has_next,
                has_previous_page=paged,
                start_cursor=edges[0].cursor if edges else None,
                end_cursor=edges[-1].cursor if edges else None,
            ),
            total_count=total,
        )

    def _entry(self, item: ReviewQueueItem) -> ReviewQueueEntry:
        return ReviewQueueEntry(
            item=item,
            is_overdue=self.queue.is_overdue(item),
            safety_check=self.ledger.get(item.safety_check_id),
        )

    def _review_connection(self, page: tuple[list[ReviewQueueItem], bool, int], paged: bool) -> Connection:
        items, has_next, total = page
        return self._connection(
            [self._entry(item) for item in items],
            [(item.created_at, item.id) for item in items],
            has_next, total, paged,
        )

    # -- safety check queries --

    def safety_check(self, actor: Actor, check_id: str) -> SafetyCheck | None:
        require_permission(actor.role, Action.VIEW_SAFETY)
        return self.ledger.get(check_id)

    def safety_checks(
        self,
        actor: Actor,
        filter: SafetyCheckFilter | dict | None = None,
        first: Optional[int] = None,
        after: Optional[str] = None,
    ) -> Connection:
        require_permission(actor.role, Action.VIEW_SAFETY)
        filters = _parse(SafetyCheckFilter, filter or {})
        first, position = self._page_args(first, after)
        checks, has_next, total = self.ledger.find(filters.model_dump(), first, position)
        return self._connection(
            checks,
            [(c.created_at, c.id) for c in checks],
            has_next, total, position is not None,
        )

    def safety_checks_for_patient(
        self,
        actor: Actor,
        patient_id: str,
        status: SafetyCheckStatus | str | None = None,
        severity: SafetySeverity | str | None = None,
        first: Optional[int] = None,
        after: Optional[str] = None,
    ) -> Connection:
        """One patient's checks, optionally narrowed by status and severity."""
        if not patient_id:
            raise InputValidationError("patient_id is required")
        return self.safety_checks(
            actor,
            {"patient_id": patient_id, "status": status, "severity": severity},
            first,
            after,
        )

    def active_safety_alerts(self, actor: Actor, patient_id: str) -> list[SafetyCheck]:
        """FLAGGED/BLOCKED checks of CRITICAL or CONTRAINDICATED severity."""
        require_permission(actor.role, Action.VIEW_SAFETY)
        if not patient_id:
            raise InputValidationError("patient_id is required")
        return self.ledger.active_alerts(patient_id)

    # -- safety check mutations --

    def validate_safety(self, actor: Actor, data: ValidateSafetyInput | dict) -> SafetyValidationResult:
        """Run the orchestrator over a plan's recommendations.

        ``is_valid`` is True when nothing is blocked.  ``requires_review`` is
        True when something is blocked or a warning is CRITICAL.
        """
        require_permission(actor.role, Action.VALIDATE_SAFETY)
        request = _parse(ValidateSafetyInput, data)

        outcome = self.orchestrator.validate_and_generate_checks(
            request.patient_id,
            request.patient_context,
            request.recommendations,
            encounter_id=request.encounter_id,
            check_types=request.check_types,
        )
        critical_warning = any(
            w.severity == SafetySeverity.CRITICAL for w in outcome.warnings
        )
        return SafetyValidationResult(
            is_valid=not outcome.blockers,
            requires_review=bool(outcome.blockers) or critical_warning,
            validator_available=not outcome.degraded,
            checks=outcome.checks,
            blockers=outcome.blockers,
            warnings=outcome.warnings,
            passed=outcome.passed,
            validation_details=outcome.validation_details,
            review_queue_items=outcome.review_items,
        )

    def override_safety_check(self, actor: Actor, data: OverrideSafetyCheckInput | dict) -> SafetyCheck:
        require_permission(actor.role, Action.OVERRIDE_SAFETY_CHECK)
        request = _parse(OverrideSafetyCheckInput, data)
        return self.ledger.override(
            request.check_id,
            reason=request.reason,
            justification=request.justification,
            overridden_by=actor.user_id,
            expires_in_hours=request.expires_in_hours,
        )

    # -- review queue queries --

    def review_queue_item(self, actor: Actor, item_id: str) -> ReviewQueueEntry | None:
        require_permission(actor.role, Action.VIEW_SAFETY)
        item = self.queue.get(item_id)
        return self._entry(item) if item else None

    def review_queue(
        self,
        actor: Actor,
        filter: ReviewQueueFilter | dict | None = None,
        first: Optional[int] = None,
        after: Optional[str] = None,
    ) -> Connection:
        require_permission(actor.role, Action.VIEW_SAFETY)
        filters = _parse(ReviewQueueFilter, filter or {})
        first, position = self._page_args(first, after)
        return self._review_connection(
            self.queue.find(filters.model_dump(), first, position),
            position is not None,
        )

    def my_review_queue(
        self,
        actor: Actor,
        status: Optional[ReviewQueueStatus] = None,
        first: Optional[int] = None,
        after: Optional[str] = None,
    ) -> Connection:
        """Items assigned to the calling user."""
        require_permission(actor.role, Action.VIEW_SAFETY)
        first, position = self._page_args(first, after)
        return self._review_connection(
            self.queue.for_assignee(actor.user_id, first, position, status=status),
            position is not None,
        )

    def overdue_reviews(
        self,
        actor: Actor,
        first: Optional[int] = None,
        after: Optional[str] = None,
    ) -> Connection:
        require_permission(actor.role, Action.VIEW_SAFETY)
        first, position = self._page_args(first, after)
        return self._review_connection(self.queue.overdue(first, position), position is not None)

    # -- review queue mutations --

    def assign_review(self, actor: Actor, data: AssignReviewInput | dict) -> ReviewQueueEntry:
        require_permission(actor.role, Action.ASSIGN_REVIEW)
        request = _parse(AssignReviewInput, data)
        item = self.queue.assign(request.review_id, request.assignee_id or actor.user_id)
        return self._entry(item)

    def resolve_review(self, actor: Actor, data: ResolveReviewInput | dict) -> ReviewQueueEntry:
        request = _parse(ResolveReviewInput, data)
        if request.decision == ReviewQueueStatus.ESCALATED:
            require_permission(actor.role, Action.ESCALATE_REVIEW)
        else:
            require_permission(actor.role, Action.RESOLVE_REVIEW)
        item = self.queue.resolve(
            request.review_id,
            request.decision,
            resolved_by=actor.user_id,
            notes=request.notes,
            escalation_reason=request.escalation_reason,
        )
        return self._entry(item)

    def escalate_review(self, actor: Actor, data: EscalateReviewInput | dict) -> ReviewQueueEntry:
        require_permission(actor.role, Action.ESCALATE_REVIEW)
        request = _parse(EscalateReviewInput, data)
        item = self.queue.escalate(request.review_id, request.reason, escalated_by=actor.user_id)
        return self._entry(item)

    # -- reporting --

    def review_report(self, actor: Actor, check_id: str) -> dict[str, Any]:
        require_permission(actor.role, Action.VIEW_SAFETY)
        check = self.ledger.require(check_id)
        item = self.queue.for_check(check_id)
        return generate_review_report(check, item, now=self._clock()).to_dict()

    def export_audit(
        self,
        actor: Actor,
        patient_id: str,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """PHI-redacted audit export for one patient; the export is itself audited."""
        require_permission(actor.role, Action.EXPORT_AUDIT)
        if not patient_id:
            raise InputValidationError("patient_id is required")
        export = self.audit_log.export_for_review(patient_id, time_start, time_end)
        self.audit_log.record(
            AuditEventType.AUDIT_EXPORTED,
            patient_id=patient_id,
            actor_id=actor.user_id,
            metadata={"entry_count": export["export_metadata"]["entry_count"]},
        )
        logger.info(f"Audit export for patient {patient_id} by {actor.user_id}")
        return export
