"""
Review Queue -- Human Review of Safety Checks.

Every check that needs human attention (CRITICAL severity, BLOCKED status,
or a NEEDS_REVIEW validator tier) gets exactly one review queue item.  The
item's priority comes from the check's severity, and its SLA deadline is
computed once, at enqueue time, from that priority.  The deadline is never
recomputed.

**State machine:**

    PENDING_REVIEW -> IN_REVIEW -> APPROVED | REJECTED | ESCALATED

With direct escalation, which assigns the item to whoever escalates it:

    PENDING_REVIEW -> ESCALATED

Reassignment keeps an item IN_REVIEW.  APPROVED, REJECTED and ESCALATED are
terminal.  ``next_status()`` is the single place where transitions are
decided; every mutation is then written conditionally on the status that
was read, so an assign racing a resolve cannot produce a mixed record.

**Overdue** is never stored.  It is ``now > sla_deadline`` for an item that
is still PENDING_REVIEW or IN_REVIEW, evaluated on every read.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from clinisafe.audit import AuditEventType, AuditLog
from clinisafe.classifier import derive_priority
from clinisafe.errors import ConcurrentModificationError, InvalidTransitionError, NotFoundError
from clinisafe.models import (
    ReviewPriority,
    ReviewQueueItem,
    ReviewQueueStatus,
    SafetyCheck,
    utc_now,
)
from clinisafe.store import PagePosition, SafetyStore

logger = logging.getLogger(__name__)


# SLA per priority, in hours
SLA_HOURS: dict[ReviewPriority, int] = {
    ReviewPriority.P0_CRITICAL: 1,
    ReviewPriority.P1_HIGH: 4,
    ReviewPriority.P2_MEDIUM: 24,
    ReviewPriority.P3_LOW: 72,
}


class ReviewEvent(str, enum.Enum):
    """Operator actions that move a review item."""

    ASSIGN = "ASSIGN"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    ESCALATE = "ESCALATE"


# ---------------------------------------------------------------------------
# Valid state transitions
# ---------------------------------------------------------------------------

_TRANSITIONS: dict[ReviewQueueStatus, dict[ReviewEvent, ReviewQueueStatus]] = {
    ReviewQueueStatus.PENDING_REVIEW: {
        ReviewEvent.ASSIGN: ReviewQueueStatus.IN_REVIEW,
        ReviewEvent.ESCALATE: ReviewQueueStatus.ESCALATED,
    },
    ReviewQueueStatus.IN_REVIEW: {
        ReviewEvent.ASSIGN: ReviewQueueStatus.IN_REVIEW,
        ReviewEvent.APPROVE: ReviewQueueStatus.APPROVED,
        ReviewEvent.REJECT: ReviewQueueStatus.REJECTED,
        ReviewEvent.ESCALATE: ReviewQueueStatus.ESCALATED,
    },
    ReviewQueueStatus.APPROVED: {},  # terminal
    ReviewQueueStatus.REJECTED: {},  # terminal
    ReviewQueueStatus.ESCALATED: {},  # terminal
}

_EVENT_BY_DECISION: dict[ReviewQueueStatus, ReviewEvent] = {
    ReviewQueueStatus.APPROVED: ReviewEvent.APPROVE,
    ReviewQueueStatus.REJECTED: ReviewEvent.REJECT,
    ReviewQueueStatus.ESCALATED: ReviewEvent.ESCALATE,
}


def next_status(current: ReviewQueueStatus, event: ReviewEvent) -> ReviewQueueStatus:
    """Return the state reached from ``current`` on ``event``.

    Raises:
        InvalidTransitionError: If ``event`` is not allowed in ``current``.
    """
    allowed = _TRANSITIONS[current]
    if event not in allowed:
        raise InvalidTransitionError(
            f"Cannot {event.value.lower()} a review item in {current.value}. "
            f"Allowed events: {[e.value for e in allowed]}"
        )
    return allowed[event]


def sla_deadline(priority: ReviewPriority, created_at: datetime) -> datetime:
    return created_at + timedelta(hours=SLA_HOURS[priority])


# ---------------------------------------------------------------------------
# Review queue
# ---------------------------------------------------------------------------

class ReviewQueue:
    """Enqueues review items and applies operator transitions."""

    def __init__(
        self,
        store: SafetyStore,
        audit_log: AuditLog,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._audit_log = audit_log
        self._clock = clock

    # -- reads --

    def get(self, item_id: str) -> ReviewQueueItem | None:
        return self._store.get_review_item(item_id)

    def require(self, item_id: str) -> ReviewQueueItem:
        item = self._store.get_review_item(item_id)
        if item is None:
            raise NotFoundError("ReviewQueueItem", item_id)
        return item

    def for_check(self, safety_check_id: str) -> ReviewQueueItem | None:
        return self._store.get_review_item_for_check(safety_check_id)

    def find(
        self,
        filters: dict[str, Any],
        first: int,
        after: Optional[PagePosition] = None,
        overdue_only: bool = False,
    ) -> tuple[list[ReviewQueueItem], bool, int]:
        """Oldest-first page of items matching ``filters``."""
        return self._store.query_review_items(
            filters, first, after,
            overdue_at=self._clock() if overdue_only else None,
        )

    def overdue(
        self, first: int, after: Optional[PagePosition] = None
    ) -> tuple[list[ReviewQueueItem], bool, int]:
        return self.find({}, first, after, overdue_only=True)

    def for_assignee(
        self,
        user_id: str,
        first: int,
        after: Optional[PagePosition] = None,
        status: Optional[ReviewQueueStatus] = None,
    ) -> tuple[list[ReviewQueueItem], bool, int]:
        return self.find({"assigned_to": user_id, "status": status}, first, after)

    def is_overdue(self, item: ReviewQueueItem) -> bool:
        return item.is_overdue(self._clock())

    # -- lifecycle operations --

    def enqueue(
        self,
        check: SafetyCheck,
        recommendation_id: Optional[str] = None,
        priority: Optional[ReviewPriority] = None,
    ) -> ReviewQueueItem:
        """Create and store the review item for an already recorded check."""
        item = self.new_item(check, recommendation_id=recommendation_id, priority=priority)
        self._store.insert_review_item(item)
        self.announce(item)
        return item

    def new_item(
        self,
        check: SafetyCheck,
        recommendation_id: Optional[str] = None,
        priority: Optional[ReviewPriority] = None,
    ) -> ReviewQueueItem:
        """Build, without storing, the PENDING_REVIEW item for ``check``.

        The priority defaults to the one derived from the check's severity;
        the SLA deadline is frozen from it here.
        """
        priority = priority or derive_priority(check.severity)
        now = self._clock()
        return ReviewQueueItem(
            patient_id=check.patient_id,
            safety_check_id=check.id,
            recommendation_id=recommendation_id,
            status=ReviewQueueStatus.PENDING_REVIEW,
            priority=priority,
            sla_deadline=sla_deadline(priority, now),
            created_at=now,
            updated_at=now,
        )

    def announce(self, item: ReviewQueueItem) -> None:
        """Audit and log a review item that has just been stored."""
        self._audit_log.record(
            AuditEventType.REVIEW_ENQUEUED,
            patient_id=item.patient_id,
            target_entity=item.id,
            metadata={
                "safety_check_id": item.safety_check_id,
                "priority": item.priority.value,
                "sla_deadline": item.sla_deadline.isoformat(),
            },
        )
        logger.info(
            f"Enqueued review {item.id} ({item.priority.value}) for check "
            f"{item.safety_check_id}, due {item.sla_deadline.isoformat()}"
        )

    def _apply(
        self,
        item: ReviewQueueItem,
        event: ReviewEvent,
        changes: dict[str, Any],
    ) -> ReviewQueueItem:
        target = next_status(item.status, event)
        changes = {**changes, "status": target, "updated_at": self._clock()}
        if not self._store.update_review_item(item.id, item.status, changes):
            raise ConcurrentModificationError(
                f"Review item {item.id} changed while applying {event.value}"
            )
        return self.require(item.id)

    def assign(self, item_id: str, assignee: str) -> ReviewQueueItem:
        """Assign (or reassign) an open item; moves it to IN_REVIEW.

        Raises:
            NotFoundError: If the item does not exist.
            InvalidTransitionError: If the item is already resolved.
        """
        if not assignee:
            raise ValueError("Assignee is required.")

        item = self.require(item_id)
        now = self._clock()
        updated = self._apply(
            item,
            ReviewEvent.ASSIGN,
            {"assigned_to": assignee, "assigned_at": now},
        )

        self._audit_log.record(
            AuditEventType.REVIEW_ASSIGNED,
            patient_id=item.patient_id,
            target_entity=item.id,
            metadata={
                "assigned_to": assignee,
                "previous_assignee": item.assigned_to,
                "new_state": updated.status.value,
            },
        )
        logger.info(f"Review {item_id} assigned to {assignee}")
        return updated

    def resolve(
        self,
        item_id: str,
        decision: ReviewQueueStatus,
        resolved_by: str,
        notes: Optional[str] = None,
        escalation_reason: Optional[str] = None,
    ) -> ReviewQueueItem:
        """Close an item with APPROVED, REJECTED or ESCALATED.

        APPROVED and REJECTED require the item to be IN_REVIEW; ESCALATED is
        also accepted straight from PENDING_REVIEW.

        Raises:
            ValueError: If ``decision`` is not a terminal status, or an
                escalation has no reason.
            NotFoundError: If the item does not exist.
            InvalidTransitionError: If the item's state does not allow it.
        """
        event = _EVENT_BY_DECISION.get(decision)
        if event is None:
            raise ValueError(
                f"Decision must be one of {[d.value for d in _EVENT_BY_DECISION]}, "
                f"got {decision.value}"
            )
        if event == ReviewEvent.ESCALATE and not (escalation_reason or "").strip():
            raise ValueError("Escalation requires an escalation reason.")

        item = self.require(item_id)
        now = self._clock()
        changes: dict[str, Any] = {
            "resolved_by": resolved_by,
            "resolved_at": now,
            "resolution_decision": decision,
            "resolution_notes": notes,
            "escalation_reason": escalation_reason,
        }
        # A decided item always has an assignee.
        if item.assigned_to is None:
            changes.update(assigned_to=resolved_by, assigned_at=now)
        updated = self._apply(item, event, changes)

        self._audit_log.record(
            (
                AuditEventType.REVIEW_ESCALATED
                if event == ReviewEvent.ESCALATE
                else AuditEventType.REVIEW_RESOLVED
            ),
            patient_id=item.patient_id,
            target_entity=item.id,
            actor_id=resolved_by,
            metadata={
                "previous_state": item.status.value,
                "decision": decision.value,
                "notes": notes,
                "escalation_reason": escalation_reason,
                "overdue_at_resolution": item.is_overdue(now),
            },
        )
        logger.info(f"Review {item_id} resolved as {decision.value} by {resolved_by}")
        return updated

    def escalate(self, item_id: str, reason: str, escalated_by: str) -> ReviewQueueItem:
        """Escalate an open item.

        No prior assignment is required; an unassigned item is assigned to
        ``escalated_by``.
        """
        return self.resolve(
            item_id,
            ReviewQueueStatus.ESCALATED,
            resolved_by=escalated_by,
            escalation_reason=reason,
        )
