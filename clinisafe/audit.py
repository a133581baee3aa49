"""
Append-Only, Tamper-Evident Audit Log (Hash-Chained).

Every safety decision -- a check being recorded, a check being overridden,
a review item being enqueued, assigned, resolved or escalated, and every
degraded validation batch -- is appended here as a structured entry.
Entries are linked by a SHA-256 hash chain: modifying any entry after the
fact breaks ``verify_chain()``.

The log is process-local.  It complements, not replaces, the persisted
``safety_checks`` and ``review_queue`` tables, which remain the system of
record for current state.

**Patient scoping:**  Queries and exports are always scoped by
``patient_id``.  ``"*"`` is used as the patient for process-wide events
such as a validator outage that affects no single patient.
"""

from __future__ import annotations

import enum
import hashlib
import json
import re
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


SYSTEM_ACTOR = "SYSTEM"
ALL_PATIENTS = "*"


# ---------------------------------------------------------------------------
# Audit event types
# ---------------------------------------------------------------------------

class AuditEventType(str, enum.Enum):
    """Enumeration of all auditable events."""

    # Validation
    VALIDATION_DEGRADED = "VALIDATION_DEGRADED"
    VALIDATION_ITEM_FAILED = "VALIDATION_ITEM_FAILED"

    # Safety check ledger
    SAFETY_CHECK_RECORDED = "SAFETY_CHECK_RECORDED"
    SAFETY_CHECK_OVERRIDDEN = "SAFETY_CHECK_OVERRIDDEN"

    # Review queue
    REVIEW_ENQUEUED = "REVIEW_ENQUEUED"
    REVIEW_ASSIGNED = "REVIEW_ASSIGNED"
    REVIEW_RESOLVED = "REVIEW_RESOLVED"
    REVIEW_ESCALATED = "REVIEW_ESCALATED"

    # Audit operations
    AUDIT_EXPORTED = "AUDIT_EXPORTED"


# ---------------------------------------------------------------------------
# Audit entry model
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """A single audit log entry."""

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    patient_id: str = Field(
        ...,
        description="Patient this event concerns, or '*' for process-wide events.",
    )
    actor_id: str = Field(..., description="User ID of the actor, or SYSTEM.")
    event_type: AuditEventType
    target_entity: str = Field(
        default="",
        description="Identifier of the safety check or review queue item.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)
    previous_hash: str = Field(
        default="",
        description="SHA-256 of the previous entry; empty for the first entry.",
    )

    def canonical_bytes(self) -> bytes:
        """Deterministic byte representation used for hashing."""
        return json.dumps(self.model_dump(mode="json"), sort_keys=True).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()

    def matches(
        self,
        patient_id: str,
        event_type: Optional[AuditEventType],
        time_start: Optional[datetime],
        time_end: Optional[datetime],
        actor_id: Optional[str],
        target_entity: Optional[str],
    ) -> bool:
        if self.patient_id != patient_id:
            return False
        if time_start is not None and self.timestamp < time_start:
            return False
        if time_end is not None and self.timestamp > time_end:
            return False
        wanted = {
            "event_type": event_type,
            "actor_id": actor_id,
            "target_entity": target_entity,
        }
        return all(v is None or getattr(self, k) == v for k, v in wanted.items())


# ---------------------------------------------------------------------------
# PHI redaction
# ---------------------------------------------------------------------------

# Free-text scrubbers, applied in order.
_TEXT_SCRUBBERS: tuple[tuple[re.Pattern, str], ...] = (
    (re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[REDACTED-SSN]"),
    (re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"), "[REDACTED-PHONE]"),
    (re.compile(r"\b[\w.%+-]+@[\w-]+(?:\.[\w-]+)*\.[A-Za-z]{2,}\b"), "[REDACTED-EMAIL]"),
)

# Metadata keys whose values are dropped outright.
_IDENTIFYING_KEYS = frozenset({
    "name", "full_name", "first_name", "last_name", "dob", "date_of_birth",
    "ssn", "mrn", "email", "phone", "address", "zip_code",
})


def _scrub(value: Any) -> Any:
    if isinstance(value, str):
        for pattern, marker in _TEXT_SCRUBBERS:
            value = pattern.sub(marker, value)
        return value
    if isinstance(value, dict):
        return redact_phi_from_metadata(value)
    if isinstance(value, list):
        return [_scrub(v) for v in value]
    return value


def redact_phi_from_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Replace PHI-looking keys and values with ``[REDACTED]`` markers.

    Free-text fields such as override justifications and review notes are
    the usual carriers; they are scanned rather than dropped so the export
    stays useful for review.
    """
    return {
        key: "[REDACTED]" if key.lower() in _IDENTIFYING_KEYS else _scrub(value)
        for key, value in metadata.items()
    }


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only audit log with SHA-256 hash chaining.

    There are no ``update()`` or ``delete()`` methods.  Appends are
    serialized with a lock because validation batches record from worker
    threads.
    """

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._hashes: list[str] = []
        self._lock = threading.Lock()

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Append an entry, linking it to the previous one."""
        with self._lock:
            entry.previous_hash = self._hashes[-1] if self._hashes else ""
            self._entries.append(entry)
            self._hashes.append(entry.compute_hash())
        return entry

    def record(
        self,
        event_type: AuditEventType,
        patient_id: str,
        target_entity: str = "",
        actor_id: str = SYSTEM_ACTOR,
        metadata: dict | None = None,
    ) -> AuditEntry:
        """Build and append an entry in one call."""
        return self.append(AuditEntry(
            patient_id=patient_id,
            actor_id=actor_id,
            event_type=event_type,
            target_entity=target_entity,
            metadata=metadata or {},
        ))

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Recompute every hash and check each entry's back-link.

        Returns:
            ``(valid, broken_at)`` where ``broken_at`` is the index of the
            first entry that fails, or None.
        """
        expected_previous = ""
        for index, (entry, stored_hash) in enumerate(zip(self._entries, self._hashes)):
            current = entry.compute_hash()
            if entry.previous_hash != expected_previous or current != stored_hash:
                return False, index
            expected_previous = current
        return True, None

    def query(
        self,
        patient_id: str,
        event_type: Optional[AuditEventType] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
        actor_id: Optional[str] = None,
        target_entity: Optional[str] = None,
    ) -> list[AuditEntry]:
        """Entries for one patient, oldest first.  Returns deep copies."""
        return [
            entry.model_copy(deep=True)
            for entry in self._entries
            if entry.matches(patient_id, event_type, time_start, time_end, actor_id, target_entity)
        ]

    def export_for_review(
        self,
        patient_id: str,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """JSON-serializable, PHI-redacted export of one patient's entries."""
        entries = []
        for entry in self.query(patient_id, time_start=time_start, time_end=time_end):
            dumped = entry.model_dump(mode="json")
            dumped["metadata"] = redact_phi_from_metadata(dumped["metadata"])
            entries.append(dumped)

        valid, broken_at = self.verify_chain()
        return {
            "export_metadata": {
                "patient_id": patient_id,
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "entry_count": len(entries),
                "chain_integrity": "VALID" if valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "entries": entries,
        }

    def __len__(self) -> int:
        return len(self._entries)
