"""SQLite-backed storage for safety checks and review queue items.

Every mutating method is a single conditional ``UPDATE ... WHERE id = ? AND
status = ?`` so that a concurrent writer who changed the status first makes
the update a no-op (``False`` return) instead of silently overwriting.
Callers decide whether that means "not found" or "lost the race".
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from clinisafe.errors import PersistenceError
from clinisafe.models import (
    OPEN_REVIEW_STATUSES,
    OverrideReason,
    ReviewPriority,
    ReviewQueueItem,
    ReviewQueueStatus,
    ReviewResolution,
    SafetyCheck,
    SafetyCheckStatus,
    SafetyCheckType,
    SafetyOverride,
    SafetySeverity,
)

logger = logging.getLogger(__name__)

# (created_at, id) keyset position used by cursors
PagePosition = tuple[datetime, str]

_SAFETY_CHECK_COLUMNS = """
    id, patient_id, encounter_id, check_type,
    trigger_medication_code, trigger_condition_code,
    status, severity, title, description, clinical_rationale,
    related_medications, related_conditions, related_allergies, guideline_references,
    override_reason, override_justification, overridden_by, overridden_at,
    override_expires_at, created_at, updated_at
"""

_REVIEW_COLUMNS = """
    id, patient_id, safety_check_id, recommendation_id, status, priority,
    assigned_to, assigned_at, sla_deadline,
    resolved_by, resolved_at, resolution_decision, resolution_notes, escalation_reason,
    created_at, updated_at
"""

_SAFETY_CHECK_FILTERS = ("patient_id", "encounter_id", "check_type", "status", "severity")
_REVIEW_FILTERS = ("patient_id", "assigned_to", "status", "priority")


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Serialize a timestamp as fixed-width UTC ISO-8601."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _db_value(value: Any) -> Any:
    if hasattr(value, "value"):
        return value.value
    if isinstance(value, datetime):
        return to_db_time(value)
    return value


def _row_to_safety_check(row: sqlite3.Row) -> SafetyCheck:
    override = None
    if row["override_reason"] is not None:
        override = SafetyOverride(
            reason=OverrideReason(row["override_reason"]),
            justification=row["override_justification"],
            overridden_by=row["overridden_by"],
            overridden_at=from_db_time(row["overridden_at"]),
            expires_at=from_db_time(row["override_expires_at"]),
        )
    return SafetyCheck(
        id=row["id"],
        patient_id=row["patient_id"],
        encounter_id=row["encounter_id"],
        check_type=SafetyCheckType(row["check_type"]),
        trigger_medication_code=row["trigger_medication_code"],
        trigger_condition_code=row["trigger_condition_code"],
        status=SafetyCheckStatus(row["status"]),
        severity=SafetySeverity(row["severity"]),
        title=row["title"],
        description=row["description"],
        clinical_rationale=row["clinical_rationale"],
        related_medications=json.loads(row["related_medications"]),
        related_conditions=json.loads(row["related_conditions"]),
        related_allergies=json.loads(row["related_allergies"]),
        guideline_references=json.loads(row["guideline_references"]),
        override=override,
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )


def _row_to_review_item(row: sqlite3.Row) -> ReviewQueueItem:
    resolution = None
    if row["resolved_at"] is not None:
        resolution = ReviewResolution(
            resolved_by=row["resolved_by"],
            resolved_at=from_db_time(row["resolved_at"]),
            decision=ReviewQueueStatus(row["resolution_decision"]),
            notes=row["resolution_notes"],
            escalation_reason=row["escalation_reason"],
        )
    return ReviewQueueItem(
        id=row["id"],
        patient_id=row["patient_id"],
        safety_check_id=row["safety_check_id"],
        recommendation_id=row["recommendation_id"],
        status=ReviewQueueStatus(row["status"]),
        priority=ReviewPriority(row["priority"]),
        assigned_to=row["assigned_to"],
        assigned_at=from_db_time(row["assigned_at"]),
        sla_deadline=from_db_time(row["sla_deadline"]),
        resolution=resolution,
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )


class SafetyStore:
    """SQLite storage for the ``safety_checks`` and ``review_queue`` tables."""

    def __init__(self, db_path: str | None = None):
        """Initialize the store.

        Args:
            db_path: Path to the SQLite database.  Defaults to the
                     CLINISAFE_DATABASE_PATH env var or ~/.clinisafe/safety.db
        """
        if db_path:
            self.db_path = os.path.expanduser(db_path)
        else:
            self.db_path = os.path.expanduser(
                os.environ.get("CLINISAFE_DATABASE_PATH", "~/.clinisafe/safety.db")
            )

        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._init_db()

    def _init_db(self) -> None:
        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path) as f:
            schema = f.read()

        with self._connect() as conn:
            conn.executescript(schema)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success, and always close it.

        Any ``sqlite3.Error`` is re-raised as ``PersistenceError`` so the
        caller never reports success for a write that did not happen.
        """
        try:
            conn = sqlite3.connect(self.db_path, timeout=10)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(f"Database operation failed: {e}")
            raise PersistenceError(str(e)) from e
        finally:
            conn.close()

    # Paging

    @staticmethod
    def _where(filters: dict[str, Any], allowed: tuple[str, ...]) -> tuple[list[str], list[Any]]:
        clauses, params = [], []
        for name in allowed:
            value = filters.get(name)
            if value is not None:
                clauses.append(f"{name} = ?")
                params.append(_db_value(value))
        return clauses, params

    def _page(
        self,
        table: str,
        columns: str,
        clauses: list[str],
        params: list[Any],
        first: int,
        after: Optional[PagePosition],
        descending: bool,
    ) -> tuple[list[sqlite3.Row], bool, int]:
        where = " AND ".join(clauses) if clauses else "1=1"

        page_clauses = list(clauses)
        page_params = list(params)
        if after is not None:
            op = "<" if descending else ">"
            page_clauses.append(f"(created_at {op} ? OR (created_at = ? AND id {op} ?))")
            after_ts = to_db_time(after[0])
            page_params.extend([after_ts, after_ts, after[1]])
        page_where = " AND ".join(page_clauses) if page_clauses else "1=1"
        direction = "DESC" if descending else "ASC"

        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {columns} FROM {table} WHERE {page_where} "
                f"ORDER BY created_at {direction}, id {direction} LIMIT ?",
                (*page_params, first + 1),
            ).fetchall()
            total = conn.execute(
                f"SELECT COUNT(*) FROM {table} WHERE {where}", params
            ).fetchone()[0]

        return rows[:first], len(rows) > first, total

    # Safety checks

    @staticmethod
    def _insert_check_row(conn: sqlite3.Connection, check: SafetyCheck) -> None:
        override = check.override
        conn.execute(
            f"INSERT INTO safety_checks ({_SAFETY_CHECK_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                check.id, check.patient_id, check.encounter_id, check.check_type.value,
                check.trigger_medication_code, check.trigger_condition_code,
                check.status.value, check.severity.value,
                check.title, check.description, check.clinical_rationale,
                json.dumps(check.related_medications),
                json.dumps(check.related_conditions),
                json.dumps(check.related_allergies),
                json.dumps(check.guideline_references),
                override.reason.value if override else None,
                override.justification if override else None,
                override.overridden_by if override else None,
                to_db_time(override.overridden_at) if override else None,
                to_db_time(override.expires_at) if override else None,
                to_db_time(check.created_at), to_db_time(check.updated_at),
            ),
        )

    def insert_safety_check(self, check: SafetyCheck) -> None:
        with self._connect() as conn:
            self._insert_check_row(conn, check)

    def insert_check_with_review(self, check: SafetyCheck, item: ReviewQueueItem) -> None:
        """Write a check and its review item in one transaction; neither is kept if either fails."""
        with self._connect() as conn:
            self._insert_check_row(conn, check)
            self._insert_review_row(conn, item)

    def get_safety_check(self, check_id: str) -> SafetyCheck | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SAFETY_CHECK_COLUMNS} FROM safety_checks WHERE id = ?",
                (check_id,),
            ).fetchone()
        return _row_to_safety_check(row) if row else None

    def query_safety_checks(
        self,
        filters: dict[str, Any],
        first: int,
        after: Optional[PagePosition] = None,
    ) -> tuple[list[SafetyCheck], bool, int]:
        """Newest-first page of safety checks matching ``filters``."""
        clauses, params = self._where(filters, _SAFETY_CHECK_FILTERS)
        rows, has_next, total = self._page(
            "safety_checks", _SAFETY_CHECK_COLUMNS, clauses, params, first, after,
            descending=True,
        )
        return [_row_to_safety_check(r) for r in rows], has_next, total

    def active_alerts(self, patient_id: str) -> list[SafetyCheck]:
        """FLAGGED/BLOCKED checks of CRITICAL or CONTRAINDICATED severity, worst first."""
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SAFETY_CHECK_COLUMNS} FROM safety_checks
                WHERE patient_id = ?
                  AND status IN ('FLAGGED', 'BLOCKED')
                  AND severity IN ('CRITICAL', 'CONTRAINDICATED')
                ORDER BY CASE severity WHEN 'CONTRAINDICATED' THEN 0 ELSE 1 END,
                         created_at DESC, id DESC
                """,
                (patient_id,),
            ).fetchall()
        return [_row_to_safety_check(r) for r in rows]

    def apply_override(
        self,
        check_id: str,
        expected_status: SafetyCheckStatus,
        override: SafetyOverride,
        updated_at: datetime,
    ) -> bool:
        """Set OVERRIDDEN plus override metadata if the status is still ``expected_status``."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE safety_checks
                SET status = ?, override_reason = ?, override_justification = ?,
                    overridden_by = ?, overridden_at = ?, override_expires_at = ?,
                    updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    SafetyCheckStatus.OVERRIDDEN.value,
                    override.reason.value,
                    override.justification,
                    override.overridden_by,
                    to_db_time(override.overridden_at),
                    to_db_time(override.expires_at),
                    to_db_time(updated_at),
                    check_id,
                    expected_status.value,
                ),
            )
            return cursor.rowcount > 0

    # Review queue

    @staticmethod
    def _insert_review_row(conn: sqlite3.Connection, item: ReviewQueueItem) -> None:
        conn.execute(
            f"INSERT INTO review_queue ({_REVIEW_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                item.id, item.patient_id, item.safety_check_id, item.recommendation_id,
                item.status.value, item.priority.value,
                item.assigned_to, to_db_time(item.assigned_at),
                to_db_time(item.sla_deadline),
                None, None, None, None, None,
                to_db_time(item.created_at), to_db_time(item.updated_at),
            ),
        )

    def insert_review_item(self, item: ReviewQueueItem) -> None:
        with self._connect() as conn:
            self._insert_review_row(conn, item)

    def get_review_item(self, item_id: str) -> ReviewQueueItem | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_REVIEW_COLUMNS} FROM review_queue WHERE id = ?",
                (item_id,),
            ).fetchone()
        return _row_to_review_item(row) if row else None

    def get_review_item_for_check(self, safety_check_id: str) -> ReviewQueueItem | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_REVIEW_COLUMNS} FROM review_queue WHERE safety_check_id = ?",
                (safety_check_id,),
            ).fetchone()
        return _row_to_review_item(row) if row else None

    def query_review_items(
        self,
        filters: dict[str, Any],
        first: int,
        after: Optional[PagePosition] = None,
        overdue_at: Optional[datetime] = None,
    ) -> tuple[list[ReviewQueueItem], bool, int]:
        """Oldest-first page of review items.

        ``overdue_at`` restricts the page to open items whose deadline is
        before that instant.
        """
        clauses, params = self._where(filters, _REVIEW_FILTERS)
        if overdue_at is not None:
            open_statuses = sorted(s.value for s in OPEN_REVIEW_STATUSES)
            clauses.append(f"sla_deadline < ? AND status IN ({', '.join('?' for _ in open_statuses)})")
            params.extend([to_db_time(overdue_at), *open_statuses])
        rows, has_next, total = self._page(
            "review_queue", _REVIEW_COLUMNS, clauses, params, first, after,
            descending=False,
        )
        return [_row_to_review_item(r) for r in rows], has_next, total

    def update_review_item(
        self,
        item_id: str,
        expected_status: ReviewQueueStatus,
        changes: dict[str, Any],
    ) -> bool:
        """Apply column ``changes`` if the item's status is still ``expected_status``."""
        assignments = ", ".join(f"{column} = ?" for column in changes)
        values = [_db_value(v) for v in changes.values()]
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE review_queue SET {assignments} WHERE id = ? AND status = ?",
                (*values, item_id, expected_status.value),
            )
            return cursor.rowcount > 0
