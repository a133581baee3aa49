"""Shared fixtures: a controllable clock, a scripted validator, a temp database."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from clinisafe.audit import AuditLog
from clinisafe.ledger import SafetyCheckLedger
from clinisafe.models import ValidationResult, ValidationTier
from clinisafe.review_queue import ReviewQueue
from clinisafe.store import SafetyStore


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeValidator:
    """Validator double keyed by recommendation text.

    ``responses`` maps text to a ``ValidationResult`` or an exception to
    raise.  Unknown texts get a clean pass.
    """

    def __init__(self, healthy: bool = True) -> None:
        self.healthy = healthy
        self.responses: dict[str, object] = {}
        self.batch_error: Exception | None = None
        self.validate_calls: list[str] = []
        self.batch_calls = 0
        self._lock = threading.Lock()

    def health_check(self) -> bool:
        return self.healthy

    def _answer(self, recommendation) -> ValidationResult:
        answer = self.responses.get(recommendation.text)
        if isinstance(answer, Exception):
            raise answer
        if answer is None:
            return ValidationResult(
                is_valid=True,
                confidence_score=0.97,
                validation_tier=ValidationTier.HIGH_CONFIDENCE,
            )
        return answer

    def validate_recommendation(self, patient_context, recommendation, guideline=None):
        with self._lock:
            self.validate_calls.append(recommendation.text)
        return self._answer(recommendation)

    def validate_batch(self, patient_context, recommendations, guideline=None):
        """Per-item exceptions are returned in their slot, as the real client does."""
        self.batch_calls += 1
        if self.batch_error is not None:
            raise self.batch_error
        results = []
        for rec in recommendations:
            answer = self.responses.get(rec.text)
            results.append(answer if isinstance(answer, Exception) else self._answer(rec))
        return results


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def validator() -> FakeValidator:
    return FakeValidator()


@pytest.fixture
def store(tmp_path) -> SafetyStore:
    return SafetyStore(str(tmp_path / "safety.db"))


@pytest.fixture
def audit_log() -> AuditLog:
    return AuditLog()


@pytest.fixture
def ledger(store, audit_log, clock) -> SafetyCheckLedger:
    return SafetyCheckLedger(store, audit_log, clock=clock)


@pytest.fixture
def queue(store, audit_log, clock) -> ReviewQueue:
    return ReviewQueue(store, audit_log, clock=clock)
