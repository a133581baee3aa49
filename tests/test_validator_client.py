"""
Tests for clinisafe.validator_client -- HTTP adapter for the ML validator.

The session is a fake; no network is touched.
"""

from __future__ import annotations

import pytest
import requests

from clinisafe.audit import AuditEventType, AuditLog
from clinisafe.config import ServiceSettings
from clinisafe.errors import ValidatorError, ValidatorResponseError
from clinisafe.models import (
    AlertLevel,
    GuidelineInfo,
    PatientContext,
    Recommendation,
    RecommendationType,
    ValidationTier,
)
from clinisafe.orchestrator import ValidationOrchestrator
from clinisafe.validator_client import ValidatorClient, build_request_payload


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

class _FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, bad_json: bool = False) -> None:
        self.status_code = status_code
        self._payload = payload
        self._bad_json = bad_json

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def raise_for_status(self) -> None:
        if not self.ok:
            raise requests.HTTPError(f"HTTP {self.status_code}", response=self)

    def json(self):
        if self._bad_json:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class _FakeSession:
    def __init__(self, response=None, error: Exception | None = None) -> None:
        self.headers: dict[str, str] = {}
        self.response = response or _FakeResponse()
        self.error = error
        self.calls: list[tuple[str, str, dict | None, float]] = []

    def get(self, url, timeout=None):
        self.calls.append(("GET", url, None, timeout))
        if self.error:
            raise self.error
        return self.response

    def post(self, url, json=None, timeout=None):
        self.calls.append(("POST", url, json, timeout))
        if self.error:
            raise self.error
        return self.response


def _wire_result(**kwargs) -> dict:
    result = {
        "is_valid": True,
        "confidence_score": 0.91,
        "validation_tier": "HIGH_CONFIDENCE",
        "is_anomaly": False,
        "anomaly_score": 0.02,
        "deviation_factors": [],
        "alert_level": "NONE",
        "alert_message": "",
        "requires_review": False,
        "similar_plan_ids": [],
    }
    result.update(kwargs)
    return result


def _make_client(session: _FakeSession) -> ValidatorClient:
    return ValidatorClient(base_url="http://validator.test:8080/", timeout=5.0,
                           health_timeout=2.0, session=session)


CONTEXT = PatientContext(condition_codes=["I10"], medication_codes=["RX-1"], age=54)
REC = Recommendation(id="rec-1", type=RecommendationType.MEDICATION, code="RX-9", text="start lisinopril")


# ---------------------------------------------------------------------------
# 1. Request shape
# ---------------------------------------------------------------------------

class TestRequestPayload:
    def test_snake_case_and_no_recommendation_id(self):
        payload = build_request_payload(CONTEXT, REC, GuidelineInfo(source="ADA", evidence_grade="A"))
        assert payload["patient_context"]["condition_codes"] == ["I10"]
        assert payload["recommendation"]["type"] == "MEDICATION"
        assert "id" not in payload["recommendation"]
        assert payload["guideline"]["evidence_grade"] == "A"

    def test_guideline_optional(self):
        assert build_request_payload(CONTEXT, REC)["guideline"] is None


# ---------------------------------------------------------------------------
# 2. Health probe
# ---------------------------------------------------------------------------

class TestHealthCheck:
    def test_healthy(self):
        session = _FakeSession(_FakeResponse(200, {"status": "ok"}))
        client = _make_client(session)
        assert client.health_check() is True
        assert session.calls == [("GET", "http://validator.test:8080/health", None, 2.0)]

    def test_non_2xx_is_unhealthy(self):
        assert _make_client(_FakeSession(_FakeResponse(503))).health_check() is False

    def test_timeout_is_unhealthy_not_raised(self):
        session = _FakeSession(error=requests.Timeout("timed out"))
        assert _make_client(session).health_check() is False

    def test_connection_error_is_unhealthy(self):
        session = _FakeSession(error=requests.ConnectionError("refused"))
        assert _make_client(session).health_check() is False


# ---------------------------------------------------------------------------
# 3. Single validation
# ---------------------------------------------------------------------------

class TestValidateRecommendation:
    def test_parses_result(self):
        session = _FakeSession(_FakeResponse(200, _wire_result(
            alert_level="HIGH", validation_tier="NEEDS_REVIEW", deviation_factors=["dose high"],
        )))
        result = _make_client(session).validate_recommendation(CONTEXT, REC)
        assert result.alert_level == AlertLevel.HIGH
        assert result.validation_tier == ValidationTier.NEEDS_REVIEW
        method, url, body, timeout = session.calls[0]
        assert (method, url, timeout) == ("POST", "http://validator.test:8080/validate/recommendation", 5.0)
        assert body["recommendation"]["text"] == "start lisinopril"

    def test_http_error_raises_validator_error(self):
        session = _FakeSession(_FakeResponse(500))
        with pytest.raises(ValidatorError, match="HTTP 500"):
            _make_client(session).validate_recommendation(CONTEXT, REC)

    def test_timeout_raises_validator_error(self):
        session = _FakeSession(error=requests.Timeout())
        with pytest.raises(ValidatorError, match="timed out"):
            _make_client(session).validate_recommendation(CONTEXT, REC)

    def test_non_json_raises_response_error(self):
        session = _FakeSession(_FakeResponse(200, bad_json=True))
        with pytest.raises(ValidatorResponseError):
            _make_client(session).validate_recommendation(CONTEXT, REC)

    def test_unknown_enum_raises_response_error(self):
        session = _FakeSession(_FakeResponse(200, _wire_result(alert_level="SEVERE")))
        with pytest.raises(ValidatorResponseError):
            _make_client(session).validate_recommendation(CONTEXT, REC)

    def test_non_object_raises_response_error(self):
        session = _FakeSession(_FakeResponse(200, ["not", "an", "object"]))
        with pytest.raises(ValidatorResponseError):
            _make_client(session).validate_recommendation(CONTEXT, REC)


# ---------------------------------------------------------------------------
# 4. Batch validation
# ---------------------------------------------------------------------------

class TestValidateBatch:
    def test_batch_round_trip(self):
        recs = [REC, Recommendation(type=RecommendationType.LIFESTYLE, text="reduce sodium")]
        session = _FakeSession(_FakeResponse(200, {
            "results": [_wire_result(), _wire_result(is_anomaly=True, anomaly_score=0.8)],
            "total_count": 2,
        }))
        results = _make_client(session).validate_batch(CONTEXT, recs)
        assert [r.is_anomaly for r in results] == [False, True]
        _, url, body, timeout = session.calls[0]
        assert url.endswith("/validate/batch")
        assert len(body["validations"]) == 2
        assert timeout == 10.0

    def test_empty_batch_makes_no_call(self):
        session = _FakeSession()
        assert _make_client(session).validate_batch(CONTEXT, []) == []
        assert session.calls == []

    def test_count_mismatch_is_malformed(self):
        session = _FakeSession(_FakeResponse(200, {"results": [_wire_result()]}))
        with pytest.raises(ValidatorResponseError):
            _make_client(session).validate_batch(CONTEXT, [REC, REC])

    def test_missing_results_is_malformed(self):
        session = _FakeSession(_FakeResponse(200, {"total_count": 0}))
        with pytest.raises(ValidatorResponseError):
            _make_client(session).validate_batch(CONTEXT, [REC])

    def test_malformed_element_fills_only_its_slot(self):
        session = _FakeSession(_FakeResponse(200, {
            "results": [
                _wire_result(),
                _wire_result(validation_tier="BOGUS"),
                _wire_result(is_anomaly=True, anomaly_score=0.8),
            ],
        }))
        results = _make_client(session).validate_batch(CONTEXT, [REC, REC, REC])
        assert results[0].validation_tier == ValidationTier.HIGH_CONFIDENCE
        assert isinstance(results[1], ValidatorResponseError)
        assert results[2].is_anomaly is True

    def test_anomaly_report_survives_malformed_element(self):
        recs = [
            Recommendation(id="rec-1", type=RecommendationType.MEDICATION, text="start lisinopril"),
            Recommendation(id="rec-2", type=RecommendationType.MEDICATION, text="double metoprolol"),
        ]
        session = _FakeSession(_FakeResponse(200, {
            "results": [
                _wire_result(is_anomaly=True, anomaly_score=0.8),
                _wire_result(validation_tier="BOGUS"),
            ],
        }))
        audit_log = AuditLog()
        orch = ValidationOrchestrator(_make_client(session), audit_log=audit_log)
        report = orch.detect_anomalies("patient-1", CONTEXT, recs)

        assert len(report.anomalies) == 1
        assert report.details[0].recommendation_text == "start lisinopril"
        failures = audit_log.query("patient-1", event_type=AuditEventType.VALIDATION_ITEM_FAILED)
        assert [e.target_entity for e in failures] == ["rec-2"]


class TestFromSettings:
    def test_settings_applied(self):
        settings = ServiceSettings(validator_url="http://v:9000/", validator_timeout_seconds=3,
                                   health_timeout_seconds=1)
        client = ValidatorClient.from_settings(settings)
        assert client.base_url == "http://v:9000"
        assert client.timeout == 3
        assert client.health_timeout == 1
        assert client.session.headers["Accept"] == "application/json"
