"""HTTP client for the ML care-plan validator.

Stateless request/response adapter.  The validator is treated as unreliable
I/O: transport failures, non-2xx answers and malformed payloads all surface
as ``ValidatorError`` subclasses, and the health probe never raises.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import requests
from pydantic import ValidationError

from clinisafe.config import DEFAULT_SETTINGS, ServiceSettings
from clinisafe.errors import ValidatorError, ValidatorResponseError
from clinisafe.models import GuidelineInfo, PatientContext, Recommendation, ValidationResult

logger = logging.getLogger(__name__)


def build_request_payload(
    patient_context: PatientContext,
    recommendation: Recommendation,
    guideline: Optional[GuidelineInfo] = None,
) -> dict[str, Any]:
    """Serialize one validation request in the validator's wire format."""
    return {
        "patient_context": patient_context.model_dump(mode="json"),
        "recommendation": recommendation.model_dump(mode="json", exclude={"id"}),
        "guideline": guideline.model_dump(mode="json") if guideline else None,
    }


def parse_validation_result(data: Any) -> ValidationResult:
    """Parse one validator result object, rejecting malformed payloads."""
    if not isinstance(data, dict):
        raise ValidatorResponseError(
            f"Expected a JSON object from validator, got {type(data).__name__}"
        )
    try:
        return ValidationResult.model_validate(data)
    except ValidationError as e:
        raise ValidatorResponseError(f"Malformed validator result: {e}") from e


class ValidatorClient:
    """Client for the validator's ``/validate`` and ``/health`` endpoints."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        health_timeout: float | None = None,
        session: requests.Session | None = None,
    ):
        self.base_url = (base_url or DEFAULT_SETTINGS.validator_url).rstrip("/")
        self.timeout = timeout or DEFAULT_SETTINGS.validator_timeout_seconds
        self.health_timeout = health_timeout or DEFAULT_SETTINGS.health_timeout_seconds
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
        })

    @classmethod
    def from_settings(cls, settings: ServiceSettings) -> "ValidatorClient":
        return cls(
            base_url=settings.validator_url,
            timeout=settings.validator_timeout_seconds,
            health_timeout=settings.health_timeout_seconds,
        )

    def _post(self, path: str, body: dict, timeout: float) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.post(url, json=body, timeout=timeout)
            response.raise_for_status()
        except requests.Timeout as e:
            raise ValidatorError(f"Validator request to {path} timed out") from e
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else "?"
            raise ValidatorError(f"Validator request to {path} failed: HTTP {status}") from e
        except requests.RequestException as e:
            raise ValidatorError(f"Validator request to {path} failed: {e}") from e

        try:
            return response.json()
        except ValueError as e:
            raise ValidatorResponseError(f"Validator response from {path} is not JSON") from e

    def health_check(self) -> bool:
        """Return True if the validator answers ``GET /health`` with a 2xx."""
        try:
            response = self.session.get(
                f"{self.base_url}/health",
                timeout=self.health_timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"Validator health probe failed: {e}")
            return False
        if not response.ok:
            logger.warning(f"Validator health probe returned HTTP {response.status_code}")
        return response.ok

    def validate_recommendation(
        self,
        patient_context: PatientContext,
        recommendation: Recommendation,
        guideline: Optional[GuidelineInfo] = None,
    ) -> ValidationResult:
        """Validate a single recommendation."""
        data = self._post(
            "/validate/recommendation",
            build_request_payload(patient_context, recommendation, guideline),
            self.timeout,
        )
        return parse_validation_result(data)

    def validate_batch(
        self,
        patient_context: PatientContext,
        recommendations: list[Recommendation],
        guideline: Optional[GuidelineInfo] = None,
    ) -> list[ValidationResult | ValidatorResponseError]:
        """Validate several recommendations in one round-trip.

        Results are returned in request order.  Each element is parsed on its
        own: a malformed element comes back as a ``ValidatorResponseError`` in
        its slot so the other results stay usable.  A missing ``results`` list
        or a result count that does not match the request count fails the
        whole call.
        """
        if not recommendations:
            return []

        data = self._post(
            "/validate/batch",
            {
                "validations": [
                    build_request_payload(patient_context, rec, guideline)
                    for rec in recommendations
                ]
            },
            self.timeout * len(recommendations),
        )
        if not isinstance(data, dict) or not isinstance(data.get("results"), list):
            raise ValidatorResponseError("Batch response is missing a 'results' list")

        results = data["results"]
        if len(results) != len(recommendations):
            raise ValidatorResponseError(
                f"Batch response has {len(results)} results for "
                f"{len(recommendations)} recommendations"
            )
        parsed: list[ValidationResult | ValidatorResponseError] = []
        for index, item in enumerate(results):
            try:
                parsed.append(parse_validation_result(item))
            except ValidatorResponseError as e:
                logger.warning(f"Batch result {index} is malformed: {e}")
                parsed.append(e)
        return parsed
