"""
Error taxonomy for Clinisafe.

* ``InputValidationError`` -- bad request; never reaches the classifier.
* ``NotFoundError`` -- the target record does not exist (stale reference).
* ``InvalidTransitionError`` -- the record exists but its current state does
  not permit the requested operation.
* ``ConcurrentModificationError`` -- another writer changed the record
  between read and conditional write.
* ``PersistenceError`` -- the store failed; the operation did not happen.
* ``ValidatorError`` / ``ValidatorResponseError`` -- the ML validator was
  unreachable or returned an unusable payload.  The orchestrator absorbs
  these; they are not surfaced to clinicians.
"""

from __future__ import annotations

from typing import Any


class ClinisafeError(Exception):
    """Base class for all errors raised by this package."""
    pass


class InputValidationError(ClinisafeError):
    """Raised when caller input fails validation.

    ``details`` carries one entry per offending field so the caller can fix
    the request.
    """

    def __init__(self, message: str, details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class NotFoundError(ClinisafeError):
    """Raised when the target of an operation does not exist."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} '{entity_id}' not found")
        self.entity = entity
        self.entity_id = entity_id


class InvalidTransitionError(ClinisafeError):
    """Raised when a state transition is not permitted."""
    pass


class ConcurrentModificationError(ClinisafeError):
    """Raised when a conditional update loses to a concurrent writer."""
    pass


class PersistenceError(ClinisafeError):
    """Raised when a read or write against the store fails."""
    pass


class ValidatorError(ClinisafeError):
    """Raised when the ML validator cannot be reached or answers with an error."""
    pass


class ValidatorResponseError(ValidatorError):
    """Raised when the ML validator answers with a malformed payload."""
    pass
