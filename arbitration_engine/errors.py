"""
Engine error types.

Kept in one module so the API layer, job tasks and tests all map the same
classes. Each error carries a stable ``code`` and the HTTP status the API
reports it with.
"""

from typing import Any, Dict, Optional


class ArbitrationError(Exception):
    """Base class for every typed engine error."""

    code = "arbitration_error"
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.code, "detail": self.message}
        if self.details:
            payload["context"] = self.details
        return payload


class ValidationError(ArbitrationError):
    """Malformed input, rejected before any mutation."""

    code = "validation_error"
    http_status = 400


class NotFoundError(ArbitrationError):
    """Unknown case, arbitrator, assignment, vote or appeal id."""

    code = "not_found"
    http_status = 404


class StateConflict(ArbitrationError):
    """Operation is not valid for the record's current status."""

    code = "state_conflict"
    http_status = 409


class DuplicateVote(StateConflict):
    code = "duplicate_vote"


class CapacityError(ArbitrationError):
    code = "capacity_error"
    http_status = 409


class NoAvailableArbitrator(CapacityError):
    code = "no_available_arbitrator"


class TierLimitExceeded(CapacityError):
    code = "tier_limit_exceeded"


class IntegrityError(ArbitrationError):
    code = "integrity_error"
    http_status = 422


class InvalidReveal(IntegrityError):
    """Reveal hash does not match the stored commitment."""

    code = "invalid_reveal"


class DownstreamError(ArbitrationError):
    """A collaborator call failed or timed out. Always retryable."""

    code = "downstream_error"
    http_status = 502


class SettlementError(DownstreamError):
    code = "settlement_error"
