"""Error taxonomy for the lead engine.

Every expected business outcome is raised as a ``LeadEngineError`` subclass.
The API layer renders them as ``{"error": kind, "message": ..., "details": ...}``
so callers always see a structured kind instead of a stack trace.
"""

from typing import Any


class LeadEngineError(Exception):
    """Base class for all typed engine errors"""

    kind = "LeadEngineError"
    status_code = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.kind,
            "message": self.message,
            "details": {key: _jsonable(value) for key, value in self.details.items()},
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


class NotFoundError(LeadEngineError):
    kind = "NotFound"
    status_code = 404

    def __init__(self, resource: str, resource_id: Any):
        super().__init__(f"{resource} {resource_id} not found", resource=resource, id=resource_id)


class NotClaimableError(LeadEngineError):
    """Lead is terminal, full, expired or not public yet; ``reason`` says which"""

    kind = "NotClaimable"
    status_code = 409

    MESSAGES = {
        "cancelled": "This lead has been cancelled",
        "accepted": "The homeowner has already accepted a quote for this lead",
        "expired": "This lead has expired",
        "full": "This lead has already reached its claim limit",
        "direct_pending": "This lead is reserved for another professional",
        "direct_accepted": "This lead was sent to another professional, who has accepted it",
    }

    def __init__(self, lead_id: Any, reason: str):
        super().__init__(
            self.MESSAGES.get(reason, f"Lead cannot be claimed ({reason})"),
            lead_id=lead_id,
            reason=reason,
        )
        self.reason = reason


class AlreadyClaimedError(LeadEngineError):
    kind = "AlreadyClaimed"
    status_code = 409

    def __init__(self, lead_id: Any, professional_id: str, claim: Any = None):
        super().__init__(
            "You have already claimed this lead",
            lead_id=lead_id,
            professional_id=professional_id,
            claim_id=getattr(claim, "id", None),
        )
        self.claim = claim


class QuotaExceededError(NotClaimableError):
    """A full lead; whether the slot was lost in a race or long gone looks the same to the caller"""

    kind = "QuotaExceeded"
    status_code = 409

    def __init__(self, lead_id: Any):
        super().__init__(lead_id, "full")


class InsufficientCreditsError(LeadEngineError):
    kind = "InsufficientCredits"
    status_code = 402

    def __init__(self, professional_id: str, required: int, available: int):
        shortfall = max(0, required - available)
        super().__init__(
            f"Insufficient credits. You have {available} credits but need {required}.",
            professional_id=professional_id,
            required=required,
            available=available,
            shortfall=shortfall,
        )
        self.shortfall = shortfall


class InvalidTransitionError(LeadEngineError):
    kind = "InvalidTransition"
    status_code = 409

    def __init__(self, message: str, current: Any = None, attempted: str | None = None):
        super().__init__(message, current=getattr(current, "value", current), attempted=attempted)


class ConflictError(LeadEngineError):
    """Optimistic-lock failure; retried internally before it ever reaches a caller"""

    kind = "Conflict"
    status_code = 409

    def __init__(self, message: str = "Concurrent update detected, please try again", **details: Any):
        super().__init__(message, **details)


class UnavailableError(LeadEngineError):
    kind = "Unavailable"
    status_code = 503

    def __init__(self, message: str = "Service temporarily unavailable, outcome unknown; safe to retry"):
        super().__init__(message)


class PermissionDeniedError(LeadEngineError):
    kind = "PermissionDenied"
    status_code = 403

    def __init__(self, message: str, **details: Any):
        super().__init__(message, **details)


class ValidationFailedError(LeadEngineError):
    kind = "ValidationFailed"
    status_code = 422

    def __init__(self, message: str, **details: Any):
        super().__init__(message, **details)
