"""Error taxonomy shared by every engine component.

Each error carries a stable ``code`` and a ``details`` dict so that the HTTP
layer (or any other adapter) can translate it without string matching.
"""

from typing import Any


class RentalEngineError(Exception):
    """Base class for all engine failures."""

    code = "rental_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(RentalEngineError):
    """Bad input shape: unknown tenure unit, non-positive quantity, bad date range."""

    code = "validation_error"


class InvalidPlanType(ValidationError):
    code = "invalid_plan_type"


class InvalidTransition(RentalEngineError):
    """Illegal lifecycle move. Raised before any state is touched."""

    code = "invalid_transition"


class NotFound(RentalEngineError):
    code = "not_found"


class LimitExceeded(RentalEngineError):
    """Promo usage cap reached or quantity above available stock."""

    code = "limit_exceeded"


class ExpiredOrInactive(RentalEngineError):
    code = "expired_or_inactive"


class ConcurrentUpdate(RentalEngineError):
    """Compare-and-swap on a versioned record lost the race. Safe to retry."""

    code = "concurrent_update"
