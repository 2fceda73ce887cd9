"""
Order lifecycle error taxonomy.

Every error carries a human message, a stable error_code and a details dict,
and maps to one HTTP status in app.main.
"""

from typing import Dict, Optional


class OrderLifecycleError(Exception):
    """Base class for errors raised by the order services."""
    status_code = 400
    default_code = "ORDER_ERROR"

    def __init__(self, message: str, error_code: str = None, details: Dict = None):
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(OrderLifecycleError):
    """Malformed input: pincode format, missing items, past delivery date."""
    status_code = 422
    default_code = "VALIDATION_ERROR"


class StateConflictError(OrderLifecycleError):
    """Transition is not legal from the order's current status."""
    status_code = 409
    default_code = "STATE_CONFLICT"

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        required_status: Optional[list] = None,
        error_code: str = None,
        details: Dict = None,
    ):
        details = dict(details or {})
        if current_status is not None:
            details["current_status"] = current_status
        if required_status:
            details["required_status"] = list(required_status)
        self.current_status = current_status
        self.required_status = list(required_status or [])
        super().__init__(message, error_code=error_code, details=details)


class ActorNotPermittedError(StateConflictError):
    """Actor lacks the role or ownership. Never reveals the current status."""
    status_code = 403
    default_code = "ACTOR_NOT_PERMITTED"

    def __init__(self, message: str, error_code: str = None):
        super().__init__(message, error_code=error_code)


class NotFoundError(OrderLifecycleError):
    status_code = 404
    default_code = "NOT_FOUND"


class CorruptOrderStateError(OrderLifecycleError):
    """Persisted record holds a value outside the known enum."""
    status_code = 500
    default_code = "CORRUPT_ORDER_STATE"


class ExternalSyncFailure(OrderLifecycleError):
    """Accounting system unreachable or rejected a request. Logged, never surfaced."""
    status_code = 502
    default_code = "EXTERNAL_SYNC_FAILED"


class LedgerImmutableError(OrderLifecycleError):
    """Attempt to update or delete a status history event."""
    status_code = 500
    default_code = "LEDGER_IMMUTABLE"
