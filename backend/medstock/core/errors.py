"""MedStock — Domain error taxonomy.

Every error raised by the services derives from ``MedStockError`` and carries
the HTTP status and machine code the API renders. State-machine errors attach
the state the record was in so callers can show an accurate message.
"""
from typing import Any


class MedStockError(Exception):
    """Base class for all business errors."""

    status_code: int = 400
    code: str = "MEDSTOCK_ERROR"

    def __init__(self, message: str, **meta: Any):
        super().__init__(message)
        self.message = message
        self.meta = {k: v for k, v in meta.items() if v is not None}


class ValidationError(MedStockError):
    """Malformed input, rejected before any mutation."""

    status_code = 422
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field_errors: list[dict] | None = None, **meta: Any):
        super().__init__(message, **meta)
        self.field_errors = field_errors or []


class TierOrderingError(ValidationError):
    """Active tiers would no longer tighten as sort order increases."""

    code = "TIER_ORDERING"


class NotFoundError(MedStockError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: Any):
        super().__init__(f"{resource} {resource_id} not found", resource=resource, resource_id=str(resource_id))
        self.resource = resource
        self.resource_id = resource_id


class ConflictError(MedStockError):
    """Business rule violated; nothing was changed."""

    status_code = 409
    code = "CONFLICT"


class DuplicateTierError(ConflictError):
    code = "DUPLICATE_TIER"

    def __init__(self, days_before_expiry: int, existing_tier: str | None = None):
        super().__init__(
            f"An active alert tier for {days_before_expiry} days already exists",
            days_before_expiry=days_before_expiry,
            existing_tier=existing_tier,
        )
        self.days_before_expiry = days_before_expiry


class StateError(MedStockError):
    """A state machine refused the request. ``current_state`` is always set."""

    status_code = 409
    code = "INVALID_STATE"

    def __init__(self, message: str, current_state: str, **meta: Any):
        super().__init__(message, current_state=current_state, **meta)
        self.current_state = current_state


class AlreadyRunError(StateError):
    code = "CHECK_ALREADY_RUN"


class InvalidStateError(StateError):
    code = "INVALID_STATE"


class IllegalTransitionError(StateError):
    code = "ILLEGAL_TRANSITION"

    def __init__(self, current_state: str, action: str):
        super().__init__(
            f"Action '{action}' is not allowed from status '{current_state}'",
            current_state=current_state,
            action=action,
        )
        self.action = action


class CheckExecutionError(MedStockError):
    """An expiry check run failed; the run row is already marked FAILED."""

    status_code = 500
    code = "CHECK_FAILED"

    def __init__(self, message: str, run_id: Any = None):
        super().__init__(message, run_id=str(run_id) if run_id else None)
        self.run_id = run_id
