"""
shared/utils/errors.py
Domain exceptions for the booking/escrow core.

Ledgers raise these and never swallow them. Only the booking state
machine (and the sweep / admin gate that drive it) turn a failure into a
compensating action or a manual-review flag. main.py maps them to JSON
responses via status_code / code.
"""

from typing import Optional


class BookingError(Exception):
    status_code: int = 400
    code: str = "booking_error"

    def __init__(self, detail: str, *, code: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        if code:
            self.code = code


class NotFoundError(BookingError):
    status_code = 404
    code = "not_found"


class PermissionDeniedError(BookingError):
    status_code = 403
    code = "permission_denied"


class ConflictError(BookingError):
    """Slot already claimed, duplicate review, duplicate slot. Caller must re-fetch."""
    status_code = 409
    code = "conflict"


class EscrowAlreadyResolvedError(ConflictError):
    """Payment is no longer held; someone else resolved it first."""
    code = "escrow_already_resolved"


class PreconditionFailedError(BookingError):
    """Wrong booking/payment status for the requested transition."""
    status_code = 400
    code = "precondition_failed"


class PayoutDestinationMissingError(PreconditionFailedError):
    code = "payout_destination_missing"


class ExternalDependencyError(BookingError):
    """
    Payment processor timeout, error or open circuit. Retryable.
    outcome_unknown is set on timeouts: the call may still have taken effect.
    """
    status_code = 502
    code = "external_dependency_failed"

    def __init__(self, detail: str, *, code: Optional[str] = None, outcome_unknown: bool = False):
        super().__init__(detail, code=code)
        self.outcome_unknown = outcome_unknown


class BookingInvariantError(BookingError):
    """A write would break a booking/escrow invariant. Indicates a bug."""
    status_code = 500
    code = "invariant_violation"
