"""
Typed domain errors for the dispatch core.

Each error carries an HTTP status code and a stable machine ``code``.
The transport layer catches ``DispatchError`` subtypes and converts them
to structured JSON rejections without embedding business logic in the
route handlers.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for all dispatch domain errors."""

    status_code: int = 500
    code: str = "dispatch_error"

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class InvalidTransition(DispatchError):
    """Target status is not reachable from the current status (409)."""

    status_code = 409
    code = "invalid_transition"

    def __init__(self, current: str, target: str, detail: str | None = None):
        self.current = current
        self.target = target
        super().__init__(detail or f"Cannot move job from {current} to {target}")


class JobNotFound(DispatchError):
    status_code = 404
    code = "job_not_found"


class BidNotFound(DispatchError):
    status_code = 404
    code = "bid_not_found"


class VendorNotFound(DispatchError):
    status_code = 404
    code = "vendor_not_found"


class BiddingClosed(DispatchError):
    status_code = 409
    code = "bidding_closed"


class AlreadySelected(DispatchError):
    """Another bid already won this job (409)."""

    status_code = 409
    code = "already_selected"


class CompletionAmountInvalid(DispatchError):
    status_code = 400
    code = "completion_amount_invalid"


class InvalidPaymentMethod(DispatchError):
    status_code = 400
    code = "invalid_payment_method"


class InvalidBid(DispatchError):
    """Bid payload failed validation (400)."""

    status_code = 400
    code = "invalid_bid"


class StaleWrite(DispatchError):
    """Job version advanced between read and write (409)."""

    status_code = 409
    code = "stale_write"

    def __init__(self, job_id: str, expected_version: int, detail: str | None = None):
        self.job_id = job_id
        self.expected_version = expected_version
        super().__init__(
            detail or f"Job {job_id} changed since version {expected_version}; reload and retry"
        )


class TokenInvalidOrExpired(DispatchError):
    status_code = 404
    code = "token_invalid_or_expired"


class InvalidJobRequest(DispatchError):
    """Job intake payload failed validation (400)."""

    status_code = 400
    code = "invalid_job_request"


class Forbidden(DispatchError):
    """Actor is not a participant of this job (403)."""

    status_code = 403
    code = "forbidden"
