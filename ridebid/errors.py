"""Typed errors raised by the marketplace core.

Every error carries a stable ``code`` and an ``action`` hint for clients:
``refresh`` for races and stale views, ``retry`` for transient payment
failures, ``user_action`` when the rider must fix something (add a card,
complete verification), ``fix_input`` for invalid requests.
"""

from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    """Base class for all marketplace errors."""
    code = "marketplace_error"
    http_status = 400
    action = "refresh"

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "action": self.action, **self.details}


class NotFound(MarketplaceError):
    """Raised when a ride, bid or edit id is unknown."""
    code = "not_found"
    http_status = 404


class ValidationError(MarketplaceError):
    """Raised for non-positive amounts or malformed itineraries."""
    code = "validation_error"
    http_status = 422
    action = "fix_input"


class DuplicateBid(ValidationError):
    """Raised when a driver already has a live bid on the ride."""
    code = "duplicate_bid"


class InvalidTransition(MarketplaceError):
    """Raised when a status change is not allowed from the current status."""
    code = "invalid_transition"
    http_status = 409

    def __init__(self, attempted: str, current: str, message: str = ""):
        super().__init__(
            message or f"cannot move ride from {current} to {attempted}",
            attempted=attempted,
            current=current,
        )
        self.attempted = attempted
        self.current = current


class AlreadyAssigned(MarketplaceError):
    """Raised when another bid won the ride first."""
    code = "already_assigned"
    http_status = 409


class BidTerminal(MarketplaceError):
    """Raised when operating on a bid that is already closed."""
    code = "bid_terminal"
    http_status = 409


class NegotiationDepthExceeded(MarketplaceError):
    """Raised when a counter-offer chain has hit its round limit."""
    code = "negotiation_depth_exceeded"
    http_status = 409


class EditAlreadyPending(MarketplaceError):
    code = "edit_already_pending"
    http_status = 409


class EditNotPending(MarketplaceError):
    code = "edit_not_pending"
    http_status = 409


class PaymentError(MarketplaceError):
    """Base class for errors coming back from the payment gateway."""
    code = "payment_error"
    http_status = 402
    action = "retry"


class PaymentMethodRequired(PaymentError):
    code = "payment_method_required"
    action = "user_action"


class PaymentDeclined(PaymentError):
    code = "payment_declined"

    def __init__(self, message: str = "", decline_reason: Optional[str] = None, retryable: bool = True, **details: Any):
        super().__init__(message or "payment was declined", decline_reason=decline_reason, **details)
        self.decline_reason = decline_reason
        if not retryable:
            self.action = "user_action"


class PaymentVerificationRequired(PaymentError):
    code = "payment_verification_required"
    action = "user_action"
