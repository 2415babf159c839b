"""Service error taxonomy shared by the checkout and order lifecycle services."""
from enum import Enum
from typing import Optional


class InvalidStateReason(str, Enum):
    """Why a request was rejected as invalid for the current state."""
    EMPTY_CART = "empty_cart"
    PRODUCT_UNAVAILABLE = "product_unavailable"
    INSUFFICIENT_STOCK = "insufficient_stock"
    COUPON_INVALID = "coupon_invalid"
    COUPON_EXPIRED = "coupon_expired"
    COUPON_ALREADY_USED = "coupon_already_used"
    COUPON_LIMIT_REACHED = "coupon_limit_reached"
    COUPON_BELOW_MINIMUM = "coupon_below_minimum"
    INVALID_STATUS = "invalid_status"
    ILLEGAL_TRANSITION = "illegal_transition"
    ALREADY_CANCELLED = "already_cancelled"
    NOT_PENDING = "not_pending"
    INVALID_REQUEST = "invalid_request"


class ServiceError(Exception):
    """
    Base class for errors surfaced to API callers.

    `message` is safe to show to the caller. Subclasses set the HTTP status
    code that the API layer renders.
    """

    status_code = 500
    category = "internal"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def public_message(self) -> str:
        return self.message


class NotFoundError(ServiceError):
    status_code = 404
    category = "not_found"

    def __init__(self, resource: str, identifier: Optional[object] = None):
        super().__init__(f"{resource.capitalize()} not found")
        self.resource = resource
        self.identifier = identifier


class InvalidStateError(ServiceError):
    status_code = 400
    category = "invalid_state"

    def __init__(self, reason: InvalidStateReason, message: str):
        super().__init__(message)
        self.reason = reason


class ForbiddenError(ServiceError):
    status_code = 403
    category = "forbidden"


class ConflictError(ServiceError):
    """A concurrent transaction touched the same rows; safe to retry."""

    status_code = 409
    category = "conflict"

    @property
    def public_message(self) -> str:
        return "The request conflicted with a concurrent update, please retry"


class InternalError(ServiceError):
    status_code = 500
    category = "internal"

    @property
    def public_message(self) -> str:
        return "Internal server error"
