"""
Fulfillment Error Taxonomy

Every error the engine raises derives from FulfillmentError. Each class
carries the HTTP status the API layer answers with, so route handlers never
translate errors one by one.

Recovered locally (logged, never surfaced):
    - LineItemValidationError

Surfaced to the caller:
    - InvalidTransition, MissingPaymentMethod, PrintPrecondition,
      OrderNotFound, ChannelDisabled, PaymentMethodConflict,
      OrderValidationError
"""

from typing import Any, Optional


class FulfillmentError(Exception):
    """Base class for all engine errors."""

    status_code: int = 400
    error_code: str = "fulfillment_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": False,
            "error": self.error_code,
            "detail": self.message,
        }


class LineItemValidationError(FulfillmentError):
    """Malformed discount or non-finite numeric field. Recovered with safe defaults."""

    status_code = 422
    error_code = "validation_error"


class InvalidTransition(FulfillmentError):
    """Target status is outside the channel vocabulary or not the next step."""

    status_code = 409
    error_code = "invalid_transition"

    def __init__(
        self,
        message: str,
        current: Optional[str] = None,
        target: Optional[str] = None,
        channel: Optional[str] = None,
    ):
        super().__init__(message, current=current, target=target, channel=channel)
        self.current = current
        self.target = target
        self.channel = channel


class MissingPaymentMethod(FulfillmentError):
    """Bill finalization attempted without a resolved payment method."""

    status_code = 422
    error_code = "missing_payment_method"


class PaymentMethodConflict(FulfillmentError):
    """A different payment method is already recorded on the order."""

    status_code = 409
    error_code = "payment_method_conflict"


class PrintPrecondition(FulfillmentError):
    """Printing attempted without a successful read of the current items."""

    status_code = 409
    error_code = "print_precondition"


class OrderNotFound(FulfillmentError):
    status_code = 404
    error_code = "order_not_found"

    def __init__(self, order_id: int):
        super().__init__(f"Order #{order_id} not found", order_id=order_id)
        self.order_id = order_id


class ChannelDisabled(FulfillmentError):
    """Vendor has not enabled the requested fulfillment channel."""

    status_code = 403
    error_code = "channel_disabled"


class OrderValidationError(FulfillmentError):
    """Checkout payload missing what its channel needs (items, table, address)."""

    status_code = 422
    error_code = "order_validation_error"
