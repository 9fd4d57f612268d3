"""
Core module initialization.
Exports configuration, logging utilities and the error taxonomy.
"""

from fulfillment.core.config import get_settings, setup_logging, Settings, EnvironmentMode
from fulfillment.core.exceptions import (
    FulfillmentError,
    LineItemValidationError,
    InvalidTransition,
    MissingPaymentMethod,
    PaymentMethodConflict,
    PrintPrecondition,
    OrderNotFound,
    ChannelDisabled,
    OrderValidationError,
)

__all__ = [
    "get_settings",
    "setup_logging",
    "Settings",
    "EnvironmentMode",
    "FulfillmentError",
    "LineItemValidationError",
    "InvalidTransition",
    "MissingPaymentMethod",
    "PaymentMethodConflict",
    "PrintPrecondition",
    "OrderNotFound",
    "ChannelDisabled",
    "OrderValidationError",
]
