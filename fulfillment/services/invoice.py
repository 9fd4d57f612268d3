"""
Invoice Builder

Aggregates canonical line items into a bill, applies at most one discount
and resolves the payment method used to finalize it.

    subtotal           = Σ base_subtotal
    gst_total          = Σ gst_amount
    pre_discount_total = Σ line_total
    grand_total        = max(0, pre_discount_total − discount_amount)

A fixed discount never exceeds the bill. A malformed discount is logged
and ignored rather than failing the bill.
"""

import logging
import math
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Union

from fulfillment.core.exceptions import LineItemValidationError, MissingPaymentMethod
from fulfillment.models import PaymentMethod
from fulfillment.services.pricing import CanonicalLineItem, ZERO, HUNDRED, _round, _to_decimal

logger = logging.getLogger(__name__)


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


@dataclass(frozen=True)
class DiscountSpec:
    """A single active discount. Combining percentage and fixed is not supported."""
    type: DiscountType
    value: float

    @classmethod
    def parse(cls, raw: Union["DiscountSpec", Mapping[str, Any], None]) -> Optional["DiscountSpec"]:
        """
        Validate a discount request.

        Malformed input is recovered locally: unknown type, non-finite or
        negative value → no discount; percentage clamped to [0, 100];
        fixed value rounded to 2 decimals.
        """
        if raw is None or isinstance(raw, DiscountSpec):
            return raw
        try:
            return cls._parse(raw)
        except LineItemValidationError as e:
            logger.warning(f"Ignoring malformed discount: {e.message} ({e.context})")
            return None

    @classmethod
    def _parse(cls, raw: Mapping[str, Any]) -> Optional["DiscountSpec"]:
        if not isinstance(raw, Mapping):
            raise LineItemValidationError("discount must be an object", discount=repr(raw))

        raw_type = raw.get("type")
        if isinstance(raw_type, DiscountType):
            discount_type = raw_type
        else:
            if isinstance(raw_type, Enum):
                raw_type = raw_type.value
            try:
                discount_type = DiscountType(str(raw_type).strip().lower())
            except ValueError:
                raise LineItemValidationError("unknown discount type", type=raw_type)

        value = _to_decimal(raw.get("value"))
        if value is None:
            raise LineItemValidationError("discount value is not a finite number", value=raw.get("value"))
        if value < 0:
            raise LineItemValidationError("discount value is negative", value=str(value))
        if value == 0:
            return None

        if discount_type == DiscountType.PERCENTAGE:
            if value > HUNDRED:
                logger.warning(f"Clamping percentage discount {value} to 100")
                value = HUNDRED
            return cls(type=discount_type, value=float(value))

        return cls(type=discount_type, value=float(_round(value)))

    def amount_for(self, pre_discount_total: Decimal) -> Decimal:
        value = Decimal(str(self.value))
        if self.type == DiscountType.PERCENTAGE:
            return _round(pre_discount_total * value / HUNDRED)
        return min(value, pre_discount_total)


@dataclass
class Invoice:
    """Computed bill for one order."""
    subtotal: float
    gst_total: float
    pre_discount_total: float
    discount_amount: float
    grand_total: float
    items: list[CanonicalLineItem] = field(default_factory=list)
    discount: Optional[DiscountSpec] = None
    order_id: Optional[int] = None
    payment_method: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "order_id": self.order_id,
            "items": [item.to_dict() for item in self.items],
            "subtotal": self.subtotal,
            "gst_total": self.gst_total,
            "pre_discount_total": self.pre_discount_total,
            "discount": (
                {"type": self.discount.type.value, "value": self.discount.value}
                if self.discount else None
            ),
            "discount_amount": self.discount_amount,
            "grand_total": self.grand_total,
            "payment_method": self.payment_method,
        }


def _sum(values: Iterable[float]) -> Decimal:
    return sum((Decimal(str(v)) for v in values if math.isfinite(v)), ZERO)


def build_invoice(
    items: Iterable[CanonicalLineItem],
    discount: Union[DiscountSpec, Mapping[str, Any], None] = None,
    order_id: Optional[int] = None,
    payment_method: Optional[str] = None,
) -> Invoice:
    """
    Build the bill for a set of canonical line items.

    Args:
        items: Canonical items of one order
        discount: Optional ``{"type": "percentage"|"fixed", "value": ...}``
        order_id: Order the bill belongs to
        payment_method: Recorded payment method, if any

    Returns:
        Invoice with grand_total floored at 0
    """
    items = list(items)
    spec = DiscountSpec.parse(discount)

    subtotal = _round(_sum(item.base_subtotal for item in items))
    gst_total = _round(_sum(item.gst_amount for item in items))
    pre_discount = _round(_sum(item.line_total for item in items))

    discount_amount = spec.amount_for(pre_discount) if spec else ZERO
    grand_total = max(ZERO, _round(pre_discount - discount_amount))

    return Invoice(
        subtotal=float(subtotal),
        gst_total=float(gst_total),
        pre_discount_total=float(pre_discount),
        discount_amount=float(discount_amount),
        grand_total=float(grand_total),
        items=items,
        discount=spec,
        order_id=order_id,
        payment_method=payment_method,
    )


def normalize_payment_method(method: Optional[str]) -> Optional[str]:
    """Return a valid payment method value or None. Unknown strings raise."""
    if method is None or (isinstance(method, str) and not method.strip()):
        return None
    try:
        return PaymentMethod(str(method).strip().lower()).value
    except ValueError:
        valid = [m.value for m in PaymentMethod]
        raise LineItemValidationError(f"Invalid payment method. Must be one of: {valid}", method=method)


def resolve_payment_method(stored: Optional[str], requested: Optional[str] = None) -> str:
    """
    Pick the payment method a bill is finalized with.

    A stored method always wins and is never re-prompted; otherwise the
    requested one is used. With neither, finalization is refused.
    """
    stored = normalize_payment_method(stored)
    if stored:
        if requested and normalize_payment_method(requested) != stored:
            logger.info(f"Keeping stored payment method '{stored}', ignoring '{requested}'")
        return stored

    requested = normalize_payment_method(requested)
    if requested:
        return requested

    raise MissingPaymentMethod("A payment method (cash or upi) is required to finalize the bill")
