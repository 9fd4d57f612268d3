"""
Pricing Reconciliation Engine

Turns a raw, possibly incomplete line item (as stored at checkout) plus the
menu category's tax defaults into one canonical, tax-aware line item.

The engine is pure and stateless:
    - safe to call concurrently from any number of request handlers
    - idempotent: canonicalizing a canonical item returns the same values
    - never trusts derived fields (gstAmount) persisted with the order

Rounding is to 2 decimal places, half away from zero, done in Decimal so
binary float artefacts never leak into a bill.

Usage:
    from fulfillment.services.pricing import canonicalize

    item = canonicalize({"price": 100, "quantity": 2, "gstRate": 5, "gstMode": "exclude"})
    item.line_total  # 210.0
"""

import json
import logging
import math
from dataclasses import asdict, dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Optional, Union

from fulfillment.core.exceptions import LineItemValidationError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")

GST_INCLUDE = "include"
GST_EXCLUDE = "exclude"
GST_MODES = (GST_INCLUDE, GST_EXCLUDE)

# Unit price candidates, in priority order
PRICE_KEYS = (
    ("price",),
    ("basePrice", "base_price"),
    ("unitPrice", "unit_price"),
)
SUBTOTAL_KEYS = ("subtotal", "baseSubtotal", "base_subtotal")
LINE_TOTAL_KEYS = ("subtotalWithGst", "lineTotal", "line_total")


@dataclass(frozen=True)
class CategoryTaxDefault:
    """Tax fallback owned by the menu catalog."""
    category_id: int
    gst_rate: float = 0.0
    gst_mode: str = GST_EXCLUDE


@dataclass(frozen=True)
class CanonicalLineItem:
    """
    Fully resolved line item.

    Invariants:
        quantity == printed_quantity + unprinted_quantity
        line_total == base_subtotal + gst_amount
    """
    name: str
    quantity: int
    unit_price: float
    unit_price_with_tax: float
    base_subtotal: float
    gst_rate: float
    gst_mode: str
    gst_amount: float
    line_total: float
    printed_quantity: int = 0
    unprinted_quantity: int = 0
    item_id: Optional[int] = None
    line_index: int = 0
    addons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


# =============================================================================
# NUMERIC HELPERS
# =============================================================================

def _to_decimal(value: Any) -> Optional[Decimal]:
    """Parse ``value`` into a finite Decimal, or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return Decimal(str(value))
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = Decimal(text)
        except InvalidOperation:
            return None
        return parsed if parsed.is_finite() else None
    return None


def _round(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def round_currency(value: Any) -> float:
    """Round to 2 decimals, half away from zero. Non-numeric input gives 0."""
    parsed = _to_decimal(value)
    if parsed is None:
        return 0.0
    return float(_round(parsed))


def _pick(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _recover(message: str, **context: Any) -> None:
    """Log a locally recovered validation problem."""
    error = LineItemValidationError(message, **context)
    logger.warning(f"Recovered line item problem: {error.message} {error.context or ''}".rstrip())


# =============================================================================
# FIELD RESOLUTION
# =============================================================================

def _resolve_quantity(raw: Mapping[str, Any]) -> int:
    value = _pick(raw, "quantity")
    if value is None:
        return 1
    parsed = _to_decimal(value)
    if parsed is None or parsed <= 0:
        _recover("quantity is not a positive number, defaulting to 1", quantity=value)
        return 1
    return max(1, int(parsed))


def _resolve_unit_price(raw: Mapping[str, Any]) -> Decimal:
    for aliases in PRICE_KEYS:
        parsed = _to_decimal(_pick(raw, *aliases))
        if parsed is not None:
            return parsed
    return ZERO


def _normalize_rate(value: Any) -> Decimal:
    parsed = _to_decimal(value)
    if parsed is None or parsed <= 0:
        return ZERO
    return _round(parsed)


def _resolve_rate(raw: Mapping[str, Any], default: Optional[CategoryTaxDefault]) -> Decimal:
    rate = _normalize_rate(_pick(raw, "gstRate", "gst_rate"))
    if rate > 0:
        return rate
    if default is not None:
        return _normalize_rate(default.gst_rate)
    return ZERO


def _resolve_mode(raw: Mapping[str, Any], default: Optional[CategoryTaxDefault]) -> str:
    mode = _pick(raw, "gstMode", "gst_mode")
    if mode in GST_MODES:
        return mode
    if default is not None and default.gst_mode in GST_MODES:
        return default.gst_mode
    return GST_EXCLUDE


def resolve_item_id(raw: Mapping[str, Any]) -> Optional[int]:
    value = _pick(raw, "itemId", "item_id", "id")
    parsed = _to_decimal(value)
    if parsed is None:
        return None
    return int(parsed)


def _resolve_addons(raw: Mapping[str, Any]) -> list[str]:
    addons = raw.get("addons")
    if not isinstance(addons, list):
        return []
    names = []
    for addon in addons:
        if isinstance(addon, Mapping):
            names.append(str(addon.get("name") or "Addon"))
        elif isinstance(addon, str):
            names.append(addon)
    return names


def _resolve_printed(raw: Mapping[str, Any], quantity: int) -> int:
    parsed = _to_decimal(_pick(raw, "printedQuantity", "printed_quantity"))
    if parsed is None or parsed <= 0:
        return 0
    return min(int(parsed), quantity)


# =============================================================================
# CANONICALIZATION
# =============================================================================

def canonicalize(
    raw: Union[Mapping[str, Any], CanonicalLineItem],
    category_default: Optional[CategoryTaxDefault] = None,
    line_index: int = 0,
) -> CanonicalLineItem:
    """
    Produce exactly one canonical line item from a raw one.

    Args:
        raw: Stored line item (camelCase or snake_case keys) or a canonical item
        category_default: Category tax fallback for items without their own
        line_index: Position of the line inside the order

    Returns:
        CanonicalLineItem with line_total == base_subtotal + gst_amount
    """
    if isinstance(raw, CanonicalLineItem):
        raw = raw.to_dict()

    quantity = _resolve_quantity(raw)
    unit_price = _resolve_unit_price(raw)

    explicit_subtotal = _to_decimal(_pick(raw, *SUBTOTAL_KEYS))
    base_subtotal = _round(explicit_subtotal if explicit_subtotal is not None else unit_price * quantity)

    gst_rate = _resolve_rate(raw, category_default)
    gst_mode = _resolve_mode(raw, category_default)

    line_total: Optional[Decimal] = None
    explicit_total = _to_decimal(_pick(raw, *LINE_TOTAL_KEYS))
    if explicit_total is not None and explicit_total > 0:
        line_total = _round(explicit_total)
        if line_total < base_subtotal:
            _recover(
                "stored line total below base subtotal, re-deriving from rate",
                line_total=str(line_total),
                base_subtotal=str(base_subtotal),
            )
            line_total = None

    if gst_rate == 0:
        line_total = base_subtotal
    elif line_total is None:
        if gst_mode == GST_INCLUDE:
            unit_with_tax = _round(unit_price * (1 + gst_rate / HUNDRED))
            line_total = _round(unit_with_tax * quantity)
        else:
            estimated_gst = _round(base_subtotal * gst_rate / HUNDRED)
            line_total = _round(base_subtotal + estimated_gst)

    if gst_mode == GST_INCLUDE and gst_rate > 0:
        unit_price_with_tax = _round(line_total / quantity)
        line_total = _round(unit_price_with_tax * quantity)
    else:
        unit_price_with_tax = _round(unit_price)

    if line_total < base_subtotal:
        line_total = base_subtotal
    gst_amount = _round(line_total - base_subtotal)

    printed = _resolve_printed(raw, quantity)

    return CanonicalLineItem(
        name=str(raw.get("name") or "Item"),
        quantity=quantity,
        unit_price=float(_round(unit_price)),
        unit_price_with_tax=float(unit_price_with_tax),
        base_subtotal=float(base_subtotal),
        gst_rate=float(gst_rate),
        gst_mode=gst_mode,
        gst_amount=float(gst_amount),
        line_total=float(line_total),
        printed_quantity=printed,
        unprinted_quantity=quantity - printed,
        item_id=resolve_item_id(raw),
        line_index=line_index,
        addons=_resolve_addons(raw),
    )


def parse_raw_items(payload: Any) -> list[dict[str, Any]]:
    """
    Decode a stored item payload into a list of raw line items.

    Accepts JSON text, a list, or an object wrapping ``{"items": [...]}``.
    Anything unparseable degrades to an empty list so display and billing
    stay available for corrupted historical orders.
    """
    if payload is None:
        return []
    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload)
        except (TypeError, ValueError) as e:
            _recover("unparseable item payload, treating as empty", error=str(e))
            return []
    if isinstance(payload, Mapping):
        payload = payload.get("items")
    if not isinstance(payload, list):
        return []

    items = []
    for entry in payload:
        if isinstance(entry, Mapping):
            items.append(dict(entry))
        else:
            _recover("skipping non-object line item", entry=repr(entry)[:50])
    return items


def canonicalize_items(
    raw_items: Iterable[Mapping[str, Any]],
    category_defaults: Optional[Mapping[int, CategoryTaxDefault]] = None,
) -> list[CanonicalLineItem]:
    """Canonicalize every line of an order, looking tax defaults up by item id."""
    category_defaults = category_defaults or {}
    canonical = []
    for index, raw in enumerate(raw_items):
        item_id = resolve_item_id(raw)
        default = category_defaults.get(item_id) if item_id is not None else None
        canonical.append(canonicalize(raw, default, line_index=index))
    return canonical


def order_total(items: Iterable[CanonicalLineItem]) -> float:
    """Sum of line totals, rounded."""
    total = sum((Decimal(str(item.line_total)) for item in items), ZERO)
    return float(_round(total))
