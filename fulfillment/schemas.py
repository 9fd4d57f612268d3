"""
Pydantic Schemas for Request/Response Validation

Line items are accepted loosely: checkout clients send different price and
tax field names, and the pricing engine reconciles them. Everything else is
validated strictly here before it reaches the order service.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# =============================================================================
# ENUMS
# =============================================================================

class ChannelEnum(str, Enum):
    DINING = "dining"
    DELIVERY = "delivery"
    PICKUP = "pickup"


class PaymentMethodEnum(str, Enum):
    CASH = "cash"
    UPI = "upi"


class DiscountTypeEnum(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class LineItemIn(BaseModel):
    """
    Raw line item as submitted at checkout.

    Unknown keys (``basePrice``, ``subtotalWithGst``, ...) are kept and
    handed to the pricing engine unchanged.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    item_id: Optional[int] = Field(None, alias="itemId", examples=[12])
    name: str = Field(..., min_length=1, max_length=100, examples=["Paneer Tikka"])
    quantity: int = Field(1, ge=1, le=999, examples=[2])
    price: Optional[float] = Field(None, ge=0, examples=[220.0])
    gst_rate: Optional[float] = Field(None, alias="gstRate", ge=0, le=100, examples=[5])
    gst_mode: Optional[str] = Field(None, alias="gstMode", pattern="^(include|exclude)$")
    addons: List[Any] = Field(default_factory=list)

    def to_raw(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class CustomerIn(BaseModel):
    name: Optional[str] = Field(None, max_length=100, examples=["Asha"])
    phone: Optional[str] = Field(None, max_length=50, examples=["9876543210"])
    notes: Optional[str] = Field(None, max_length=500, examples=["Less spicy"])


class OrderCreate(BaseModel):
    """Request schema for creating a new order."""
    vendor_id: int = Field(..., ge=1, examples=[1])
    channel: ChannelEnum = Field(..., examples=["dining"])
    items: List[LineItemIn] = Field(..., min_length=1)
    customer: CustomerIn = Field(default_factory=CustomerIn)

    # Channel references
    table_id: Optional[int] = Field(None, examples=[3])
    delivery_address_id: Optional[int] = None
    delivery_address: Optional[str] = Field(None, max_length=255)
    pickup_reference: Optional[str] = Field(None, max_length=50)
    pickup_time: Optional[datetime] = None

    @model_validator(mode="after")
    def check_channel_reference(self) -> "OrderCreate":
        if self.channel == ChannelEnum.DINING and self.table_id is None:
            raise ValueError("table_id is required for dining orders")
        if self.channel == ChannelEnum.DELIVERY and not (self.delivery_address or self.delivery_address_id):
            raise ValueError("delivery_address or delivery_address_id is required for delivery orders")
        return self


class StatusUpdate(BaseModel):
    status: str = Field(..., min_length=1, max_length=30, examples=["accepted"])


class PaymentMethodUpdate(BaseModel):
    payment_method: PaymentMethodEnum
    override: bool = False


class PrintMark(BaseModel):
    item_id: int = Field(..., alias="itemId")
    quantity: int = Field(..., ge=1)

    model_config = ConfigDict(populate_by_name=True)


class MarkPrintedRequest(BaseModel):
    items: List[PrintMark] = Field(..., min_length=1)


class PrintRequest(BaseModel):
    full: bool = Field(False, description="Reprint every item without touching print counts")
    width: int = Field(32, description="Characters per line: 32 thermal, 64 full page")


class DiscountIn(BaseModel):
    type: DiscountTypeEnum
    value: float = Field(..., ge=0)


class InvoiceRequest(BaseModel):
    discount: Optional[DiscountIn] = None


class FinalizeBillRequest(BaseModel):
    discount: Optional[DiscountIn] = None
    payment_method: Optional[PaymentMethodEnum] = None


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class LineItemOut(BaseModel):
    item_id: Optional[int]
    line_index: int
    name: str
    quantity: int
    unit_price: float
    unit_price_with_tax: float
    base_subtotal: float
    gst_rate: float
    gst_mode: str
    gst_amount: float
    line_total: float
    printed_quantity: int
    unprinted_quantity: int
    addons: List[str] = []


class OrderResponse(BaseModel):
    """Response schema for a single order."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    vendor_id: int
    channel: ChannelEnum
    status: str
    customer_name: Optional[str]
    customer_phone: Optional[str]
    customer_notes: Optional[str]
    table_id: Optional[int]
    delivery_address_id: Optional[int]
    delivery_address: Optional[str]
    pickup_reference: Optional[str]
    pickup_time: Optional[datetime]
    total_amount: float
    payment_method: Optional[str]
    accepted_at: Optional[datetime]
    preparing_at: Optional[datetime]
    ready_at: Optional[datetime]
    out_for_delivery_at: Optional[datetime]
    delivered_at: Optional[datetime]
    completed_at: Optional[datetime]
    billed_at: Optional[datetime] = None
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


class OrderDetailResponse(OrderResponse):
    """Order plus its recomputed line items and display state."""
    items: List[LineItemOut] = []
    display_bucket: str
    can_advance: bool
    next_status: Optional[str] = None


class OrderListResponse(BaseModel):
    total: int
    orders: List[OrderResponse]


class ItemsResponse(BaseModel):
    order_id: int
    items: List[LineItemOut]


class PrintResponse(BaseModel):
    order_id: int
    ticket_id: Optional[int]
    ticket_number: Optional[str]
    created: bool
    full: bool
    items: List[LineItemOut]
    text: str


class DiscountOut(BaseModel):
    type: DiscountTypeEnum
    value: float


class InvoiceResponse(BaseModel):
    order_id: Optional[int]
    items: List[LineItemOut]
    subtotal: float
    gst_total: float
    pre_discount_total: float
    discount: Optional[DiscountOut]
    discount_amount: float
    grand_total: float
    payment_method: Optional[str]


class DailySalesOut(BaseModel):
    day: date
    orders: int
    total: float


class SalesSummaryResponse(BaseModel):
    vendor_id: int
    start: Optional[date]
    end: Optional[date]
    order_count: int
    subtotal: float
    gst_total: float
    total: float
    by_channel: dict[str, float]
    by_day: List[DailySalesOut]


class PurgeResponse(BaseModel):
    success: bool = True
    tickets: int
    orders: int


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    events: str
    event_provider: str
    subscribers: int
    timestamp: datetime
