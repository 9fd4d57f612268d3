"""
SQLAlchemy Database Models

Order fulfillment tables plus the minimal collaborator tables the engine
reads through its catalog, table and vendor interfaces:
- Orders on three channels (dining / delivery / pickup)
- Kitchen order tickets (one per order)
- Vendors, menu categories, menu items and dining tables
"""

import enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.sql import func

from fulfillment.database import Base


class Channel(str, enum.Enum):
    """Fulfillment channel, fixed when the order is created."""
    DINING = "dining"
    DELIVERY = "delivery"
    PICKUP = "pickup"


class PaymentMethod(str, enum.Enum):
    """Recorded payment method. Payments are recorded, never settled."""
    CASH = "cash"
    UPI = "upi"


class GstMode(str, enum.Enum):
    INCLUDE = "include"
    EXCLUDE = "exclude"


class Order(Base):
    """
    Main Order table.

    ``items`` holds the raw line items as JSON text, exactly as submitted at
    checkout plus print-tracking annotations. Canonical prices are derived
    from it on every read and never written back.
    """
    __tablename__ = "orders"
    __mapper_args__ = {"eager_defaults": True}

    # Primary Key
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    vendor_id = Column(Integer, nullable=False, index=True)

    # =========================================================================
    # CHANNEL & STATUS
    # =========================================================================
    channel = Column(
        Enum(Channel, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        index=True
    )
    status = Column(String(30), nullable=False, default="pending", index=True)

    # =========================================================================
    # CUSTOMER INFORMATION
    # =========================================================================
    customer_name = Column(String(100), nullable=True)
    customer_phone = Column(String(50), nullable=True)
    customer_notes = Column(Text, nullable=True)
    vendor_notes = Column(Text, nullable=True)

    # =========================================================================
    # CHANNEL REFERENCES
    # =========================================================================
    table_id = Column(Integer, nullable=True, index=True)  # dining
    delivery_address_id = Column(Integer, nullable=True)  # delivery
    delivery_address = Column(String(255), nullable=True)  # delivery
    pickup_reference = Column(String(50), nullable=True)  # pickup
    pickup_time = Column(DateTime(timezone=True), nullable=True)  # pickup

    # =========================================================================
    # ORDER DETAILS
    # =========================================================================
    items = Column(Text, nullable=False, default="[]")  # JSON string of raw items
    total_amount = Column(Float, nullable=False, default=0.0)  # display snapshot only
    payment_method = Column(String(10), nullable=True)

    # =========================================================================
    # STATUS TIMESTAMPS
    # =========================================================================
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    preparing_at = Column(DateTime(timezone=True), nullable=True)
    ready_at = Column(DateTime(timezone=True), nullable=True)
    out_for_delivery_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    billed_at = Column(DateTime(timezone=True), nullable=True)  # set once by finalize_bill

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Order #{self.id} - {self.channel.value} - {self.status}>"


class KitchenTicket(Base):
    """
    Kitchen order ticket (KOT).

    Exactly one per order, created by the first print request. ``items`` is
    the snapshot taken at that first print; later prints reuse the row and
    only touch ``printed_at``.
    """
    __tablename__ = "kot_tickets"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        unique=True
    )
    vendor_id = Column(Integer, nullable=False, index=True)
    table_id = Column(Integer, nullable=True, index=True)
    ticket_number = Column(String(50), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default="pending")
    items = Column(Text, nullable=False)
    customer_notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    printed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<KitchenTicket {self.ticket_number} - order #{self.order_id}>"


# =============================================================================
# COLLABORATOR TABLES
# =============================================================================

class Vendor(Base):
    """Vendor profile: only the fields the fulfillment engine reads."""
    __tablename__ = "vendors"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    address = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    gstin = Column(String(20), nullable=True)
    is_delivery_allowed = Column(Boolean, nullable=False, default=False)
    is_pickup_allowed = Column(Boolean, nullable=False, default=False)


class MenuCategory(Base):
    __tablename__ = "menu_categories"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    vendor_id = Column(Integer, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    gst_rate = Column(Float, nullable=False, default=0.0)
    gst_mode = Column(String(10), nullable=False, default=GstMode.EXCLUDE.value)


class MenuItem(Base):
    __tablename__ = "menu_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    vendor_id = Column(Integer, nullable=False, index=True)
    category_id = Column(Integer, ForeignKey("menu_categories.id"), nullable=False)
    name = Column(String(100), nullable=False)
    price = Column(Float, nullable=False, default=0.0)


class DiningTable(Base):
    """
    Dine-in table. ``is_active`` False means the table is occupied by an
    open order; completing that order makes it available again.
    """
    __tablename__ = "dining_tables"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    vendor_id = Column(Integer, nullable=False, index=True)
    table_number = Column(Integer, nullable=False)
    captain_id = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_manual = Column(Boolean, nullable=False, default=False)

    def __repr__(self):
        return f"<DiningTable {self.table_number} - {'free' if self.is_active else 'occupied'}>"
