"""
Kitchen Ticket & Partial Print Tracker

Remembers, per line item, how much of its quantity has already gone to the
kitchen printer so that adding items to an open order only sends the new
quantities, while a full reprint (thermal ↔ A4) can still show everything.

    0 <= printed_quantity <= quantity
    unprinted_quantity = quantity - printed_quantity

The counts live on the raw items as a ``printedQuantity`` annotation. Every
mutation is a read-modify-write under the order's row lock.

Usage:
    service = KitchenTicketService(db)
    result = await service.print_ticket(order_id)          # kitchen print
    result = await service.print_ticket(order_id, full=True)  # reprint only
"""

import json
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.config import get_settings
from fulfillment.core.exceptions import PrintPrecondition
from fulfillment.models import KitchenTicket, Order
from fulfillment.services.collaborators import (
    BaseCatalogService,
    BaseVendorService,
    SqlCatalogService,
    VendorDetails,
)
from fulfillment.services.events import get_event_broadcaster
from fulfillment.services.events.base import BaseEventBroadcaster, KotCreated, OrderUpdated
from fulfillment.services.pricing import CanonicalLineItem, _to_decimal, resolve_item_id
from fulfillment.services.store import (
    canonical_items_for,
    load_order,
    load_ticket,
    publish_safely,
    read_raw_items,
    write_raw_items,
)

logger = logging.getLogger(__name__)
settings = get_settings()

THERMAL_WIDTH = 32
FULL_PAGE_WIDTH = 64


# =============================================================================
# PURE HELPERS
# =============================================================================

def unprinted(items: Iterable[CanonicalLineItem]) -> list[CanonicalLineItem]:
    return [item for item in items if item.unprinted_quantity > 0]


def apply_print_marks(
    raw_items: list[dict[str, Any]],
    canonical: list[CanonicalLineItem],
    entries: Iterable[Mapping[str, Any]],
) -> tuple[list[dict[str, Any]], int]:
    """
    Add printed quantities to raw items, clamped to what is still unprinted.

    When several lines share an item id the requested quantity fills them
    in order. Unknown ids and non-positive quantities are skipped.

    Returns:
        (updated copies of the raw items, total quantity newly marked)
    """
    updated = [dict(item) for item in raw_items]
    printed = [item.printed_quantity for item in canonical]
    marked = 0

    for entry in entries:
        item_id = resolve_item_id(entry) if isinstance(entry, Mapping) else None
        quantity = _to_decimal(entry.get("quantity")) if isinstance(entry, Mapping) else None
        if item_id is None or quantity is None or quantity <= 0:
            logger.warning(f"Ignoring print mark {entry!r}")
            continue

        remaining = int(quantity)
        matched = False
        for index, item in enumerate(canonical):
            if item.item_id != item_id:
                continue
            matched = True
            take = min(remaining, item.quantity - printed[index])
            if take <= 0:
                continue
            printed[index] += take
            remaining -= take
            marked += take
            if remaining == 0:
                break
        if not matched:
            logger.warning(f"Ignoring print mark for unknown item #{item_id}")

    for index, count in enumerate(printed):
        updated[index]["printedQuantity"] = count
    return updated, marked


def mark_all_printed(
    raw_items: list[dict[str, Any]],
    canonical: list[CanonicalLineItem],
) -> list[dict[str, Any]]:
    updated = [dict(item) for item in raw_items]
    for raw, item in zip(updated, canonical):
        raw["printedQuantity"] = item.quantity
    return updated


def generate_ticket_number(order_id: int, prefix: Optional[str] = None) -> str:
    """e.g. ``KOT-00042-9F1C``. The order id keeps it unique per order."""
    prefix = prefix or settings.ticket_prefix
    return f"{prefix}-{order_id:05d}-{secrets.token_hex(2).upper()}"


def _center(text: str, width: int) -> str:
    return text[:width].center(width).rstrip()


def _channel_line(order: Order) -> str:
    channel = order.channel.value if order.channel else "dining"
    if channel == "dining":
        return f"DINE-IN  Table {order.table_id}"
    if channel == "pickup":
        return f"PICKUP  {order.pickup_reference or ''}".rstrip()
    return "DELIVERY"


def format_ticket_text(
    ticket_number: str,
    order: Order,
    items: Iterable[CanonicalLineItem],
    width: int = THERMAL_WIDTH,
    full: bool = False,
    vendor: Optional[VendorDetails] = None,
) -> str:
    """
    Render a plain-text kitchen ticket.

    A kitchen print lists each line's unprinted quantity; a full reprint
    lists whole quantities and is marked as a reprint.
    """
    rule = "-" * width
    lines = []
    if vendor and vendor.name:
        lines.append(_center(vendor.name, width))
    lines.append(_center("KITCHEN ORDER TICKET", width))
    if full:
        lines.append(_center("** REPRINT **", width))
    lines.append(rule)
    lines.append(f"KOT: {ticket_number}")
    lines.append(f"Order #{order.id}")
    lines.append(_channel_line(order))
    if order.customer_name:
        lines.append(f"Customer: {order.customer_name}")
    lines.append(datetime.now(timezone.utc).strftime("%d-%m-%Y %H:%M UTC"))
    lines.append(rule)

    for item in items:
        quantity = item.quantity if full else item.unprinted_quantity
        if quantity <= 0:
            continue
        prefix = f"{quantity:>3} x "
        lines.append(f"{prefix}{item.name}"[:width])
        for addon in item.addons:
            lines.append(f"{' ' * len(prefix)}+ {addon}"[:width])

    lines.append(rule)
    if order.customer_notes:
        lines.append(f"Note: {order.customer_notes}"[:width * 3])
    return "\n".join(lines) + "\n"


# =============================================================================
# SERVICE
# =============================================================================

@dataclass
class PrintResult:
    """Outcome of one print request."""
    order_id: int
    items: list[CanonicalLineItem] = field(default_factory=list)
    ticket: Optional[KitchenTicket] = None
    created: bool = False
    full: bool = False
    text: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "ticket_id": self.ticket.id if self.ticket else None,
            "ticket_number": self.ticket.ticket_number if self.ticket else None,
            "created": self.created,
            "full": self.full,
            "items": [item.to_dict() for item in self.items],
            "text": self.text,
        }


class KitchenTicketService:
    """Print tracking for one database session."""

    def __init__(
        self,
        db: AsyncSession,
        catalog: Optional[BaseCatalogService] = None,
        broadcaster: Optional[BaseEventBroadcaster] = None,
        vendors: Optional[BaseVendorService] = None,
    ):
        self.db = db
        self.catalog = catalog or SqlCatalogService(db)
        self.vendors = vendors
        self.broadcaster = broadcaster if broadcaster is not None else get_event_broadcaster()

    async def get_all_items(self, order_id: int) -> list[CanonicalLineItem]:
        """Every line with its print counts. No kitchen side effects."""
        order = await load_order(self.db, order_id)
        return await canonical_items_for(order, self.catalog)

    async def get_unprinted_items(self, order_id: int) -> list[CanonicalLineItem]:
        return unprinted(await self.get_all_items(order_id))

    async def mark_printed(
        self,
        order_id: int,
        entries: Iterable[Mapping[str, Any]],
    ) -> list[CanonicalLineItem]:
        """
        Record that the given quantities reached the kitchen.

        Args:
            order_id: Order to annotate
            entries: ``[{"itemId": ..., "quantity": ...}, ...]``

        Returns:
            The order's canonical items after marking
        """
        order = await load_order(self.db, order_id, for_update=True)
        raw_items = read_raw_items(order)
        canonical = await canonical_items_for(order, self.catalog, raw_items)

        updated, marked = apply_print_marks(raw_items, canonical, list(entries))
        if marked == 0:
            await self.db.commit()  # releases the row lock
            logger.info(f"Order #{order_id}: nothing new to mark printed")
            return canonical

        canonical = await canonical_items_for(order, self.catalog, updated)
        write_raw_items(order, updated, canonical)
        await self.db.commit()
        logger.info(f"Order #{order_id}: marked {marked} item(s) printed")

        publish_safely(self.broadcaster, OrderUpdated(
            vendor_id=order.vendor_id, order_id=order.id, table_id=order.table_id,
        ))
        return canonical

    async def _ensure_ticket(
        self,
        order: Order,
        snapshot: list[CanonicalLineItem],
    ) -> tuple[KitchenTicket, bool]:
        ticket = await load_ticket(self.db, order.id)
        if ticket is not None:
            return ticket, False
        ticket = KitchenTicket(
            order_id=order.id,
            vendor_id=order.vendor_id,
            table_id=order.table_id,
            ticket_number=generate_ticket_number(order.id),
            status="pending",
            items=json.dumps([item.to_dict() for item in snapshot]),
            customer_notes=order.customer_notes,
        )
        self.db.add(ticket)
        return ticket, True

    async def print_ticket(
        self,
        order_id: int,
        full: bool = False,
        width: int = THERMAL_WIDTH,
    ) -> PrintResult:
        """
        Print an order for the kitchen, or reprint it in full.

        The current item state is read first; printing never proceeds on a
        failed read. A kitchen print marks every unprinted quantity as
        printed in the same transaction that creates the ticket. A full
        reprint changes no print counts.

        Raises:
            OrderNotFound: No such order
            PrintPrecondition: The current items could not be read
        """
        try:
            order = await load_order(self.db, order_id, for_update=True)
            raw_items = read_raw_items(order)
            canonical = await canonical_items_for(order, self.catalog, raw_items)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Order #{order_id}: item read before print failed: {e}")
            raise PrintPrecondition(
                f"Could not read current items for order #{order_id}; nothing was printed",
                order_id=order_id,
            ) from e

        lines = canonical if full else unprinted(canonical)
        if not lines:
            await self.db.commit()  # releases the row lock
            logger.info(f"Order #{order_id}: nothing to print")
            return PrintResult(order_id=order_id, ticket=await load_ticket(self.db, order_id), full=full)

        vendor = await self.vendors.get_vendor_details(order.vendor_id) if self.vendors else None
        ticket, created = await self._ensure_ticket(order, lines)
        if not full:
            updated = mark_all_printed(raw_items, canonical)
            write_raw_items(order, updated, await canonical_items_for(order, self.catalog, updated))
        ticket.printed_at = datetime.now(timezone.utc)
        await self.db.commit()

        if created:
            logger.info(f"🧾 Ticket {ticket.ticket_number} created for order #{order_id}")
            publish_safely(self.broadcaster, KotCreated(
                vendor_id=order.vendor_id,
                order_id=order.id,
                kot_id=ticket.id,
                ticket_number=ticket.ticket_number,
                table_id=order.table_id,
            ))
        if not full:
            publish_safely(self.broadcaster, OrderUpdated(
                vendor_id=order.vendor_id, order_id=order.id, table_id=order.table_id,
            ))

        text = format_ticket_text(ticket.ticket_number, order, lines, width=width, full=full, vendor=vendor)
        return PrintResult(
            order_id=order_id,
            items=lines,
            ticket=ticket,
            created=created,
            full=full,
            text=text,
        )
