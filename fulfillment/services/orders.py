"""
Order Service

The operation surface of the fulfillment engine. One instance wraps one
AsyncSession; every mutation locks the order row, commits, and only then
publishes its lifecycle event.

    create_order          checkout → pending order
    advance_status        single-step status move (validated per channel)
    advance               move to the computed next status
    set_payment_method    one-time payment method record
    get_canonical_items   recomputed canonical line items
    get_unprinted_items / mark_printed / print_ticket
    build_invoice         bill preview
    finalize_bill         resolve payment, complete the order, queue ledger export
    list_orders / sales_summary / purge_orders
"""

import logging
import secrets
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional, Union

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.config import get_settings
from fulfillment.core.exceptions import (
    ChannelDisabled,
    FulfillmentError,
    InvalidTransition,
    MissingPaymentMethod,
    OrderValidationError,
    PaymentMethodConflict,
)
from fulfillment.models import Channel, KitchenTicket, Order
from fulfillment.services import lifecycle
from fulfillment.services.collaborators import (
    BaseCatalogService,
    BaseTableService,
    BaseVendorService,
    SqlCatalogService,
    SqlTableService,
    SqlVendorService,
)
from fulfillment.services.events import get_event_broadcaster
from fulfillment.services.events.base import (
    BaseEventBroadcaster,
    OrderCreated,
    OrderStatusChanged,
    OrderUpdated,
    TableStatusChanged,
)
from fulfillment.services.invoice import (
    DiscountSpec,
    Invoice,
    build_invoice,
    normalize_payment_method,
    resolve_payment_method,
)
from fulfillment.services.kitchen import KitchenTicketService, PrintResult, THERMAL_WIDTH
from fulfillment.services.pricing import CanonicalLineItem, ZERO, _round, order_total, parse_raw_items
from fulfillment.services.store import canonical_items_for, load_order, publish_safely, write_raw_items
from fulfillment.tasks import export_invoice_to_ledger

logger = logging.getLogger(__name__)
settings = get_settings()

PRINT_ANNOTATIONS = ("printedQuantity", "printed_quantity")


@dataclass
class CustomerInfo:
    name: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class ChannelRef:
    """Channel-specific reference: a table, a delivery address or a pickup slot."""
    table_id: Optional[int] = None
    delivery_address_id: Optional[int] = None
    delivery_address: Optional[str] = None
    pickup_reference: Optional[str] = None
    pickup_time: Optional[datetime] = None


@dataclass
class DailySales:
    day: date
    orders: int = 0
    total: float = 0.0


@dataclass
class SalesSummary:
    """Recomputed totals of fulfilled orders for one vendor."""
    vendor_id: int
    start: Optional[date]
    end: Optional[date]
    order_count: int = 0
    subtotal: float = 0.0
    gst_total: float = 0.0
    total: float = 0.0
    by_channel: dict[str, float] = field(default_factory=dict)
    by_day: list[DailySales] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "vendor_id": self.vendor_id,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "order_count": self.order_count,
            "subtotal": self.subtotal,
            "gst_total": self.gst_total,
            "total": self.total,
            "by_channel": self.by_channel,
            "by_day": [
                {"day": d.day.isoformat(), "orders": d.orders, "total": d.total}
                for d in self.by_day
            ],
        }


def generate_pickup_reference(prefix: Optional[str] = None) -> str:
    prefix = prefix or settings.pickup_reference_prefix
    return f"{prefix}-{secrets.token_hex(3).upper()}"


def _strip_print_annotations(item: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in item.items() if k not in PRINT_ANNOTATIONS}


class OrderService:
    """
    Fulfillment operations over one database session.

    Collaborators default to the SQLAlchemy implementations sharing the
    same session, so a table release commits with the status change that
    caused it.
    """

    def __init__(
        self,
        db: AsyncSession,
        broadcaster: Optional[BaseEventBroadcaster] = None,
        catalog: Optional[BaseCatalogService] = None,
        tables: Optional[BaseTableService] = None,
        vendors: Optional[BaseVendorService] = None,
    ):
        self.db = db
        self.broadcaster = broadcaster if broadcaster is not None else get_event_broadcaster()
        self.catalog = catalog or SqlCatalogService(db)
        self.tables = tables or SqlTableService(db)
        self.vendors = vendors or SqlVendorService(db)
        self.kitchen = KitchenTicketService(
            db, catalog=self.catalog, broadcaster=self.broadcaster, vendors=self.vendors,
        )

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    async def create_order(
        self,
        channel: Union[Channel, str],
        raw_items: Any,
        customer_info: Optional[CustomerInfo] = None,
        channel_ref: Optional[ChannelRef] = None,
        *,
        vendor_id: int,
    ) -> Order:
        """
        Persist a new pending order.

        Raises:
            ChannelDisabled: Vendor does not accept this channel
            OrderValidationError: No items, or the channel reference is missing
        """
        channel = lifecycle.as_channel(channel)
        customer_info = customer_info or CustomerInfo()
        channel_ref = channel_ref or ChannelRef()

        flags = await self.vendors.get_channel_flags(vendor_id)
        if not flags.allows(channel):
            raise ChannelDisabled(
                f"Vendor #{vendor_id} does not accept {channel.value} orders",
                vendor_id=vendor_id,
                channel=channel.value,
            )

        items = [_strip_print_annotations(item) for item in parse_raw_items(raw_items)]
        if not items:
            raise OrderValidationError("An order needs at least one line item")
        if channel == Channel.DINING and channel_ref.table_id is None:
            raise OrderValidationError("Dine-in orders need a table")
        if channel == Channel.DELIVERY and not (channel_ref.delivery_address or channel_ref.delivery_address_id):
            raise OrderValidationError("Delivery orders need an address")

        order = Order(
            vendor_id=vendor_id,
            channel=channel,
            status=lifecycle.PENDING,
            customer_name=customer_info.name,
            customer_phone=customer_info.phone,
            customer_notes=customer_info.notes,
        )
        if channel == Channel.DINING:
            order.table_id = channel_ref.table_id
        elif channel == Channel.DELIVERY:
            order.delivery_address_id = channel_ref.delivery_address_id
            order.delivery_address = channel_ref.delivery_address
        else:
            order.pickup_reference = channel_ref.pickup_reference or generate_pickup_reference()
            order.pickup_time = channel_ref.pickup_time

        write_raw_items(order, items, await canonical_items_for(order, self.catalog, items))
        self.db.add(order)

        table_active = None
        if channel == Channel.DINING:
            table_active = await self.tables.occupy_table(order.table_id)

        await self.db.commit()
        await self.db.refresh(order)

        logger.info(f"✅ Order #{order.id} created ({channel.value}, vendor #{vendor_id}, total {order.total_amount})")

        publish_safely(self.broadcaster, OrderCreated(
            vendor_id=vendor_id, order_id=order.id, channel=channel.value, table_id=order.table_id,
        ))
        if table_active is not None:
            publish_safely(self.broadcaster, TableStatusChanged(
                vendor_id=vendor_id, table_id=order.table_id, is_active=table_active,
            ))
        return order

    async def get_order(self, order_id: int) -> Order:
        return await load_order(self.db, order_id)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def _transition(self, order: Order, target: str) -> Order:
        """Apply a validated move on a locked order, commit, then publish."""
        channel = lifecycle.as_channel(order.channel)
        try:
            if not lifecycle.check_transition(channel, order.status, target):
                await self.db.commit()  # releases the row lock
                logger.debug(f"Order #{order.id} already {order.status}")
                return order
            target = lifecycle.normalize_status(target)
            if target in lifecycle.PAYMENT_GUARDED:
                resolve_payment_method(order.payment_method)
        except FulfillmentError:
            await self.db.rollback()
            raise

        previous = order.status
        order.status = target
        stamp = lifecycle.status_timestamp_field(target)
        if stamp:
            setattr(order, stamp, datetime.now(timezone.utc))

        table_active = None
        if channel == Channel.DINING and lifecycle.is_terminal(channel, target) and order.table_id is not None:
            table_active = await self.tables.release_table(order.table_id)

        await self.db.commit()
        await self.db.refresh(order)

        logger.info(f"Order #{order.id}: {previous} → {target}")

        publish_safely(self.broadcaster, OrderStatusChanged(
            vendor_id=order.vendor_id, order_id=order.id, status=target, table_id=order.table_id,
        ))
        if table_active is not None:
            publish_safely(self.broadcaster, TableStatusChanged(
                vendor_id=order.vendor_id, table_id=order.table_id, is_active=table_active,
            ))
        return order

    async def advance_status(self, order_id: int, target_status: str) -> Order:
        """
        Move an order to ``target_status``.

        Repeating the current status is a no-op. Entering ``completed``
        needs a recorded payment method.

        Raises:
            OrderNotFound: No such order
            InvalidTransition: Unknown, skipped or backwards status
            MissingPaymentMethod: Completing without a payment method
        """
        order = await load_order(self.db, order_id, for_update=True)
        return await self._transition(order, target_status)

    async def advance(self, order_id: int) -> Order:
        """Move an order one step along its channel's flow."""
        order = await load_order(self.db, order_id, for_update=True)
        try:
            target = lifecycle.next_status(order.channel, order.status)
        except FulfillmentError:
            await self.db.rollback()
            raise
        return await self._transition(order, target)

    # =========================================================================
    # PAYMENT
    # =========================================================================

    async def set_payment_method(self, order_id: int, method: str, override: bool = False) -> Order:
        """
        Record how the order is paid. Settlement happens elsewhere.

        Raises:
            MissingPaymentMethod: No method given
            PaymentMethodConflict: A different method is already recorded
        """
        method = normalize_payment_method(method)
        if method is None:
            raise MissingPaymentMethod("A payment method (cash or upi) is required")

        order = await load_order(self.db, order_id, for_update=True)
        if order.payment_method == method:
            await self.db.commit()  # releases the row lock
            return order
        if order.payment_method and not override:
            stored = order.payment_method
            await self.db.rollback()
            raise PaymentMethodConflict(
                f"Order #{order_id} is already paid by {stored}",
                stored=stored,
                requested=method,
            )

        order.payment_method = method
        await self.db.commit()
        await self.db.refresh(order)
        logger.info(f"💳 Order #{order_id} payment method set to {method}")

        publish_safely(self.broadcaster, OrderUpdated(
            vendor_id=order.vendor_id, order_id=order.id, table_id=order.table_id,
        ))
        return order

    # =========================================================================
    # ITEMS & KITCHEN
    # =========================================================================

    async def get_canonical_items(self, order_id: int) -> list[CanonicalLineItem]:
        return await self.kitchen.get_all_items(order_id)

    async def get_unprinted_items(self, order_id: int) -> list[CanonicalLineItem]:
        return await self.kitchen.get_unprinted_items(order_id)

    async def mark_printed(self, order_id: int, entries: Iterable[Mapping[str, Any]]) -> list[CanonicalLineItem]:
        return await self.kitchen.mark_printed(order_id, entries)

    async def print_ticket(self, order_id: int, full: bool = False, width: int = THERMAL_WIDTH) -> PrintResult:
        return await self.kitchen.print_ticket(order_id, full=full, width=width)

    # =========================================================================
    # BILLING
    # =========================================================================

    async def build_invoice(
        self,
        order_id: int,
        discount: Union[DiscountSpec, Mapping[str, Any], None] = None,
    ) -> Invoice:
        order = await load_order(self.db, order_id)
        items = await canonical_items_for(order, self.catalog)
        return build_invoice(items, discount, order_id=order.id, payment_method=order.payment_method)

    async def finalize_bill(
        self,
        order_id: int,
        discount: Union[DiscountSpec, Mapping[str, Any], None] = None,
        payment_method: Optional[str] = None,
    ) -> Invoice:
        """
        Close the bill: a stored payment method wins over the requested
        one, the order moves to ``completed`` (its channel permitting) and
        the invoice is queued for the sales ledger.

        Billing happens once. Finalizing an already billed order returns
        its invoice again without another ledger export.

        Raises:
            MissingPaymentMethod: Neither a stored nor a requested method
            InvalidTransition: The order is not one step from completion,
            or for channels without ``completed``, not yet at its last status
        """
        order = await load_order(self.db, order_id, for_update=True)
        channel = lifecycle.as_channel(order.channel)

        if order.billed_at is not None:
            items = await canonical_items_for(order, self.catalog)
            await self.db.commit()  # releases the row lock
            logger.info(f"Order #{order_id} already billed at {order.billed_at}, not exporting again")
            return build_invoice(items, discount, order_id=order.id, payment_method=order.payment_method)

        try:
            if not (
                lifecycle.is_terminal(channel, order.status)
                or lifecycle.next_status(channel, order.status) == lifecycle.COMPLETED
            ):
                raise InvalidTransition(
                    f"Order #{order_id} cannot be billed while {order.status}",
                    current=order.status,
                    target=lifecycle.flow_for(channel)[-1],
                    channel=channel.value,
                )
            method = resolve_payment_method(order.payment_method, payment_method)
        except FulfillmentError:
            await self.db.rollback()
            raise

        order.payment_method = method
        order.billed_at = datetime.now(timezone.utc)
        items = await canonical_items_for(order, self.catalog)
        invoice = build_invoice(items, discount, order_id=order.id, payment_method=method)

        if lifecycle.COMPLETED in lifecycle.flow_for(channel):
            order = await self._transition(order, lifecycle.COMPLETED)
        else:
            await self.db.commit()
            await self.db.refresh(order)
            publish_safely(self.broadcaster, OrderUpdated(
                vendor_id=order.vendor_id, order_id=order.id, table_id=order.table_id,
            ))

        logger.info(f"🧾 Bill finalized for order #{order_id}: {invoice.grand_total} ({method})")
        self._queue_ledger_export(order, invoice)
        return invoice

    def _queue_ledger_export(self, order: Order, invoice: Invoice) -> None:
        if not settings.sales_ledger_enabled:
            return
        payload = invoice.to_dict()
        payload.update({
            "vendor_id": order.vendor_id,
            "channel": order.channel.value,
            "status": order.status,
            "customer_name": order.customer_name,
            "finalized_at": datetime.now(timezone.utc).isoformat(),
        })
        try:
            export_invoice_to_ledger.delay(payload)
        except Exception as e:
            logger.error(f"Could not queue ledger export for order #{order.id}: {e}")

    # =========================================================================
    # LISTING & REPORTING
    # =========================================================================

    async def list_orders(
        self,
        vendor_id: int,
        channel: Union[Channel, str, None] = None,
        bucket: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> tuple[int, list[Order]]:
        """
        Page through a vendor's orders, newest first.

        ``bucket`` is a display bucket (e.g. ``served`` for dine-in) and is
        resolved to the channel statuses that map onto it.

        Returns:
            (total matching, page of orders)
        """
        conditions = [Order.vendor_id == vendor_id]
        channels = [lifecycle.as_channel(channel)] if channel else list(Channel)
        if channel:
            conditions.append(Order.channel == channels[0])

        if bucket:
            bucket = lifecycle.normalize_status(bucket)
            scoped = []
            for ch in channels:
                statuses = [s for s in lifecycle.flow_for(ch) if lifecycle.display_bucket(ch, s) == bucket]
                if statuses:
                    scoped.append(and_(Order.channel == ch, Order.status.in_(statuses)))
            if not scoped:
                return 0, []
            conditions.append(or_(*scoped))

        count_result = await self.db.execute(select(func.count(Order.id)).where(*conditions))
        total = count_result.scalar() or 0

        result = await self.db.execute(
            select(Order)
            .where(*conditions)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .offset(skip)
            .limit(limit)
        )
        return total, list(result.scalars().all())

    async def sales_summary(
        self,
        vendor_id: int,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> SalesSummary:
        """
        Totals of fulfilled orders (terminal status) between two dates,
        inclusive, recomputed from canonical items rather than the stored
        total snapshot.
        """
        conditions = [
            Order.vendor_id == vendor_id,
            Order.status.in_([lifecycle.COMPLETED, lifecycle.DELIVERED]),
        ]
        if start:
            conditions.append(Order.created_at >= datetime.combine(start, time.min))
        if end:
            conditions.append(Order.created_at < datetime.combine(end + timedelta(days=1), time.min))

        result = await self.db.execute(select(Order).where(*conditions).order_by(Order.created_at))
        orders = [o for o in result.scalars().all() if lifecycle.is_terminal(o.channel, o.status)]

        subtotal = gst_total = total = ZERO
        by_channel: dict[str, Decimal] = defaultdict(lambda: ZERO)
        by_day: dict[date, DailySales] = {}

        for order in orders:
            items = await canonical_items_for(order, self.catalog)
            order_sum = Decimal(str(order_total(items)))
            subtotal += sum((Decimal(str(i.base_subtotal)) for i in items), ZERO)
            gst_total += sum((Decimal(str(i.gst_amount)) for i in items), ZERO)
            total += order_sum
            by_channel[order.channel.value] += order_sum

            day = (order.created_at or datetime.now(timezone.utc)).date()
            daily = by_day.setdefault(day, DailySales(day=day))
            daily.orders += 1
            daily.total = float(_round(Decimal(str(daily.total)) + order_sum))

        return SalesSummary(
            vendor_id=vendor_id,
            start=start,
            end=end,
            order_count=len(orders),
            subtotal=float(_round(subtotal)),
            gst_total=float(_round(gst_total)),
            total=float(_round(total)),
            by_channel={k: float(_round(v)) for k, v in by_channel.items()},
            by_day=[by_day[d] for d in sorted(by_day)],
        )

    # =========================================================================
    # ADMINISTRATION
    # =========================================================================

    async def purge_orders(self, vendor_id: Optional[int] = None) -> dict[str, int]:
        """
        Delete kitchen tickets and orders, for one vendor or everyone.
        Administrative reset only; nothing is published.
        """
        ticket_query = delete(KitchenTicket)
        order_query = delete(Order)
        if vendor_id is not None:
            ticket_query = ticket_query.where(KitchenTicket.vendor_id == vendor_id)
            order_query = order_query.where(Order.vendor_id == vendor_id)

        tickets = await self.db.execute(ticket_query)
        orders = await self.db.execute(order_query)
        await self.db.commit()

        counts = {"tickets": tickets.rowcount or 0, "orders": orders.rowcount or 0}
        logger.warning(f"🧹 Purged {counts['orders']} orders and {counts['tickets']} tickets"
                       f"{f' for vendor #{vendor_id}' if vendor_id is not None else ''}")
        return counts
