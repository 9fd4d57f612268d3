"""
Order row access shared by the order and kitchen services.

Mutations lock the order row (SELECT ... FOR UPDATE) so concurrent advances
or print markings serialize on it; display reads take no lock.
"""

import json
import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.exceptions import OrderNotFound
from fulfillment.models import KitchenTicket, Order
from fulfillment.services.collaborators import BaseCatalogService
from fulfillment.services.events.base import BaseEventBroadcaster, LifecycleEvent
from fulfillment.services.pricing import (
    CanonicalLineItem,
    canonicalize_items,
    order_total,
    parse_raw_items,
    resolve_item_id,
)

logger = logging.getLogger(__name__)


async def load_order(db: AsyncSession, order_id: int, for_update: bool = False) -> Order:
    """
    Fetch an order, optionally locking its row for the rest of the transaction.

    Raises:
        OrderNotFound: No such order
    """
    query = select(Order).where(Order.id == order_id)
    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(query)
    order = result.scalar_one_or_none()
    if order is None:
        raise OrderNotFound(order_id)
    return order


async def load_ticket(db: AsyncSession, order_id: int) -> Optional[KitchenTicket]:
    result = await db.execute(select(KitchenTicket).where(KitchenTicket.order_id == order_id))
    return result.scalar_one_or_none()


def read_raw_items(order: Order) -> list[dict[str, Any]]:
    items = parse_raw_items(order.items)
    if order.items and not items:
        logger.warning(f"Order #{order.id} has no readable items")
    return items


def write_raw_items(order: Order, items: list[dict[str, Any]], canonical: list[CanonicalLineItem]) -> None:
    """Store raw items back and refresh the display-only total snapshot."""
    order.items = json.dumps(items)
    order.total_amount = order_total(canonical)


async def canonical_items_for(
    order: Order,
    catalog: BaseCatalogService,
    raw_items: Optional[list[dict[str, Any]]] = None,
) -> list[CanonicalLineItem]:
    """Recompute canonical items from the order's raw data and the catalog."""
    raw_items = read_raw_items(order) if raw_items is None else raw_items
    item_ids = [resolve_item_id(item) for item in raw_items]
    defaults = await catalog.get_category_defaults(i for i in item_ids if i is not None)
    return canonicalize_items(raw_items, defaults)


def publish_safely(broadcaster: Optional[BaseEventBroadcaster], event: LifecycleEvent) -> None:
    """Fire-and-forget publish. A broken broadcaster never fails the mutation."""
    if broadcaster is None:
        return
    try:
        broadcaster.publish(event)
    except Exception as e:
        logger.error(f"Event publish failed for {event.type.value}: {e}")
