"""
Collaborator Interfaces

The fulfillment engine reads three things it does not own:
    - menu catalog: category tax defaults per menu item
    - table assignment store: occupying / releasing dine-in tables
    - vendor profile store: which channels a vendor accepts

Each is an abstract interface with a SQLAlchemy implementation over the
collaborator tables. The SQL implementations share the caller's session so
table changes commit atomically with the order change that caused them.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.models import Channel, DiningTable, MenuCategory, MenuItem, Vendor
from fulfillment.services.pricing import CategoryTaxDefault

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelFlags:
    """Channels a vendor accepts. Dine-in is always on."""
    delivery: bool = False
    pickup: bool = False

    def allows(self, channel: Channel) -> bool:
        if channel == Channel.DELIVERY:
            return self.delivery
        if channel == Channel.PICKUP:
            return self.pickup
        return True


@dataclass(frozen=True)
class VendorDetails:
    """Header block printed on bills and kitchen tickets."""
    name: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    gstin: Optional[str] = None


class BaseCatalogService(ABC):
    @abstractmethod
    async def get_category_defaults(self, item_ids: Iterable[int]) -> dict[int, CategoryTaxDefault]:
        """Map menu item id → its category's tax defaults. Unknown ids are omitted."""
        pass


class BaseTableService(ABC):
    @abstractmethod
    async def occupy_table(self, table_id: int) -> Optional[bool]:
        """Mark a table occupied. Returns the new is_active flag, None if unknown."""
        pass

    @abstractmethod
    async def release_table(self, table_id: int) -> Optional[bool]:
        """Free a table for new seating. Returns the new is_active flag, None if unknown."""
        pass


class BaseVendorService(ABC):
    @abstractmethod
    async def get_channel_flags(self, vendor_id: int) -> ChannelFlags:
        pass

    @abstractmethod
    async def get_vendor_details(self, vendor_id: int) -> VendorDetails:
        pass


# =============================================================================
# SQLALCHEMY IMPLEMENTATIONS
# =============================================================================

class SqlCatalogService(BaseCatalogService):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_category_defaults(self, item_ids: Iterable[int]) -> dict[int, CategoryTaxDefault]:
        ids = {int(i) for i in item_ids if i is not None}
        if not ids:
            return {}
        result = await self.db.execute(
            select(MenuItem.id, MenuCategory.id, MenuCategory.gst_rate, MenuCategory.gst_mode)
            .join(MenuCategory, MenuItem.category_id == MenuCategory.id)
            .where(MenuItem.id.in_(ids))
        )
        return {
            item_id: CategoryTaxDefault(
                category_id=category_id,
                gst_rate=gst_rate or 0.0,
                gst_mode=gst_mode or "exclude",
            )
            for item_id, category_id, gst_rate, gst_mode in result.all()
        }


class SqlTableService(BaseTableService):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _set_active(self, table_id: int, is_active: bool) -> Optional[bool]:
        result = await self.db.execute(
            select(DiningTable).where(DiningTable.id == table_id).with_for_update()
        )
        table = result.scalar_one_or_none()
        if table is None:
            logger.warning(f"Table #{table_id} not found")
            return None
        table.is_active = is_active
        return table.is_active

    async def occupy_table(self, table_id: int) -> Optional[bool]:
        return await self._set_active(table_id, False)

    async def release_table(self, table_id: int) -> Optional[bool]:
        return await self._set_active(table_id, True)


class SqlVendorService(BaseVendorService):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get(self, vendor_id: int) -> Optional[Vendor]:
        result = await self.db.execute(select(Vendor).where(Vendor.id == vendor_id))
        return result.scalar_one_or_none()

    async def get_channel_flags(self, vendor_id: int) -> ChannelFlags:
        vendor = await self._get(vendor_id)
        if vendor is None:
            logger.warning(f"Vendor #{vendor_id} not found, only dine-in allowed")
            return ChannelFlags()
        return ChannelFlags(
            delivery=bool(vendor.is_delivery_allowed),
            pickup=bool(vendor.is_pickup_allowed),
        )

    async def get_vendor_details(self, vendor_id: int) -> VendorDetails:
        vendor = await self._get(vendor_id)
        if vendor is None:
            return VendorDetails()
        return VendorDetails(
            name=vendor.name,
            address=vendor.address,
            phone=vendor.phone,
            gstin=vendor.gstin,
        )
