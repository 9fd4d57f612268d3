import os

# Must be set before the fulfillment package reads its settings
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENV_MODE"] = "development"
os.environ["SALES_LEDGER_ENABLED"] = "false"

import pytest
from fastapi import Depends
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.config import get_settings

get_settings.cache_clear()

from fulfillment.database import build_engine, get_db, init_db
from fulfillment.models import DiningTable, MenuCategory, MenuItem, Vendor
from fulfillment.services.events import InMemoryEventBroadcaster
from fulfillment.services.orders import OrderService

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

PANEER_TIKKA = 1  # Starters: 5% exclude
MASALA_CHAI = 2  # Beverages: 12% include
BUTTER_NAAN = 3  # Breads: no GST


@pytest.fixture
async def engine():
    engine = build_engine(TEST_DATABASE_URL)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
async def seeded(db):
    """Vendor 1 takes every channel, vendor 2 is dine-in only."""
    db.add_all([
        Vendor(id=1, name="Spice Route", gstin="29ABCDE1234F1Z5", is_delivery_allowed=True, is_pickup_allowed=True),
        Vendor(id=2, name="Tiffin Corner"),
        MenuCategory(id=1, vendor_id=1, name="Starters", gst_rate=5.0, gst_mode="exclude"),
        MenuCategory(id=2, vendor_id=1, name="Beverages", gst_rate=12.0, gst_mode="include"),
        MenuCategory(id=3, vendor_id=1, name="Breads", gst_rate=0.0, gst_mode="exclude"),
    ])
    await db.flush()
    db.add_all([
        MenuItem(id=PANEER_TIKKA, vendor_id=1, category_id=1, name="Paneer Tikka", price=220.0),
        MenuItem(id=MASALA_CHAI, vendor_id=1, category_id=2, name="Masala Chai", price=30.0),
        MenuItem(id=BUTTER_NAAN, vendor_id=1, category_id=3, name="Butter Naan", price=45.0),
        DiningTable(id=1, vendor_id=1, table_number=1),
        DiningTable(id=2, vendor_id=1, table_number=2),
        DiningTable(id=3, vendor_id=2, table_number=1),
    ])
    await db.commit()
    return db


@pytest.fixture
def broadcaster():
    return InMemoryEventBroadcaster(max_queue=100)


@pytest.fixture
def service(seeded, broadcaster):
    return OrderService(seeded, broadcaster=broadcaster)


@pytest.fixture
async def client(seeded, session_maker, broadcaster):
    from fulfillment.main import app, get_order_service

    async def override_get_db():
        async with session_maker() as session:
            yield session

    def override_order_service(db: AsyncSession = Depends(get_db)):
        return OrderService(db, broadcaster=broadcaster)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_order_service] = override_order_service
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def drain(subscription):
    """Everything queued on a subscription so far."""
    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait())
    return events


def dining_items():
    return [
        {"itemId": PANEER_TIKKA, "name": "Paneer Tikka", "price": 220, "quantity": 2},
        {"itemId": MASALA_CHAI, "name": "Masala Chai", "price": 30, "quantity": 3},
        {"itemId": BUTTER_NAAN, "name": "Butter Naan", "price": 45, "quantity": 4},
    ]
