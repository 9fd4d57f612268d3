"""
Clear Orders

Administrative bulk purge of kitchen tickets and orders.
Run from project root: python scripts/clear_orders.py [--vendor 3] [--yes]
"""

import argparse
import asyncio
import sys

from fulfillment.core.config import setup_logging
from fulfillment.database import async_session_maker, engine
from fulfillment.services.orders import OrderService


async def clear_orders(vendor_id=None) -> dict:
    async with async_session_maker() as db:
        counts = await OrderService(db).purge_orders(vendor_id)
    await engine.dispose()
    return counts


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Delete orders and kitchen tickets")
    parser.add_argument("--vendor", type=int, default=None, help="Only this vendor's orders")
    parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    args = parser.parse_args()

    setup_logging()
    scope = f"vendor #{args.vendor}" if args.vendor is not None else "ALL vendors"
    if not args.yes and input(f"🧹 Delete every order for {scope}? [y/N] ").strip().lower() != "y":
        print("Aborted.")
        sys.exit(1)

    try:
        counts = asyncio.run(clear_orders(args.vendor))
    except Exception as e:
        print(f"❌ Failed to clear orders: {e}")
        sys.exit(1)

    print(f"✅ Cleared {counts['orders']} orders and {counts['tickets']} kitchen tickets.")
