"""
Concurrency Drill

Creates dine-in orders, then hammers each one with concurrent advance and
mark-printed requests and checks the results:
    - no status was skipped (every status up to the current one is stamped)
    - no printed quantity exceeds its line quantity

Run against a live server: python scripts/simulate.py --orders 20
"""

import asyncio
import sys
import random
import time
import argparse
from datetime import datetime
from typing import Any

import httpx

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_ORDERS = 20
DINING_FLOW = ["pending", "accepted", "preparing", "ready", "delivered", "completed"]

MENU_ITEMS = [
    {"itemId": 1, "name": "Paneer Tikka", "price": 220.0, "gstRate": 5, "gstMode": "exclude"},
    {"itemId": 2, "name": "Dal Makhani", "price": 180.0, "gstRate": 5, "gstMode": "include"},
    {"itemId": 3, "name": "Butter Naan", "price": 45.0},
    {"itemId": 4, "name": "Masala Chai", "price": 30.0, "gstRate": 12, "gstMode": "include"},
    {"itemId": 5, "name": "Gulab Jamun", "basePrice": 90.0, "gstRate": 18},
]


def generate_random_items() -> list[dict]:
    """Distinct menu items, 1-3 of each."""
    items = []
    for item in random.sample(MENU_ITEMS, random.randint(1, 4)):
        item = item.copy()
        item["quantity"] = random.randint(1, 3)
        items.append(item)
    return items


def generate_order_payload(vendor_id: int) -> dict[str, Any]:
    return {
        "vendor_id": vendor_id,
        "channel": "dining",
        "table_id": random.randint(1, 20),
        "items": generate_random_items(),
        "customer": {"name": random.choice(["Asha", "Ravi", "Meera", "Karan", None])},
    }


async def create_order(client: httpx.AsyncClient, vendor_id: int) -> dict[str, Any]:
    response = await client.post(f"{API_BASE_URL}/api/orders", json=generate_order_payload(vendor_id))
    response.raise_for_status()
    return response.json()


async def hammer_order(
    client: httpx.AsyncClient,
    order: dict[str, Any],
    advances: int,
    print_requests: int,
) -> dict[str, Any]:
    """Fire concurrent advance and mark-printed requests at one order."""
    order_id = order["id"]
    requests = [client.post(f"{API_BASE_URL}/api/orders/{order_id}/advance") for _ in range(advances)]
    for _ in range(print_requests):
        marks = [
            {"itemId": item["item_id"], "quantity": random.randint(1, item["quantity"] + 2)}
            for item in order["items"]
        ]
        requests.append(client.post(f"{API_BASE_URL}/api/orders/{order_id}/items/printed", json={"items": marks}))

    start_time = time.time()
    responses = await asyncio.gather(*requests, return_exceptions=True)
    elapsed = round(time.time() - start_time, 3)

    errors = [
        r if isinstance(r, Exception) else r.status_code
        for r in responses
        if isinstance(r, Exception) or r.status_code >= 500
    ]

    final = (await client.get(f"{API_BASE_URL}/api/orders/{order_id}")).json()
    return {"order_id": order_id, "final": final, "errors": errors, "time": elapsed}


def check_order(final: dict[str, Any]) -> list[str]:
    """Problems found in one order's final state."""
    problems = []
    reached = DINING_FLOW[:DINING_FLOW.index(final["status"]) + 1]
    for status in reached[1:]:
        if not final.get(f"{status}_at"):
            problems.append(f"status '{status}' reached without its timestamp (skipped?)")
    for item in final["items"]:
        if item["printed_quantity"] > item["quantity"]:
            problems.append(f"{item['name']}: printed {item['printed_quantity']} > quantity {item['quantity']}")
        if item["printed_quantity"] + item["unprinted_quantity"] != item["quantity"]:
            problems.append(f"{item['name']}: printed + unprinted != quantity")
    return problems


# =============================================================================
# MAIN DRILL RUNNER
# =============================================================================

async def run_simulation(
    num_orders: int = TOTAL_ORDERS,
    vendor_id: int = 1,
    advances: int = 6,
    print_requests: int = 4,
) -> dict[str, Any]:
    print("=" * 70)
    print("🔥 CONCURRENCY DRILL")
    print("=" * 70)
    print(f"📋 Orders: {num_orders}  advances/order: {advances}  print marks/order: {print_requests}")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    async with httpx.AsyncClient(timeout=30.0) as client:
        health = await client.get(f"{API_BASE_URL}/health")
        print(f"\n🩺 Health: {health.json().get('status')}")

        orders = await asyncio.gather(*[create_order(client, vendor_id) for _ in range(num_orders)])
        print(f"✅ Created {len(orders)} orders")

        start_time = time.time()
        results = await asyncio.gather(*[
            hammer_order(client, order, advances, print_requests) for order in orders
        ])
        total_time = round(time.time() - start_time, 2)

    failures = []
    for result in results:
        problems = check_order(result["final"])
        if result["errors"]:
            problems.append(f"server errors: {result['errors'][:3]}")
        if problems:
            failures.append((result["order_id"], problems))

    print("\n" + "=" * 70)
    print("📊 DRILL RESULTS")
    print("=" * 70)
    print(f"\n✅ Consistent orders: {len(results) - len(failures)}/{len(results)}")
    print(f"❌ Inconsistent orders: {len(failures)}/{len(results)}")
    print(f"⏱️  Total Time: {total_time}s")

    statuses: dict[str, int] = {}
    for result in results:
        statuses[result["final"]["status"]] = statuses.get(result["final"]["status"], 0) + 1
    print(f"\n📈 Final statuses: {statuses}")

    if failures:
        print("\n⚠️  Problems (showing first 5):")
        for order_id, problems in failures[:5]:
            print(f"   Order #{order_id}: {'; '.join(problems)}")

    print("=" * 70)
    return {
        "total": len(results),
        "failed": len(failures),
        "total_time": total_time,
    }


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Concurrency drill for the fulfillment API")
    parser.add_argument("--orders", type=int, default=TOTAL_ORDERS, help="Number of orders")
    parser.add_argument("--vendor", type=int, default=1, help="Vendor id")
    parser.add_argument("--advances", type=int, default=6, help="Concurrent advances per order")
    parser.add_argument("--prints", type=int, default=4, help="Concurrent mark-printed requests per order")
    args = parser.parse_args()

    summary = asyncio.run(run_simulation(args.orders, args.vendor, args.advances, args.prints))
    sys.exit(1 if summary["failed"] else 0)
