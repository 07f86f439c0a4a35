"""
Rush Hour Simulation Script

Drives the local engine API the way a busy service does: concurrent
order creation, double-clicked kitchen actions, then serving and
settling every bill. Reports how each class of request ended.

Start the API first (uvicorn kot_engine.main:app --port 8002), then run
from project root: python scripts/simulate.py --orders 30

Version: 1.0.0
"""

import argparse
import asyncio
import random
import time
from collections import Counter
from datetime import datetime
from typing import Any, Optional

import httpx

# Configuration
API_BASE_URL = "http://localhost:8002"
TOTAL_ORDERS = 30

MENU_ITEMS = [
    {"menu_id": 1, "name": "Paneer Tikka", "price": "240.00"},
    {"menu_id": 2, "name": "Butter Naan", "price": "45.00"},
    {"menu_id": 3, "name": "Dal Makhani", "price": "210.00"},
    {"menu_id": 4, "name": "Veg Biryani", "price": "260.00"},
    {"menu_id": 5, "name": "Masala Chai", "price": "30.00"},
    {"menu_id": 6, "name": "Gulab Jamun", "price": "90.00"},
]
STATIONS = ["Tandoor", "Curry", "Beverages", None]
PAYMENT_MODES = ["CASH", "CARD", "UPI"]


def generate_random_items() -> list[dict[str, Any]]:
    """Generate random order items."""
    items = []
    for menu in random.sample(MENU_ITEMS, random.randint(1, 4)):
        item = dict(menu)
        item["qty"] = random.randint(1, 3)
        if random.random() < 0.2:
            item["line_discount"] = {"mode": "PERCENT", "value": 10}
        items.append(item)
    return items


def classify(response: httpx.Response) -> str:
    """Map a submission response to an outcome label."""
    if response.status_code in (200, 201):
        return response.json().get("status", "confirmed")
    if response.status_code == 202:
        return "queued"
    if response.status_code == 409:
        return "rejected"
    return f"http_{response.status_code}"


# =============================================================================
# FLOWS
# =============================================================================

async def create_order(client: httpx.AsyncClient, order_num: int) -> dict[str, Any]:
    payload = {
        "items": generate_random_items(),
        "station": random.choice(STATIONS),
    }
    start_time = time.time()
    try:
        response = await client.post(f"{API_BASE_URL}/api/orders", json=payload)
        outcome = classify(response)
        result = response.json().get("result") if response.status_code < 300 else None
        return {
            "order_num": order_num,
            "outcome": outcome,
            "order_id": result.get("id") if result else None,
            "time": round(time.time() - start_time, 3),
        }
    except httpx.HTTPError as e:
        return {"order_num": order_num, "outcome": "error", "error": str(e)[:100], "order_id": None}


async def change_status(
    client: httpx.AsyncClient,
    order_id: Any,
    status: str,
    role: str,
) -> str:
    try:
        response = await client.put(
            f"{API_BASE_URL}/api/orders/{order_id}/status",
            json={"status": status, "role": role},
        )
        return classify(response)
    except httpx.HTTPError:
        return "error"


async def double_click(client: httpx.AsyncClient, order_id: Any, status: str, role: str) -> list[str]:
    """Two identical submissions fired together."""
    return list(await asyncio.gather(
        change_status(client, order_id, status, role),
        change_status(client, order_id, status, role),
    ))


async def settle(client: httpx.AsyncClient, bill_id: Any) -> tuple[str, Optional[str]]:
    try:
        response = await client.post(
            f"{API_BASE_URL}/api/bills/{bill_id}/pay",
            json={"payment_mode": random.choice(PAYMENT_MODES)},
        )
        outcome = classify(response)
        amount = None
        if response.status_code < 300:
            amount = (response.json().get("result") or {}).get("grand_total")
        return outcome, amount
    except httpx.HTTPError:
        return "error", None


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(num_orders: int = TOTAL_ORDERS) -> dict[str, Any]:
    """
    Run the rush hour simulation.

    Args:
        num_orders: Number of orders to create concurrently
    """
    print("=" * 70)
    print("🔥 RUSH HOUR SIMULATION")
    print("=" * 70)
    print(f"📋 Total Orders: {num_orders}")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()
    outcomes: dict[str, Counter] = {
        "create": Counter(),
        "accept": Counter(),
        "ready": Counter(),
        "serve": Counter(),
        "pay": Counter(),
    }
    revenue = 0.0

    async with httpx.AsyncClient(timeout=30.0) as client:
        print("\n🚀 Sending orders...")
        created = await asyncio.gather(*(create_order(client, i + 1) for i in range(num_orders)))
        outcomes["create"].update(r["outcome"] for r in created)
        order_ids = [r["order_id"] for r in created if r["order_id"] is not None]

        print("👆 Double-clicking kitchen actions...")
        for stage, status, role in (
            ("accept", "preparing", "kitchen"),
            ("ready", "ready", "kitchen"),
            ("serve", "completed", "waiter"),
        ):
            results = await asyncio.gather(*(double_click(client, oid, status, role) for oid in order_ids))
            for pair in results:
                outcomes[stage].update(pair)

        print("🧾 Settling bills...")
        await client.post(f"{API_BASE_URL}/api/reconcile")
        snapshot = (await client.get(f"{API_BASE_URL}/api/snapshot")).json()
        bill_ids = [entry["bill"]["id"] for entry in snapshot.get("bills", []) if entry["bill"]["payment_status"] == "DRAFT"]
        settled = await asyncio.gather(*(settle(client, bid) for bid in bill_ids))
        for outcome, amount in settled:
            outcomes["pay"][outcome] += 1
            if amount is not None:
                revenue += float(amount)

        queue = (await client.get(f"{API_BASE_URL}/api/queue")).json()

    total_time = round(time.time() - start_time, 2)

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    for stage, counter in outcomes.items():
        summary = ", ".join(f"{label}={count}" for label, count in sorted(counter.items())) or "none"
        print(f"   {stage:<8} {summary}")
    print(f"\n⏱️  Total Time: {total_time}s")
    print(f"💰 Total Revenue: {revenue:.2f}")
    print(f"📦 Offline queue depth: {queue.get('count', 0)}")

    print("\n" + "=" * 70)
    print("🔍 VERIFICATION STEPS")
    print("=" * 70)
    print("1. Each double-click pair should show one confirmed and one skipped/rejected")
    print("2. Run: python scripts/verify.py to inspect the offline queue")
    print(f"3. Visit {API_BASE_URL}/api/tables/status to see the table board")
    print("=" * 70)

    return {
        "total": num_orders,
        "outcomes": {stage: dict(counter) for stage, counter in outcomes.items()},
        "revenue": revenue,
        "total_time": total_time,
    }


async def test_single_flows() -> bool:
    """Check the API is up before the rush."""
    print("\n" + "=" * 70)
    print("🧪 TESTING INDIVIDUAL FLOWS")
    print("=" * 70)

    async with httpx.AsyncClient(timeout=10.0) as client:
        print("\n1️⃣ Health Check...")
        try:
            response = await client.get(f"{API_BASE_URL}/health")
        except httpx.HTTPError as e:
            print(f"   ❌ API unreachable: {e}")
            return False
        data = response.json()
        print(f"   ✅ Status: {data.get('status')}")
        print(f"   Backend: {data.get('backend')} (reachable={data.get('backend_reachable')})")
        print(f"   Queue depth: {data.get('queue_depth')}")

        print("\n2️⃣ Single Order...")
        result = await create_order(client, 0)
        print(f"   {'✅' if result['outcome'] == 'confirmed' else '⚠️'} {result['outcome']}")

    return True


def main() -> None:
    global API_BASE_URL

    parser = argparse.ArgumentParser(description="KOT engine rush hour simulation")
    parser.add_argument("--orders", type=int, default=TOTAL_ORDERS, help="Number of orders")
    parser.add_argument("--url", default=API_BASE_URL, help="Engine API base URL")
    parser.add_argument("--skip-checks", action="store_true", help="Skip the single flow checks")
    args = parser.parse_args()

    API_BASE_URL = args.url.rstrip("/")

    if not args.skip_checks and not asyncio.run(test_single_flows()):
        return
    asyncio.run(run_simulation(args.orders))


if __name__ == "__main__":
    main()
