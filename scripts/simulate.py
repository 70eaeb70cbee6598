"""
Chaos Simulation Script

Fires concurrent traffic at a running API to check the claim guarantees:
many customers place orders, then a crowd of chefs races to claim each one.
Every order must end up with exactly one winning chef; everyone else must
get 409 already_claimed.

Run from project root (API on localhost:8001): python scripts/simulate.py
"""

import argparse
import asyncio
import random
import sys
import time
from collections import Counter
from datetime import datetime
from typing import Any, Optional

import httpx

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_ORDERS = 20
CHEFS_PER_ORDER = 5

# Items of the development demo menu
MENU_ITEMS = [
    {"menu_item_id": "espresso", "modifier_ids": ["extra-shot"]},
    {"menu_item_id": "cappuccino", "modifier_ids": ["oat-milk"]},
    {"menu_item_id": "croissant"},
    {"menu_item_id": "club-sandwich"},
    {"menu_item_id": "cheesecake"},
]
TABLES = ["T1", "T2", "T3", "T4", "T5", None]


def headers(actor_id: str, role: str) -> dict[str, str]:
    return {"X-Actor-Id": actor_id, "X-Actor-Role": role}


def generate_order_payload() -> dict[str, Any]:
    """Generate a random order body."""
    items = []
    for _ in range(random.randint(1, 4)):
        item = dict(random.choice(MENU_ITEMS))
        item["quantity"] = random.randint(1, 3)
        items.append(item)
    return {
        "items": items,
        "table_ref": random.choice(TABLES),
        "special_instructions": random.choice([None, "No sugar", "Extra hot", "Allergy: nuts"]),
    }


async def place_order(client: httpx.AsyncClient, order_num: int) -> Optional[dict[str, Any]]:
    customer = f"C-{order_num:03d}"
    response = await client.post(
        f"{API_BASE_URL}/api/orders",
        json=generate_order_payload(),
        headers=headers(customer, "customer"),
        timeout=30.0,
    )
    if response.status_code != 201:
        print(f"   ❌ Order #{order_num}: {response.status_code} {response.text[:100]}")
        return None
    return response.json()


async def claim_as(client: httpx.AsyncClient, order_id: str, chef_id: str) -> dict[str, Any]:
    start_time = time.time()
    response = await client.post(
        f"{API_BASE_URL}/api/orders/{order_id}/claim",
        headers=headers(chef_id, "chef"),
        timeout=30.0,
    )
    body = response.json()
    return {
        "order_id": order_id,
        "chef": chef_id,
        "status_code": response.status_code,
        "holder": body.get("assigned_chef") if response.status_code == 200 else body.get("holder"),
        "time": round(time.time() - start_time, 3),
    }


async def race_for_order(client: httpx.AsyncClient, order_id: str, chefs: int) -> list[dict[str, Any]]:
    """All chefs try to claim the same order at once."""
    chef_ids = [f"chef-{i}" for i in range(1, chefs + 1)]
    random.shuffle(chef_ids)
    return list(await asyncio.gather(*(claim_as(client, order_id, c) for c in chef_ids)))


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(num_orders: int = TOTAL_ORDERS, chefs: int = CHEFS_PER_ORDER) -> dict[str, Any]:
    print("=" * 70)
    print("🔥 CLAIM RACE SIMULATION")
    print("=" * 70)
    print(f"📋 Orders: {num_orders}   👩‍🍳 Chefs per order: {chefs}")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()

    async with httpx.AsyncClient() as client:
        print("\n🚀 Placing orders...\n")
        placed = await asyncio.gather(*(place_order(client, i + 1) for i in range(num_orders)))
        orders = [o for o in placed if o]

        print(f"🚀 Racing {chefs} chefs on each of {len(orders)} orders...\n")
        races = await asyncio.gather(*(race_for_order(client, o["id"], chefs) for o in orders))

    total_time = round(time.time() - start_time, 2)

    violations = []
    for race in races:
        codes = Counter(r["status_code"] for r in race)
        winners = {r["chef"] for r in race if r["status_code"] == 200}
        holders = {r["holder"] for r in race}
        if codes[200] != 1 or codes[409] != len(race) - 1 or holders != winners:
            violations.append((race[0]["order_id"], dict(codes), holders))

    all_claims = [r for race in races for r in race]

    print("=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"\n✅ Orders placed: {len(orders)}/{num_orders}")
    print(f"🏁 Claim attempts: {len(all_claims)}")
    print(f"⏱️  Total Time: {total_time}s")

    if all_claims:
        avg_time = round(sum(r["time"] for r in all_claims) / len(all_claims), 3)
        print(f"   Average claim response: {avg_time}s")

    if violations:
        print(f"\n❌ {len(violations)} order(s) broke the single-winner rule:")
        for order_id, codes, holders in violations[:5]:
            print(f"   {order_id}: {codes} holders={holders}")
    else:
        print("\n✅ Every order has exactly one chef; all other claims got 409")

    print("=" * 70)

    return {
        "orders": len(orders),
        "claims": len(all_claims),
        "violations": len(violations),
        "total_time": total_time,
    }


async def test_single_flow() -> bool:
    """Walk one order through the whole lifecycle before the race."""
    print("\n" + "=" * 70)
    print("🧪 TESTING SINGLE FLOW")
    print("=" * 70)

    async with httpx.AsyncClient() as client:
        print("\n1️⃣ Health Check...")
        response = await client.get(f"{API_BASE_URL}/health")
        if response.status_code != 200:
            print(f"   ❌ Failed: {response.text}")
            return False
        data = response.json()
        print(f"   ✅ Status: {data.get('status')} (store: {data.get('order_store')})")

        print("\n2️⃣ Place order...")
        order = await place_order(client, 0)
        if order is None:
            return False
        order_id = order["id"]
        print(f"   ✅ {order_id} total {order['total_amount']}")

        steps = [
            ("claim", "chef-A", "chef"),
            ("ready", "chef-A", "chef"),
            ("claim", "waiter-A", "waiter"),
            ("complete", "waiter-A", "waiter"),
        ]
        for number, (action, actor, role) in enumerate(steps, start=3):
            response = await client.post(
                f"{API_BASE_URL}/api/orders/{order_id}/{action}",
                headers=headers(actor, role),
            )
            if response.status_code != 200:
                print(f"   ❌ {action} failed: {response.text[:100]}")
                return False
            print(f"{number}️⃣ {action} by {actor}: status {response.json()['status']}")

    print("\n" + "=" * 70)
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Claim Race Simulation")
    parser.add_argument("--orders", type=int, default=TOTAL_ORDERS, help="Number of orders")
    parser.add_argument("--chefs", type=int, default=CHEFS_PER_ORDER, help="Chefs racing per order")
    parser.add_argument("--skip-tests", action="store_true", help="Skip the single-flow check")
    args = parser.parse_args()

    if not args.skip_tests:
        if not asyncio.run(test_single_flow()):
            print("\n❌ Pre-flight check failed. Fix issues before running the race.")
            sys.exit(1)
        print("\n✅ Pre-flight check passed!")

    summary = asyncio.run(run_simulation(num_orders=args.orders, chefs=args.chefs))
    sys.exit(1 if summary["violations"] else 0)
