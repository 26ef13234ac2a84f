"""
Chaos Simulation Script

Fires duplicate state-changing requests at a running server, the way two
cashier terminals (or a double click) would, and reports whether the
guarded writes let exactly one of each through.

    - N concurrent cash-ins for one cashier      -> exactly 1 succeeds
    - N concurrent payments for one dining order -> exactly 1 succeeds
    - N concurrent cash-outs                     -> exactly 1 succeeds

Run from project root: python scripts/simulate.py --storm 20

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import sys
import os
import random
import time
import argparse
from datetime import datetime
from typing import Any

import httpx
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8001")
STORM_SIZE = 20

MENU_ITEMS = [
    {"item_id": "m1", "name": "Chicken Kottu", "unit_price": 950.0, "category": "Mains"},
    {"item_id": "m2", "name": "Fried Rice", "unit_price": 800.0, "category": "Mains"},
    {"item_id": "m3", "name": "Devilled Prawns", "unit_price": 1450.0, "category": "Mains"},
    {"item_id": "d1", "name": "Iced Milo", "unit_price": 350.0, "category": "Drinks"},
    {"item_id": "d2", "name": "Lime Juice", "unit_price": 300.0, "category": "Drinks"},
    {"item_id": "s1", "name": "Watalappan", "unit_price": 400.0, "category": "Desserts"},
]


def generate_random_items() -> list[dict]:
    """Generate random order items."""
    items = []
    for item in random.sample(MENU_ITEMS, random.randint(1, 3)):
        line = item.copy()
        line["quantity"] = random.randint(1, 3)
        items.append(line)
    return items


async def fire(
    client: httpx.AsyncClient,
    attempt: int,
    method: str,
    path: str,
    payload: dict[str, Any],
) -> dict[str, Any]:
    """Send one request and record its outcome."""
    start_time = time.time()
    try:
        response = await client.request(method, f"{API_BASE_URL}{path}", json=payload, timeout=30.0)
        elapsed = round(time.time() - start_time, 3)
        body = response.json()
        return {
            "attempt": attempt,
            "success": response.status_code == 200,
            "status": response.status_code,
            "error_code": body.get("error_code") if isinstance(body, dict) else None,
            "time": elapsed,
        }
    except Exception as e:
        elapsed = round(time.time() - start_time, 3)
        return {
            "attempt": attempt,
            "success": False,
            "status": None,
            "error_code": str(e)[:100],
            "time": elapsed,
        }


async def storm(
    client: httpx.AsyncClient,
    label: str,
    size: int,
    method: str,
    path: str,
    payload: dict[str, Any],
) -> bool:
    """Fire `size` identical requests at once; pass when exactly one is applied."""
    print(f"\n🚀 {label}: {size} concurrent requests...")
    start_time = time.time()
    results = await asyncio.gather(*[fire(client, i + 1, method, path, payload) for i in range(size)])
    total_time = round(time.time() - start_time, 2)

    successful = [r for r in results if r["success"]]
    conflicts = [r for r in results if r["status"] == 409]
    other = [r for r in results if not r["success"] and r["status"] != 409]

    print(f"   ✅ Applied: {len(successful)}")
    print(f"   🔁 Rejected as conflict: {len(conflicts)}")
    print(f"   ❌ Other failures: {len(other)}")
    print(f"   ⏱️  Total Time: {total_time}s")
    for r in other[:5]:
        print(f"      Attempt #{r['attempt']}: {r['status']} {r['error_code']}")

    passed = len(successful) == 1 and not other
    print(f"   {'✅ PASS' if passed else '❌ FAIL'}: exactly one applied")
    return passed


async def run_simulation(size: int = STORM_SIZE) -> bool:
    print("=" * 70)
    print("🔥 CHAOS SIMULATION - DUPLICATE REQUEST STORM")
    print("=" * 70)
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"📋 Requests per storm: {size}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    cashier_id = f"sim-{random.randint(100000, 999999)}"
    cashier = {"cashier_id": cashier_id, "cashier_username": "simulator"}
    verdicts = []

    async with httpx.AsyncClient() as client:
        verdicts.append(await storm(
            client, "Double cash-in", size, "POST", "/api/shifts/cash-in",
            {**cashier, "amount": 1000.0},
        ))

        response = await client.post(f"{API_BASE_URL}/api/orders", json={
            "order_type": "dining",
            "table_number": random.randint(1, 20),
            "items": generate_random_items(),
            "cashier_id": cashier_id,
            "cashier_name": "simulator",
        })
        if response.status_code != 200:
            print(f"\n❌ Could not create order: {response.text[:100]}")
            return False
        order = response.json()
        print(f"\n📋 Order {order['order_code']} created (total {order['total']})")

        verdicts.append(await storm(
            client, "Double payment", size, "POST", f"/api/orders/{order['id']}/pay",
            {"payment_method": "cash"},
        ))

        balance = await client.get(f"{API_BASE_URL}/api/shifts/balance", params={"cashier_id": cashier_id})
        if balance.status_code == 200:
            data = balance.json()
            print(f"\n💰 Derived cash balance: {data['balance']} "
                  f"(cash in {data['cash_in_amount']} + payments {data['cash_payments']})")

        verdicts.append(await storm(
            client, "Double cash-out", size, "POST", "/api/shifts/cash-out",
            {**cashier, "amount": 1000.0 + order["total"]},
        ))

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"{'✅' if all(verdicts) else '❌'} {sum(verdicts)}/{len(verdicts)} storms applied exactly once")
    print("\n🔍 VERIFICATION STEPS")
    print("1. Check Celery terminal - the shift export task should complete")
    print("2. Run: python scripts/verify.py")
    print("=" * 70)
    return all(verdicts)


async def test_single_flows() -> bool:
    """Pre-flight: the server must be up before the storm."""
    print("\n" + "=" * 70)
    print("🧪 PRE-FLIGHT")
    print("=" * 70)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(f"{API_BASE_URL}/health")
        except httpx.HTTPError as e:
            print(f"   ❌ Server unreachable: {e}")
            return False
        if response.status_code != 200:
            print(f"   ❌ Failed: {response.text}")
            return False
        data = response.json()
        print(f"   ✅ Status: {data.get('status')}")
        print(f"   Database: {data.get('database')}")
        print(f"   Redis: {data.get('redis')}")
        print(f"   Event bus: {data.get('event_bus')}")
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Duplicate request storm")
    parser.add_argument("--storm", type=int, default=STORM_SIZE, help="Concurrent requests per storm")
    parser.add_argument("--skip-tests", action="store_true", help="Skip pre-flight checks")
    args = parser.parse_args()

    if not args.skip_tests and not asyncio.run(test_single_flows()):
        print("\n❌ Pre-flight failed. Start the server first.")
        sys.exit(1)

    sys.exit(0 if asyncio.run(run_simulation(args.storm)) else 1)
