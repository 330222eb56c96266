"""
Storefront Load Testing with Locust

Prepare a database and tokens first (from backend/):
    python -m flask system seed-demo
    export STOREFRONT_STUDENT_TOKEN=$(python -m flask users issue-token --email student@campus.local)
    export STOREFRONT_ADMIN_TOKEN=$(python -m flask users issue-token --email admin@campus.local)

Run with:
    locust -f tests/stress/locustfile.py --host http://127.0.0.1:5000

Or headless:
    locust -f tests/stress/locustfile.py --host http://127.0.0.1:5000 \
           --users 10 --spawn-rate 2 --run-time 60s --headless

Pass thresholds:
- p95 response time < 500ms for reads
- p95 response time < 1000ms for writes
- Error rate < 1% (409 INSUFFICIENT_STOCK counts as a correct answer)
"""

import os
import time
import random
from typing import Optional, Dict, List

from locust import HttpUser, task, between, events


# =============================================================================
# CONFIGURATION
# =============================================================================

STUDENT_TOKEN = os.environ.get("STOREFRONT_STUDENT_TOKEN")
ADMIN_TOKEN = os.environ.get("STOREFRONT_ADMIN_TOKEN")

# Demo catalog from `flask system seed-demo`: Campus Shirt (sizes S/M/L) and Campus Mug
SHIRT_PRODUCT_ID = int(os.environ.get("STOREFRONT_SHIRT_ID", "1"))
SHIRT_VARIANT_IDS = [int(v) for v in os.environ.get("STOREFRONT_SHIRT_SIZE_IDS", "1,2,3").split(",")]
MUG_PRODUCT_ID = int(os.environ.get("STOREFRONT_MUG_ID", "2"))


# =============================================================================
# METRICS TRACKING
# =============================================================================

class MetricsCollector:
    """Collect and report metrics."""

    def __init__(self):
        self.request_counts: Dict[str, int] = {}
        self.error_counts: Dict[str, int] = {}
        self.response_times: Dict[str, List[float]] = {}

    def record(self, name: str, response_time: float, success: bool):
        if name not in self.request_counts:
            self.request_counts[name] = 0
            self.error_counts[name] = 0
            self.response_times[name] = []

        self.request_counts[name] += 1
        if not success:
            self.error_counts[name] += 1
        self.response_times[name].append(response_time)

    def get_summary(self) -> Dict:
        summary = {}
        for name in self.request_counts:
            times = sorted(self.response_times[name])
            count = len(times)
            if count == 0:
                continue

            p50_idx = int(count * 0.50)
            p95_idx = int(count * 0.95)

            summary[name] = {
                "count": self.request_counts[name],
                "errors": self.error_counts[name],
                "error_rate": self.error_counts[name] / self.request_counts[name] * 100,
                "avg_ms": sum(times) / count,
                "p50_ms": times[p50_idx] if p50_idx < count else times[-1],
                "p95_ms": times[p95_idx] if p95_idx < count else times[-1],
            }
        return summary


metrics = MetricsCollector()


# =============================================================================
# USER BEHAVIORS
# =============================================================================

class StorefrontUser(HttpUser):
    """
    Base user carrying a bearer token issued by `flask users issue-token`.
    """
    wait_time = between(0.5, 2)
    abstract = True

    token: Optional[str] = None

    def get_headers(self) -> Dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def timed(self, name: str, ok_statuses, method: str, url: str, **kwargs):
        start = time.time()
        response = self.client.request(method, url, headers=self.get_headers(), name=name, **kwargs)
        metrics.record(name, (time.time() - start) * 1000, response.status_code in ok_statuses)
        return response


class ShopperUser(StorefrontUser):
    """
    Student checking out: place order, pay through the webhook or cancel.

    Many shoppers racing for the same sizes exercise the row locks and the
    oversell guard.
    """
    weight = 4

    def on_start(self):
        self.token = STUDENT_TOKEN
        self.open_orders: List[Dict] = []

    @task(5)
    def checkout(self):
        items = [{
            "product_id": SHIRT_PRODUCT_ID,
            "variant_id": random.choice(SHIRT_VARIANT_IDS),
            "quantity": random.randint(1, 2),
        }]
        if random.random() < 0.5:
            items.append({"product_id": MUG_PRODUCT_ID, "quantity": 1})

        response = self.timed(
            "orders/create", (201, 409), "POST", "/api/orders",
            json={"items": items, "payment_method": random.choice(["cash", "gcash"])},
        )
        if response.status_code == 201:
            data = response.json()
            self.open_orders.append({"id": data["order_id"], "total": data["total_amount"]})

    @task(3)
    def pay_by_webhook(self):
        """Gateway confirmation, delivered twice to exercise idempotency."""
        if not self.open_orders:
            return
        order = self.open_orders.pop(0)
        payload = {
            "order_id": order["id"],
            "transaction_id": f"gcash_load_{order['id']}",
            "status": "paid",
            "amount": order["total"],
        }
        self.timed("payments/webhook", (200,), "POST", "/api/payments/webhook", json=payload)
        self.timed("payments/webhook_redelivery", (200,), "POST", "/api/payments/webhook", json=payload)

    @task(2)
    def cancel(self):
        if not self.open_orders:
            return
        order = self.open_orders.pop()
        self.timed("orders/cancel", (200,), "POST", f"/api/orders/{order['id']}/cancel", json={})

    @task(1)
    def notifications(self):
        self.timed("notifications/unread", (200,), "GET", "/api/notifications/unread-count")


class StockManagerUser(StorefrontUser):
    """Admin keeping shelves filled and watching the ledger."""
    weight = 1

    def on_start(self):
        self.token = ADMIN_TOKEN

    @task(3)
    def restock(self):
        self.timed(
            "inventory/restock", (201,), "POST", f"/api/inventory/{SHIRT_PRODUCT_ID}/restock",
            json={"variant_id": random.choice(SHIRT_VARIANT_IDS), "quantity": random.randint(1, 5)},
        )

    @task(2)
    def low_stock(self):
        self.timed("inventory/low_stock", (200,), "GET", "/api/inventory/low-stock")

    @task(2)
    def movements(self):
        self.timed("inventory/movements", (200,), "GET", "/api/inventory/movements", params={"limit": 20})

    @task(1)
    def health_check(self):
        self.timed("system/health", (200,), "GET", "/api/health")


# =============================================================================
# EVENT HANDLERS
# =============================================================================

@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    if not STUDENT_TOKEN or not ADMIN_TOKEN:
        print("[WARN] STOREFRONT_STUDENT_TOKEN / STOREFRONT_ADMIN_TOKEN not set; requests will get 401")


@events.test_stop.add_listener
def on_test_stop(environment, **kwargs):
    """Print summary when test stops."""
    print("\n" + "=" * 80)
    print("LOAD TEST SUMMARY")
    print("=" * 80)

    summary = metrics.get_summary()

    print(f"\n{'Endpoint':<30} {'Count':>8} {'Errors':>8} {'Err%':>8} {'Avg(ms)':>10} {'P95(ms)':>10}")
    print("-" * 80)

    total_requests = 0
    total_errors = 0
    all_pass = True

    for name, stats in sorted(summary.items()):
        total_requests += stats["count"]
        total_errors += stats["errors"]

        writes = ("create", "webhook", "cancel", "restock")
        p95_threshold = 1000 if any(w in name for w in writes) else 500
        passed = stats["p95_ms"] < p95_threshold and stats["error_rate"] < 1

        status = "PASS" if passed else "FAIL"
        if not passed:
            all_pass = False

        print(f"{name:<30} {stats['count']:>8} {stats['errors']:>8} {stats['error_rate']:>7.2f}% {stats['avg_ms']:>9.1f} {stats['p95_ms']:>9.1f} [{status}]")

    print("-" * 80)
    print(f"{'TOTAL':<30} {total_requests:>8} {total_errors:>8} {total_errors/max(total_requests,1)*100:>7.2f}%")
    print("=" * 80)

    if all_pass:
        print("\n[PASS] All endpoints within thresholds")
    else:
        print("\n[FAIL] Some endpoints exceeded thresholds")
        print("  - Reads: P95 < 500ms, Error rate < 1%")
        print("  - Writes (checkout/webhook/cancel/restock): P95 < 1000ms, Error rate < 1%")

    print("=" * 80)
