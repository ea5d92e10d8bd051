#!/usr/bin/env python3
"""
BoxOffice load client (async)

Simulates many buyers racing for the same event:
  1) POST /api/orders  (event, selections, email) -> {order_id, reference,
     authorization_url}
  2) POST /mockpay/{reference}/emit  (t=succeeded|failed|canceled)
     - follows 303 through /payments/callback to /api/orders/{order_id}
  3) Poll GET /api/orders/{order_id} until payment_status != PENDING

Orders rejected at intake because a type sold out count as SOLD_OUT, which
is the expected outcome once demand exceeds stock. At the end the event's
inventory is fetched so sold + available can be checked against the seed.

Usage:
  python -m boxoffice.load_client --base http://localhost:8000 \
                                  --event demo-conf --total 200 \
                                  --concurrency 50

Notes:
- This targets the MockPay flow (PAYMENT_GATEWAY=mock).
- Keep server workers=1 with SQLite to avoid lock contention artifacts.
"""

import asyncio
import random
import string
import time
import argparse
from dataclasses import dataclass, field
from typing import Optional, List, Dict

import httpx

FINAL = ("COMPLETED", "FAILED")


def _rand_email() -> str:
    name = ''.join(
        random.choices(string.ascii_lowercase + string.digits, k=10)
    )
    return f"{name}@example.com"


@dataclass
class Result:
    ok: bool
    outcome: str  # COMPLETED/FAILED/SOLD_OUT/TIMEOUT/ERROR
    qty: int = 0
    t_order: float = 0.0
    t_emit: float = 0.0
    t_observed: float = 0.0  # time until non-PENDING observed
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def summary(self) -> Dict[str, float]:
        lat = [r.t_observed for r in self.results if r.t_observed > 0]

        def pct(p):
            if not lat:
                return 0.0
            x = sorted(lat)
            k = int(max(0, min(len(x)-1, round(p/100*(len(x)-1)))))
            return x[k]
        return {
            "total": len(self.results),
            "ok": sum(1 for r in self.results if r.ok),
            "completed": self.count("COMPLETED"),
            "tickets": sum(r.qty for r in self.results
                           if r.outcome == "COMPLETED"),
            "failed": self.count("FAILED"),
            "sold_out": self.count("SOLD_OUT"),
            "timeout": self.count("TIMEOUT"),
            "error": self.count("ERROR"),
            "p50_s": pct(50),
            "p90_s": pct(90),
            "p99_s": pct(99),
            "avg_s": (sum(lat)/len(lat)) if lat else 0.0,
        }

    def print(self, elapsed_s: float):
        s = self.summary()
        print("\n=== Load Summary ===")
        print(
            f"Total: {int(s['total'])}   OK: {int(s['ok'])}   "
            f"COMPLETED: {int(s['completed'])} ({int(s['tickets'])} tickets)"
            f"   FAILED: {int(s['failed'])}   SOLD_OUT: {int(s['sold_out'])}"
            f"   TIMEOUT: {int(s['timeout'])}   ERROR: {int(s['error'])}"
        )
        print(
            f"Latency (observed order resolution): "
            f"avg {s['avg_s']:.3f}s   p50 {s['p50_s']:.3f}s   "
            f"p90 {s['p90_s']:.3f}s   p99 {s['p99_s']:.3f}s"
        )
        print(
            f"Wall time: {elapsed_s:.3f}s   "
            f"Throughput: {s['total']/elapsed_s:.1f} ops/s"
        )


async def one_order(
    client: httpx.AsyncClient,
    base: str,
    event_id: str,
    selections: List[Dict[str, object]],
    emit_kind: str,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Result:
    qty = sum(int(s["quantity"]) for s in selections)
    r = Result(ok=False, outcome="ERROR", qty=qty)
    user = _rand_email()

    # 1) intake
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/api/orders",
            json={"event_id": event_id, "user_id": user, "email": user,
                  "selections": selections},
            timeout=30.0,
        )
        if resp.status_code == 409:
            r.ok = True
            r.outcome = "SOLD_OUT"
            return r
        resp.raise_for_status()
        j = resp.json()
        order_id = j["order_id"]
        reference = j.get("reference")
    except (httpx.HTTPError, KeyError, ValueError) as e:
        r.err = f"order: {e}"
        return r
    r.t_order = time.perf_counter() - t0

    if reference is None:
        # free event: fulfilled at intake
        r.ok = True
        r.outcome = j.get("status", "ERROR")
        return r

    # 2) emit outcome (simulate clicking the button on the MockPay page)
    t1 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/mockpay/{reference}/emit",
            data={"t": emit_kind},
            follow_redirects=True,
            timeout=30.0,
        )
        if resp.status_code == 409:
            # paid, but someone else took the last units first
            r.ok = True
            r.outcome = "SOLD_OUT"
            return r
        if resp.status_code >= 400:
            r.err = f"emit HTTP {resp.status_code}"
            return r
    except httpx.HTTPError as e:
        r.err = f"emit: {e}"
        return r
    r.t_emit = time.perf_counter() - t1

    # 3) poll order status until non-PENDING or timeout
    t2 = time.perf_counter()
    deadline = t2 + poll_timeout_s
    status = "PENDING"
    try:
        while time.perf_counter() < deadline:
            g = await client.get(f"{base}/api/orders/{order_id}", timeout=10.0)
            if g.status_code != 200:
                await asyncio.sleep(poll_interval_s)
                continue
            status = g.json().get("payment_status", status)
            if status in FINAL:
                break
            await asyncio.sleep(poll_interval_s)
    except httpx.HTTPError as e:
        r.err = f"poll: {e}"
        return r

    r.t_observed = time.perf_counter() - t2
    r.ok = True
    r.outcome = status if status in FINAL else "TIMEOUT"
    return r


async def run_load(
    base: str,
    event_id: str,
    total: int,
    concurrency: int,
    max_qty: int,
    fail_rate: float,
    cancel_rate: float,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> tuple[Stats, Dict]:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "BoxOfficeLoad/1.0"}
    ) as client:
        inv = (await client.get(
            f"{base}/api/events/{event_id}/inventory")).json()
        type_ids = list(inv.get("types", {}))
        if not type_ids:
            raise SystemExit(f"event {event_id} has no ticket types")

        async def worker(n: int):
            async with sem:
                selections = [{
                    "ticket_type_id": tt,
                    "quantity": random.randint(1, max_qty),
                } for tt in random.sample(
                    type_ids, k=random.randint(1, len(type_ids)))]
                rnd = random.random()
                if rnd < fail_rate:
                    emit_kind = "failed"
                elif rnd < fail_rate + cancel_rate:
                    emit_kind = "canceled"
                else:
                    emit_kind = "succeeded"

                res = await one_order(
                    client, base, event_id, selections, emit_kind,
                    poll_interval_s, poll_timeout_s
                )
                stats.add(res)

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

        after = (await client.get(
            f"{base}/api/events/{event_id}/inventory")).json()

    return stats, after


def main():
    ap = argparse.ArgumentParser(description="BoxOffice load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--event", default="demo-conf",
                    help="Event id to buy tickets for")
    ap.add_argument("--total", type=int, default=100,
                    help="Total orders to run")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent workers")
    ap.add_argument("--max-qty", type=int, default=3,
                    help="Max units per ticket type per order")
    ap.add_argument("--fail-rate", type=float, default=0.0,
                    help="Fraction of orders to mark as failed")
    ap.add_argument("--cancel-rate", type=float, default=0.0,
                    help="Fraction of orders to mark as canceled")
    ap.add_argument("--poll-interval", type=float, default=0.05,
                    help="Seconds between status polls")
    ap.add_argument("--poll-timeout", type=float, default=10.0,
                    help="Max seconds to wait for non-PENDING")
    args = ap.parse_args()

    t_start = time.perf_counter()
    stats, inv = asyncio.run(run_load(
        base=args.base,
        event_id=args.event,
        total=args.total,
        concurrency=args.concurrency,
        max_qty=args.max_qty,
        fail_rate=args.fail_rate,
        cancel_rate=args.cancel_rate,
        poll_interval_s=args.poll_interval,
        poll_timeout_s=args.poll_timeout,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)
    print(f"Inventory after: sold {inv.get('sold')}   "
          f"available {inv.get('available')}")


if __name__ == "__main__":
    main()
