#!/usr/bin/env python3
"""
Doorpass door load client (async)

Simulates a crowd of door scanners hammering the same ticket:
  1) POST /api/admin/tickets/create  (quantity Q)  -> code
     (skipped when --code is given)
  2) N concurrent POST /api/admin/tickets/redeem  {code, redeem_count: 1}
  3) GET /api/admin/tickets/validate?code=...  for the final count

Exactly min(N, Q) redeems must be admitted; the rest must come back as
already_redeemed. The summary says whether that held.

Usage:
  python -m doorpass.load_client --base http://localhost:8000 \
                                 --quantity 4 --scanners 50

  python -m doorpass.load_client --base https://your.domain \
                                 --code K7QMZP3A --scanners 20 --admin-key ...
"""

import asyncio
import random
import string
import time
import argparse
from dataclasses import dataclass, field
from typing import Optional, List, Dict

import httpx


def _rand_email() -> str:
    name = ''.join(
        random.choices(string.ascii_lowercase + string.digits, k=10)
    )
    return f"{name}@example.com"


@dataclass
class Result:
    ok: bool
    outcome: str  # ADMITTED/ALREADY_REDEEMED/REJECTED/ERROR
    t_redeem: float = 0.0
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def summary(self) -> Dict[str, float]:
        lat = [r.t_redeem for r in self.results if r.ok]

        def pct(p):
            if not lat:
                return 0.0
            x = sorted(lat)
            k = int(max(0, min(len(x)-1, round(p/100*(len(x)-1)))))
            return x[k]
        return {
            "total": len(self.results),
            "admitted": self.count("ADMITTED"),
            "already_redeemed": self.count("ALREADY_REDEEMED"),
            "rejected": self.count("REJECTED"),
            "error": self.count("ERROR"),
            "p50_s": pct(50),
            "p90_s": pct(90),
            "p99_s": pct(99),
            "avg_s": (sum(lat)/len(lat)) if lat else 0.0,
        }

    def print(self, elapsed_s: float, expected_admitted: Optional[int]):
        s = self.summary()
        print("\n=== Door Load Summary ===")
        print(
            f"Scanners: {int(s['total'])}   "
            f"ADMITTED: {int(s['admitted'])}   "
            f"ALREADY_REDEEMED: {int(s['already_redeemed'])}   "
            f"REJECTED: {int(s['rejected'])}   ERROR: {int(s['error'])}"
        )
        print(
            f"Latency (redeem): "
            f"avg {s['avg_s']:.3f}s   p50 {s['p50_s']:.3f}s   "
            f"p90 {s['p90_s']:.3f}s   p99 {s['p99_s']:.3f}s"
        )
        print(
            f"Wall time: {elapsed_s:.3f}s   "
            f"Throughput: {s['total']/elapsed_s:.1f} ops/s"
        )
        if expected_admitted is not None:
            verdict = "OK" if s["admitted"] == expected_admitted else "FAIL"
            print(
                f"Expected admissions: {expected_admitted}   "
                f"Observed: {int(s['admitted'])}   -> {verdict}"
            )


async def create_ticket(
    client: httpx.AsyncClient, base: str, quantity: int
) -> str:
    resp = await client.post(
        f"{base}/api/admin/tickets/create",
        json={
            "customer_email": _rand_email(),
            "customer_name": "Load Test",
            "quantity": quantity,
            "notes": "door load client",
        },
        timeout=30.0,
    )
    resp.raise_for_status()
    return resp.json()["ticket"]["code"]


async def remaining_on(
    client: httpx.AsyncClient, base: str, code: str
) -> Optional[int]:
    resp = await client.get(
        f"{base}/api/admin/tickets/validate",
        params={"code": code},
        timeout=10.0,
    )
    if resp.status_code != 200:
        return None
    return resp.json().get("remaining_quantity")


async def one_scan(
    client: httpx.AsyncClient, base: str, code: str
) -> Result:
    r = Result(ok=False, outcome="ERROR")
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/api/admin/tickets/redeem",
            json={"code": code, "redeem_count": 1},
            timeout=30.0,
        )
    except httpx.HTTPError as e:
        r.err = f"redeem: {e}"
        return r
    r.t_redeem = time.perf_counter() - t0

    if resp.status_code != 200:
        r.err = f"redeem HTTP {resp.status_code}"
        return r
    j = resp.json()
    r.ok = True
    if j.get("success"):
        r.outcome = "ADMITTED"
    elif j.get("reason") == "already_redeemed":
        r.outcome = "ALREADY_REDEEMED"
    else:
        r.outcome = "REJECTED"
        r.err = j.get("error")
    return r


async def run_load(
    base: str,
    code: Optional[str],
    quantity: int,
    scanners: int,
    concurrency: int,
    admin_key: Optional[str],
    http2: bool,
):
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    headers = {"User-Agent": "DoorpassLoad/1.0"}
    if admin_key:
        headers["x-admin-key"] = admin_key
    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, http2=http2, headers=headers
    ) as client:
        if code is None:
            code = await create_ticket(client, base, quantity)
            print(f"created ticket {code} x{quantity}")
        before = await remaining_on(client, base, code)

        async def worker(n: int):
            async with sem:
                stats.add(await one_scan(client, base, code))

        tasks = [asyncio.create_task(worker(i)) for i in range(scanners)]
        await asyncio.gather(*tasks)

        after = await remaining_on(client, base, code)

    expected = min(scanners, before) if before is not None else None
    print(f"remaining before: {before}   after: {after}")
    return stats, expected


def main():
    ap = argparse.ArgumentParser(description="Doorpass door load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--code", default=None,
                    help="Existing ticket code (default: create one)")
    ap.add_argument("--quantity", type=int, default=4,
                    help="Quantity of the ticket to create (1..10)")
    ap.add_argument("--scanners", type=int, default=50,
                    help="Total redeem requests")
    ap.add_argument("--concurrency", type=int, default=50,
                    help="Concurrent scanners")
    ap.add_argument("--admin-key", default=None,
                    help="Value for the x-admin-key header")
    ap.add_argument("--http2", action="store_true",
                    help="Enable HTTP/2 if server supports it")
    args = ap.parse_args()

    t_start = time.perf_counter()
    stats, expected = asyncio.run(run_load(
        base=args.base.rstrip("/"),
        code=args.code,
        quantity=args.quantity,
        scanners=args.scanners,
        concurrency=args.concurrency,
        admin_key=args.admin_key,
        http2=args.http2,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed, expected)


if __name__ == "__main__":
    main()
