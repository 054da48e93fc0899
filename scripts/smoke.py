"""
Smoke test against a JSON API.

    BASE_URL=http://localhost:8080 stampede run scripts/smoke.py
"""

import os

from stampede import Counter, Trend

BASE_URL = os.environ.get("BASE_URL", "http://localhost:8080")

options = {
    "scenarios": {
        "browse": {
            "executor": "ramping-vus",
            "startVUs": 0,
            "stages": [
                {"duration": "10s", "target": 5},
                {"duration": "20s", "target": 5},
                {"duration": "10s", "target": 0},
            ],
            "gracefulRampDown": "5s",
        },
        "orders": {
            "executor": "ramping-arrival-rate",
            "exec": "place_order",
            "startTime": "10s",
            "startRate": 2,
            "timeUnit": "1s",
            "stages": [{"duration": "20s", "target": 10}],
            "preAllocatedVUs": 2,
            "maxVUs": 10,
            "tags": {"flow": "checkout"},
        },
    },
    "thresholds": {
        "http_req_failed": ["rate<0.01"],
        "http_req_duration{name:ListItems}": ["p(95)<500"],
        "checks": [{"threshold": "rate>0.95", "abortOnFail": True, "delayAbortEval": "10s"}],
        "order_errors": ["count<5"],
    },
}

order_errors = Counter("order_errors")
order_latency = Trend("order_latency", is_time=True)


async def setup(ctx):
    res = await ctx.http.get(f"{BASE_URL}/health")
    ctx.check(res, {"service healthy": lambda r: r.status == 200})
    return {"base_url": BASE_URL}


async def default(ctx, data):
    async with ctx.group("Catalog"):
        res = await ctx.http.get(f"{data['base_url']}/items", tags={"name": "ListItems"})
        ctx.check(res, {
            "status is 200": lambda r: r.status == 200,
            "has items": lambda r: bool(r.json("items")),
        })
    await ctx.sleep(1)


async def place_order(ctx, data):
    res = await ctx.http.post(f"{data['base_url']}/orders", json={"item": 7, "qty": 1})
    if not ctx.check(res, {"order accepted": lambda r: r.status in (200, 201)}):
        ctx.add(order_errors, 1)
    ctx.add(order_latency, res.timings.duration)


def teardown(ctx, data):
    print(f"finished smoke test against {data['base_url']}")
