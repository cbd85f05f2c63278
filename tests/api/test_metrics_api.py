# tests/api/test_metrics_api.py
from __future__ import annotations

import httpx

from tests.factories import days, make_batch, make_item


async def test_ping(client: httpx.AsyncClient):
    r = await client.get("/ping")
    assert r.status_code == 200
    assert r.json() == {"pong": True}


async def test_metrics_exports_business_counters(client: httpx.AsyncClient, seed):
    async def _data(s):
        item = await make_item(s)
        await make_batch(s, item=item, code="MET-1", expiry=days(30), qty=5)
        return item

    item = await seed(_data)
    r = await client.post(f"/inventory/{item.id}/consume", json={"quantity": 2})
    assert r.status_code == 200

    r = await client.get("/metrics")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
    text = r.text
    assert 'stock_consumed_units_total{path="fefo"}' in text
    assert "order_fulfillments_total" in text
    assert "stock_consume_conflicts_total" in text
