# tests/api/test_batches_api.py
from __future__ import annotations

import httpx
import pytest

from tests.factories import days, make_batch, make_item

pytestmark = pytest.mark.contract


def _problem(resp: httpx.Response) -> dict:
    body = resp.json()
    assert isinstance(body.get("detail"), dict), body
    assert body["detail"]["http_status"] == resp.status_code
    return body["detail"]


async def test_create_and_list_batches(client: httpx.AsyncClient, seed):
    item = await seed(lambda s: make_item(s))

    r = await client.post(
        f"/inventory/{item.id}/batches",
        json={
            "batch_code": "AMX-2501",
            "manufacturing_date": days(-30).isoformat(),
            "expiry_date": days(10).isoformat(),
            "quantity": 100,
            "created_by": "pharm-1",
        },
    )
    assert r.status_code == 201, r.text
    b = r.json()
    assert (b["quantity"], b["remaining_qty"], b["pharmacy_id"]) == (100, 100, "ph-001")
    assert b["status"] == "expiring"

    r = await client.get(f"/inventory/{item.id}/batches")
    assert r.status_code == 200
    assert [x["batch_code"] for x in r.json()] == ["AMX-2501"]

    r = await client.get(f"/batches/{b['id']}/movements")
    assert [(m["type"], m["quantity_delta"]) for m in r.json()] == [("addition", 100)]


async def test_create_batch_errors_use_problem_envelope(client: httpx.AsyncClient, seed):
    item = await seed(lambda s: make_item(s))
    base = {
        "batch_code": "AMX-2501",
        "manufacturing_date": days(-30).isoformat(),
        "expiry_date": days(300).isoformat(),
        "quantity": 10,
    }

    r = await client.post(f"/inventory/{item.id}/batches", json={**base, "expiry_date": days(-1).isoformat()})
    assert r.status_code == 422
    assert _problem(r)["error_code"] == "batch_expired"

    r = await client.post(f"/inventory/{item.id}/batches", json={**base, "batch_code": "AB"})
    assert r.status_code == 422
    assert _problem(r)["error_code"] == "batch_code_too_short"

    assert (await client.post(f"/inventory/{item.id}/batches", json=base)).status_code == 201
    r = await client.post(f"/inventory/{item.id}/batches", json=base)
    assert r.status_code == 409
    assert _problem(r)["error_code"] == "batch_code_exists"

    r = await client.post("/inventory/999999/batches", json=base)
    assert r.status_code == 404
    assert _problem(r)["error_code"] == "not_found"

    # 请求体层面的校验（pydantic）仍是 FastAPI 的列表结构
    r = await client.post(f"/inventory/{item.id}/batches", json={**base, "quantity": 0})
    assert r.status_code == 422
    assert isinstance(r.json()["detail"], list)


async def test_fefo_plan_and_consume(client: httpx.AsyncClient, seed):
    async def _data(s):
        item = await make_item(s)
        a = await make_batch(s, item=item, code="AMX-A", expiry=days(10), qty=20)
        b = await make_batch(s, item=item, code="AMX-B", expiry=days(90), qty=50)
        await make_batch(s, item=item, code="AMX-X", expiry=days(-3), qty=500)
        return item, a, b

    item, a, b = await seed(_data)

    r = await client.get(f"/inventory/{item.id}/fefo-plan", params={"qty": 30})
    assert r.status_code == 200
    assert r.json()["allocations"] == [{"batch_id": a.id, "qty": 20}, {"batch_id": b.id, "qty": 10}]

    r = await client.get(f"/inventory/{item.id}/fefo-plan", params={"qty": 71})
    assert r.status_code == 409
    p = _problem(r)
    assert p["error_code"] == "insufficient_stock"
    assert (p["details"][0]["available_qty"], p["details"][0]["short_qty"]) == (70, 1)

    r = await client.post(f"/inventory/{item.id}/consume", json={"quantity": 30, "performed_by": "pharm-1"})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["consumed"] == 30
    assert [(leg["batch_id"], leg["qty"]) for leg in body["legs"]] == [(a.id, 20), (b.id, 10)]

    r = await client.post(
        f"/inventory/{item.id}/consume", json={"allocations": [{"batch_id": b.id, "qty": 5}]}
    )
    assert r.status_code == 200
    assert r.json()["consumed"] == 5

    r = await client.get(f"/inventory/{item.id}/batches/summary")
    s = r.json()
    assert (s["total_remaining"], s["total_available"]) == (535, 35)

    r = await client.get(f"/inventory/{item.id}/available")
    assert r.json() == {"inventory_id": item.id, "available_qty": 35}


async def test_consume_requires_exactly_one_mode(client: httpx.AsyncClient, seed):
    item = await seed(lambda s: make_item(s))

    r = await client.post(f"/inventory/{item.id}/consume", json={})
    assert r.status_code == 422

    r = await client.post(
        f"/inventory/{item.id}/consume",
        json={"quantity": 1, "allocations": [{"batch_id": 1, "qty": 1}]},
    )
    assert r.status_code == 422


async def test_batch_lifecycle_endpoints(client: httpx.AsyncClient, seed):
    async def _data(s):
        item = await make_item(s)
        used = await make_batch(s, item=item, code="LC-USED", expiry=days(60), qty=10)
        fresh = await make_batch(s, item=item, code="LC-FRESH", expiry=days(60), qty=10)
        return item, used, fresh

    item, used, fresh = await seed(_data)

    r = await client.post(f"/batches/{used.id}/stock", json={"quantity": 5})
    assert (r.json()["quantity"], r.json()["remaining_qty"]) == (15, 15)

    r = await client.post(f"/batches/{used.id}/adjust", json={"quantity_delta": -3, "notes": "broken"})
    assert r.json()["remaining_qty"] == 12

    r = await client.post(f"/batches/{used.id}/adjust", json={"quantity_delta": -100})
    assert r.status_code == 409
    assert _problem(r)["error_code"] == "insufficient_stock"

    r = await client.patch(f"/batches/{used.id}", json={"remaining_qty": 99})
    assert r.status_code == 422
    assert _problem(r)["error_code"] == "quantity_edit_forbidden"

    r = await client.patch(f"/batches/{used.id}", json={"batch_code": "LC-RENAMED"})
    assert r.status_code == 200
    assert r.json()["batch_code"] == "LC-RENAMED"

    r = await client.delete(f"/batches/{used.id}")
    assert r.status_code == 409
    assert _problem(r)["error_code"] == "batch_in_use"

    r = await client.delete(f"/batches/{fresh.id}")
    assert r.status_code == 204
    assert (await client.get(f"/batches/{fresh.id}/movements")).status_code == 404

    r = await client.post(f"/inventory/{item.id}/reconcile")
    assert r.json() == {"inventory_id": item.id, "stock": 12}
