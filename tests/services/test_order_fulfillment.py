# tests/services/test_order_fulfillment.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List

import pytest
from prometheus_client import REGISTRY
from sqlalchemy.ext.asyncio import AsyncSession

from tests.factories import days, make_batch, make_item, make_order

from app.api.errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from app.services.batch_service import BatchService
from app.services.fefo_allocator import Allocation, FefoAllocator
from app.services.ledger_writer import list_movements, verify_batch_ledger
from app.services.order_fulfillment_service import OrderFulfillmentService
from app.services.order_service import OrderService
from app.services.stock_consume_service import StockConsumeService

pytestmark = pytest.mark.contract


def _fulfillments(result: str) -> float:
    return REGISTRY.get_sample_value("order_fulfillments_total", {"result": result}) or 0.0


async def _remaining(session: AsyncSession, batch_id: int) -> int:
    return (await BatchService().get_batch(session, batch_id)).remaining_qty


def _conflicts() -> float:
    return REGISTRY.get_sample_value("stock_consume_conflicts_total") or 0.0


class _StaleOnceAllocator(FefoAllocator):
    """第一次返回给定的（过时）计划，之后走真实 FEFO。"""

    def __init__(self, stale: List[Allocation]) -> None:
        self.stale = stale
        self.calls = 0

    async def plan(self, session, **kw):
        self.calls += 1
        if self.calls == 1:
            return list(self.stale)
        return await super().plan(session, **kw)


async def test_fulfill_order_fefo_success(session: AsyncSession):
    amox = await make_item(session, name="Amoxicillin 500mg")
    para = await make_item(session, name="Paracetamol 500mg", price="3.00")
    a = await make_batch(session, item=amox, code="AMX-A", expiry=days(10), qty=20)
    b = await make_batch(session, item=amox, code="AMX-B", expiry=days(90), qty=50)
    c = await make_batch(session, item=para, code="PAR-C", expiry=days(40), qty=8)

    order = await make_order(session, lines=[(amox, 30), (para, 5)])
    before = _fulfillments("completed")

    result = await OrderFulfillmentService().fulfill_order(session, order_id=order.id, performed_by="pharm-1")

    assert result.status == "ready"
    assert result.fulfillment_status == "completed"
    assert _fulfillments("completed") == before + 1

    rows = await OrderFulfillmentService().get_fulfillments(session, order.id)
    assert [(r.inventory_id, r.batch_id, r.requested_qty, r.fulfilled_qty) for r in rows] == [
        (amox.id, a.id, 30, 20),
        (amox.id, b.id, 30, 10),
        (para.id, c.id, 5, 5),
    ]
    assert all(r.fulfilled_by == "pharm-1" for r in rows)

    assert (await _remaining(session, a.id), await _remaining(session, b.id), await _remaining(session, c.id)) == (
        0,
        40,
        3,
    )
    consumption = [m for m in await list_movements(session, b.id) if m.type == "consumption"]
    assert [(m.quantity_delta, m.order_id) for m in consumption] == [(-10, order.id)]

    fresh = await OrderService().get_order(session, order.id)
    assert (fresh.status, fresh.fulfillment_status) == ("ready", "completed")


async def test_fulfill_order_fails_closed_when_one_line_is_short(session: AsyncSession):
    """
    两行订单，其中一行需求超过全部可用量：
      - 整单 InsufficientStockError
      - 另一行的批次不被扣减
      - 订单保持 pending，没有履约记录
    """
    amox = await make_item(session, name="Amoxicillin 500mg")
    para = await make_item(session, name="Paracetamol 500mg")
    a = await make_batch(session, item=amox, code="AMX-A", expiry=days(10), qty=20)
    c = await make_batch(session, item=para, code="PAR-C", expiry=days(40), qty=8)
    await make_batch(session, item=para, code="PAR-OLD", expiry=days(-2), qty=500)

    order = await make_order(session, lines=[(amox, 10), (para, 100)])
    before = _fulfillments("insufficient_stock")

    with pytest.raises(InsufficientStockError) as ei:
        await OrderFulfillmentService().fulfill_order(session, order_id=order.id)

    assert ei.value.details[0]["inventory_id"] == para.id
    assert _fulfillments("insufficient_stock") == before + 1
    assert await _remaining(session, a.id) == 20
    assert await _remaining(session, c.id) == 8
    assert await OrderFulfillmentService().get_fulfillments(session, order.id) == []

    fresh = await OrderService().get_order(session, order.id)
    assert (fresh.status, fresh.fulfillment_status) == ("placed", "pending")


async def test_second_fulfillment_is_conflict(session: AsyncSession):
    item = await make_item(session)
    await make_batch(session, item=item, code="TWICE-1", expiry=days(30), qty=10)
    order = await make_order(session, lines=[(item, 4)])
    svc = OrderFulfillmentService()

    await svc.fulfill_order(session, order_id=order.id)
    with pytest.raises(ConflictError) as ei:
        await svc.fulfill_order(session, order_id=order.id)
    assert ei.value.code == "order_already_fulfilled"
    assert "already fully allocated" in ei.value.message


async def test_cancelled_missing_and_unaccepted_orders(session: AsyncSession):
    item = await make_item(session)
    await make_batch(session, item=item, code="ST-1", expiry=days(30), qty=10)
    svc = OrderFulfillmentService()

    cancelled = await make_order(session, lines=[(item, 1)])
    await OrderService().update_status(session, order_id=cancelled.id, status="cancelled")
    with pytest.raises(ConflictError) as ei:
        await svc.fulfill_order(session, order_id=cancelled.id)
    assert ei.value.code == "order_cancelled"

    with pytest.raises(NotFoundError):
        await svc.fulfill_order(session, order_id=31337)

    pending = await make_order(
        session,
        lines=[(item, 1)],
        initiator_type="pharmacy",
        acceptance_deadline=datetime.now(timezone.utc) + timedelta(hours=2),
    )
    with pytest.raises(ConflictError) as ei:
        await svc.fulfill_order(session, order_id=pending.id)
    assert ei.value.code == "order_not_accepted"


async def test_manual_selection_overrides_fefo(session: AsyncSession):
    item = await make_item(session)
    a = await make_batch(session, item=item, code="MAN-A", expiry=days(10), qty=20)
    b = await make_batch(session, item=item, code="MAN-B", expiry=days(90), qty=50)
    order = await make_order(session, lines=[(item, 30)])

    await OrderFulfillmentService().fulfill_order(
        session, order_id=order.id, selections={item.id: [Allocation(b.id, 30)]}
    )

    assert await _remaining(session, a.id) == 20
    assert await _remaining(session, b.id) == 20


@pytest.mark.parametrize(
    "make_selection, error, code",
    [
        (lambda a, b, f, x: [Allocation(b, 20)], ValidationError, "allocation_mismatch"),
        (lambda a, b, f, x: [Allocation(b, 20), Allocation(b, 10)], ValidationError, "duplicate_batch"),
        (lambda a, b, f, x: [Allocation(f, 30)], ValidationError, "batch_mismatch"),
        (lambda a, b, f, x: [Allocation(x, 30)], ValidationError, "batch_expired"),
        (lambda a, b, f, x: [Allocation(a, 25), Allocation(b, 5)], InsufficientStockError, "insufficient_stock"),
        (lambda a, b, f, x: [Allocation(404404, 30)], ValidationError, "batch_mismatch"),
        (lambda a, b, f, x: [], ValidationError, "allocation_mismatch"),
    ],
)
async def test_invalid_manual_selection_is_rejected_before_any_write(
    session: AsyncSession, make_selection, error, code
):
    item = await make_item(session)
    other = await make_item(session, name="Other")
    a = await make_batch(session, item=item, code="SEL-A", expiry=days(10), qty=20)
    b = await make_batch(session, item=item, code="SEL-B", expiry=days(90), qty=50)
    x = await make_batch(session, item=item, code="SEL-X", expiry=days(-1), qty=40)
    f = await make_batch(session, item=other, code="SEL-F", expiry=days(90), qty=50)

    # 第二行走 FEFO 且可满足：校验失败时也不能被扣
    order = await make_order(session, lines=[(other, 5), (item, 30)])

    with pytest.raises(error) as ei:
        await OrderFulfillmentService().fulfill_order(
            session, order_id=order.id, selections={item.id: make_selection(a.id, b.id, f.id, x.id)}
        )
    assert ei.value.code == code

    for batch, qty in ((a, 20), (b, 50), (x, 40), (f, 50)):
        assert await _remaining(session, batch.id) == qty
    assert (await OrderService().get_order(session, order.id)).fulfillment_status == "pending"


async def test_expired_batch_allowed_when_operator_overrides(session: AsyncSession):
    item = await make_item(session)
    x = await make_batch(session, item=item, code="OVR-X", expiry=days(-1), qty=40)
    order = await make_order(session, lines=[(item, 15)])

    result = await OrderFulfillmentService().fulfill_order(
        session, order_id=order.id, selections={item.id: [Allocation(x.id, 15)]}, allow_expired=True
    )

    assert result.fulfillment_status == "completed"
    assert await _remaining(session, x.id) == 25


async def test_selection_for_item_not_in_order(session: AsyncSession):
    item = await make_item(session)
    stray = await make_item(session, name="Stray")
    await make_batch(session, item=item, code="NIO-A", expiry=days(10), qty=20)
    order = await make_order(session, lines=[(item, 3)])

    with pytest.raises(ValidationError) as ei:
        await OrderFulfillmentService().fulfill_order(
            session, order_id=order.id, selections={stray.id: [Allocation(1, 1)]}
        )
    assert ei.value.code == "selection_not_in_order"


async def test_repeated_item_lines_are_fulfilled_as_one(session: AsyncSession):
    item = await make_item(session)
    a = await make_batch(session, item=item, code="AGG-A", expiry=days(10), qty=12)
    b = await make_batch(session, item=item, code="AGG-B", expiry=days(60), qty=12)
    order = await make_order(session, lines=[(item, 10), (item, 5)])

    result = await OrderFulfillmentService().fulfill_order(session, order_id=order.id)

    assert [(r.batch_id, r.requested_qty, r.fulfilled_qty) for r in result.fulfillments] == [
        (a.id, 15, 12),
        (b.id, 15, 3),
    ]


async def test_preview_reports_shortfall_without_raising(session: AsyncSession):
    amox = await make_item(session, name="Amoxicillin 500mg")
    para = await make_item(session, name="Paracetamol 500mg")
    a = await make_batch(session, item=amox, code="PV-A", expiry=days(10), qty=20)
    await make_batch(session, item=para, code="PV-C", expiry=days(40), qty=8)
    order = await make_order(session, lines=[(amox, 12), (para, 10)])

    lines = await OrderFulfillmentService().preview_allocations(session, order_id=order.id)

    by_item = {ln.inventory_id: ln for ln in lines}
    assert by_item[amox.id].allocations == [Allocation(a.id, 12)]
    assert by_item[amox.id].shortfall == 0
    assert by_item[para.id].allocations == []
    assert (by_item[para.id].available_qty, by_item[para.id].shortfall) == (8, 10)

    # 预览只读
    assert await _remaining(session, a.id) == 20


async def test_pharmacy_order_is_fulfillable_after_acceptance(session: AsyncSession):
    item = await make_item(session)
    b = await make_batch(session, item=item, code="ACC-1", expiry=days(30), qty=10)
    order = await make_order(
        session,
        lines=[(item, 4)],
        initiator_type="pharmacy",
        acceptance_deadline=datetime.now(timezone.utc) + timedelta(hours=2),
    )
    svc = OrderFulfillmentService()

    with pytest.raises(ConflictError) as ei:
        await svc.fulfill_order(session, order_id=order.id)
    assert ei.value.code == "order_not_accepted"
    assert await _remaining(session, b.id) == 10

    await OrderService().accept_order(session, order_id=order.id)
    result = await svc.fulfill_order(session, order_id=order.id)

    assert (result.status, result.fulfillment_status) == ("ready", "completed")
    assert [(f.batch_id, f.fulfilled_qty) for f in result.fulfillments] == [(b.id, 4)]
    assert await _remaining(session, b.id) == 6


async def test_rejected_pharmacy_order_cannot_be_fulfilled(session: AsyncSession):
    item = await make_item(session)
    b = await make_batch(session, item=item, code="REJ-1", expiry=days(30), qty=10)
    order = await make_order(session, lines=[(item, 4)], initiator_type="pharmacy")

    await OrderService().reject_order(session, order_id=order.id)
    with pytest.raises(ConflictError) as ei:
        await OrderFulfillmentService().fulfill_order(session, order_id=order.id)
    assert ei.value.code == "order_cancelled"
    assert await _remaining(session, b.id) == 10


async def test_fulfill_replans_fefo_line_after_commit_conflict(session: AsyncSession):
    """
    第一次计划是旧读 [A:30]（A 实际只剩 20）：
      - 提交期条件扣减失败 → 整单保存点回滚
      - 用新读重新计划 → [A:20, B:10]
    """
    item = await make_item(session)
    a = await make_batch(session, item=item, code="FRP-A", expiry=days(10), qty=20)
    b = await make_batch(session, item=item, code="FRP-B", expiry=days(90), qty=50)
    order = await make_order(session, lines=[(item, 30)])

    allocator = _StaleOnceAllocator([Allocation(a.id, 30)])
    before = _conflicts()

    result = await OrderFulfillmentService(allocator=allocator).fulfill_order(session, order_id=order.id)

    assert allocator.calls == 2
    assert _conflicts() == before + 1
    assert result.fulfillment_status == "completed"
    assert [(f.batch_id, f.fulfilled_qty) for f in result.fulfillments] == [(a.id, 20), (b.id, 10)]

    rows = await OrderFulfillmentService().get_fulfillments(session, order.id)
    assert [(r.batch_id, r.fulfilled_qty) for r in rows] == [(a.id, 20), (b.id, 10)]
    assert (await _remaining(session, a.id), await _remaining(session, b.id)) == (0, 40)
    assert (await verify_batch_ledger(session, a.id)).ok
    assert (await verify_batch_ledger(session, b.id)).ok


async def test_fulfill_gives_up_when_attempts_are_exhausted(session: AsyncSession):
    item = await make_item(session)
    a = await make_batch(session, item=item, code="FGU-A", expiry=days(10), qty=20)
    b = await make_batch(session, item=item, code="FGU-B", expiry=days(90), qty=50)
    order = await make_order(session, lines=[(item, 30)])

    allocator = _StaleOnceAllocator([Allocation(a.id, 30)])
    svc = OrderFulfillmentService(allocator=allocator, consumer=StockConsumeService(allocator, max_attempts=1))
    before = _fulfillments("insufficient_stock")

    with pytest.raises(InsufficientStockError) as ei:
        await svc.fulfill_order(session, order_id=order.id)

    assert allocator.calls == 1
    assert ei.value.details[0]["batch_id"] == a.id
    assert _fulfillments("insufficient_stock") == before + 1
    assert (await _remaining(session, a.id), await _remaining(session, b.id)) == (20, 50)
    assert await OrderFulfillmentService().get_fulfillments(session, order.id) == []

    fresh = await OrderService().get_order(session, order.id)
    assert (fresh.status, fresh.fulfillment_status) == ("placed", "pending")
