# tests/services/test_order_acceptance_ttl.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from tests.factories import days, make_batch, make_item, make_order

from app.services.batch_service import BatchService
from app.services.order_acceptance_ttl import sweep_expired_acceptances
from app.services.order_service import OrderService

UTC = timezone.utc
NOW = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)

pytestmark = pytest.mark.contract


async def test_sweep_cancels_only_overdue_pharmacy_orders(session: AsyncSession):
    item = await make_item(session)
    b = await make_batch(session, item=item, code="TTL-1", expiry=days(90), qty=10)

    overdue = await make_order(
        session, lines=[(item, 2)], initiator_type="pharmacy", acceptance_deadline=NOW - timedelta(minutes=1)
    )
    not_yet = await make_order(
        session, lines=[(item, 2)], initiator_type="pharmacy", acceptance_deadline=NOW + timedelta(hours=1)
    )
    no_deadline = await make_order(session, lines=[(item, 2)], initiator_type="pharmacy")
    patient = await make_order(session, lines=[(item, 2)], acceptance_deadline=NOW - timedelta(days=1))

    assert await sweep_expired_acceptances(session, now=NOW, dry_run=True) == 1
    assert (await OrderService().get_order(session, overdue.id)).status == "placed"

    assert await sweep_expired_acceptances(session, now=NOW) == 1
    # 幂等
    assert await sweep_expired_acceptances(session, now=NOW) == 0

    svc = OrderService()
    o = await svc.get_order(session, overdue.id)
    assert (o.status, o.acceptance_status) == ("cancelled", "rejected")
    for oid in (not_yet.id, no_deadline.id):
        o = await svc.get_order(session, oid)
        assert (o.status, o.acceptance_status) == ("placed", "pending")
    o = await svc.get_order(session, patient.id)
    assert (o.status, o.acceptance_status) == ("placed", "accepted")

    # 不触碰库存
    assert (await BatchService().get_batch(session, b.id)).remaining_qty == 10


async def test_sweep_walks_all_batches(session: AsyncSession):
    item = await make_item(session)
    for i in range(5):
        await make_order(
            session,
            lines=[(item, 1)],
            initiator_type="pharmacy",
            acceptance_deadline=NOW - timedelta(hours=i + 1),
        )

    assert await sweep_expired_acceptances(session, now=NOW, batch_size=2) == 5
    assert await sweep_expired_acceptances(session, now=NOW, batch_size=2) == 0
