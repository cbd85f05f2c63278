# app/services/order_acceptance_ttl.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.tx import tx_atomic
from app.models.enums import AcceptanceStatus, InitiatorType, OrderStatus
from app.models.order import Order

log = logging.getLogger("pharmacy.acceptance_ttl")


def _overdue(now: datetime):
    return (
        Order.initiator_type == InitiatorType.PHARMACY.value,
        Order.acceptance_status == AcceptanceStatus.PENDING.value,
        Order.acceptance_deadline.is_not(None),
        Order.acceptance_deadline < now,
    )


async def find_expired_acceptances(session: AsyncSession, *, now: datetime, limit: int = 100) -> List[int]:
    rows = await session.execute(
        select(Order.id).where(*_overdue(now)).order_by(Order.acceptance_deadline.asc(), Order.id.asc()).limit(limit)
    )
    return [int(r) for r in rows.scalars().all()]


async def sweep_expired_acceptances(
    session: AsyncSession,
    *,
    now: Optional[datetime] = None,
    dry_run: bool = False,
    batch_size: int = 100,
) -> int:
    """
    扫描并关闭超时未被患者接受的药房代下单。

    语义：
      - 仅处理：
          orders.initiator_type = 'pharmacy'
          AND acceptance_status = 'pending'
          AND acceptance_deadline < :now
      - 命中的订单：acceptance_status='rejected'，status='cancelled'
      - 不触碰批次 / 台账（库存只在履约时扣减，待接受订单没有占用任何批次）

    参数：
      session    : AsyncSession，由调用方提供并提交
      now        : 基准时间，便于测试中用固定时间；None 时取当前 UTC
      dry_run    : 只统计不修改
      batch_size : 单批最多处理多少单

    返回：
      int : 本次（或 dry_run 下将会）被取消的订单数量。
    """
    if now is None:
        now = datetime.now(timezone.utc)

    if dry_run:
        n = await session.scalar(select(func.count()).select_from(Order).where(*_overdue(now)))
        return int(n or 0)

    total = 0
    while True:
        ids = await find_expired_acceptances(session, now=now, limit=batch_size)
        if not ids:
            break

        async with tx_atomic(session):
            res = await session.execute(
                update(Order)
                .where(Order.id.in_(ids), Order.acceptance_status == AcceptanceStatus.PENDING.value)
                .values(
                    acceptance_status=AcceptanceStatus.REJECTED.value,
                    status=OrderStatus.CANCELLED.value,
                )
                .execution_options(synchronize_session=False)
            )
        total += int(res.rowcount or 0)

        # 尾批
        if len(ids) < batch_size:
            break

    if total:
        log.info("acceptance ttl: cancelled %s overdue orders (now=%s)", total, now.isoformat())
    return total
