# app/services/stock_consume_service.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.errors import InsufficientStockError, NotFoundError, ValidationError
from app.api.problem import shortage_detail
from app.core.config import get_settings
from app.core.tx import tx_atomic
from app.metrics import CONSUME_CONFLICTS, STOCK_CONSUMED
from app.models.batch import Batch
from app.models.enums import MovementType
from app.services.batch_service import decrement_remaining
from app.services.fefo_allocator import Allocation, FefoAllocator
from app.services.ledger_writer import write_movement

log = logging.getLogger("pharmacy.consume")


@dataclass(frozen=True)
class ConsumedLeg:
    batch_id: int
    qty: int
    movement_id: int

    def to_dict(self) -> dict:
        return {"batch_id": self.batch_id, "qty": self.qty, "movement_id": self.movement_id}


class StaleAllocation(Exception):
    """提交期发现余量已被他人扣走（计划时读到的是旧值）。"""

    def __init__(self, *, inventory_id: int, batch_id: int, qty: int, available: int):
        super().__init__(f"batch {batch_id}: wanted {qty}, only {available} left at commit time")
        self.inventory_id = inventory_id
        self.batch_id = batch_id
        self.qty = qty
        self.available = available


def stale_to_shortage(e: StaleAllocation, *, message: Optional[str] = None) -> InsufficientStockError:
    """提交期旧读 → 对外的 InsufficientStockError（带 shortage 明细）。"""
    return InsufficientStockError(
        message or f"batch {e.batch_id} no longer has {e.qty} units available",
        details=[
            shortage_detail(
                inventory_id=e.inventory_id,
                batch_id=e.batch_id,
                required_qty=e.qty,
                available_qty=e.available,
                path="consume.commit",
            )
        ],
    )


class StockConsumeService:
    """
    扣减事务（Consumption Transaction）

    - consume(...)              ：自动 FEFO 计划 + 提交；提交期冲突时用新读重新计划
    - consume_allocations(...)  ：按给定 {batch_id, qty} 提交（人工选批）
    - commit_allocations(...)   ：同上但把旧读原样抛出（StaleAllocation），由调用方决定是否重新计划

    原子性：
      - 所有腿（每个批次一条）在一个保存点内：条件扣减 + consumption 台账，要么全成要么全不成
    并发：
      - 每条腿用条件 UPDATE（remaining_qty >= qty）扣减，不依赖计划期读到的余量
    """

    def __init__(self, allocator: Optional[FefoAllocator] = None, *, max_attempts: Optional[int] = None) -> None:
        self.allocator = allocator or FefoAllocator()
        if max_attempts is None:
            max_attempts = get_settings().CONSUME_MAX_ATTEMPTS
        if int(max_attempts) < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = int(max_attempts)

    # ---------------------------------------------------------------
    # 内部：逐腿提交（调用方负责保存点）
    # ---------------------------------------------------------------
    async def _commit_legs(
        self,
        session: AsyncSession,
        *,
        inventory_id: int,
        allocations: Sequence[Allocation],
        order_id: Optional[int],
        performed_by: Optional[str],
    ) -> List[ConsumedLeg]:
        legs: List[ConsumedLeg] = []
        for a in allocations:
            ok = await decrement_remaining(session, batch_id=a.batch_id, qty=a.qty)
            if not ok:
                available = await session.scalar(select(Batch.remaining_qty).where(Batch.id == a.batch_id))
                raise StaleAllocation(
                    inventory_id=int(inventory_id), batch_id=a.batch_id, qty=a.qty, available=int(available or 0)
                )

            mv = await write_movement(
                session,
                batch_id=a.batch_id,
                movement_type=MovementType.CONSUMPTION,
                quantity_delta=-a.qty,
                order_id=order_id,
                performed_by=performed_by,
            )
            legs.append(ConsumedLeg(batch_id=a.batch_id, qty=a.qty, movement_id=mv.id))
        return legs

    async def _check_allocations(
        self, session: AsyncSession, *, inventory_id: int, allocations: Sequence[Allocation]
    ) -> None:
        if not allocations:
            raise ValidationError("at least one batch allocation is required", code="empty_allocation")

        seen: set[int] = set()
        for a in allocations:
            if isinstance(a.qty, bool) or not isinstance(a.qty, int) or a.qty <= 0:
                raise ValidationError(
                    f"allocation qty for batch {a.batch_id} must be a positive integer", code="invalid_quantity"
                )
            if a.batch_id in seen:
                raise ValidationError(f"batch {a.batch_id} is listed more than once", code="duplicate_batch")
            seen.add(a.batch_id)

        rows = await session.execute(select(Batch.id, Batch.inventory_id).where(Batch.id.in_(seen)))
        owner: Dict[int, int] = {int(r.id): int(r.inventory_id) for r in rows}
        for bid in seen:
            if bid not in owner:
                raise NotFoundError(f"batch {bid} not found")
            if owner[bid] != int(inventory_id):
                raise ValidationError(
                    f"batch {bid} does not belong to inventory item {inventory_id}", code="batch_mismatch"
                )

    # ---------------------------------------------------------------
    # 对外：显式批次扣减
    # ---------------------------------------------------------------
    async def commit_allocations(
        self,
        session: AsyncSession,
        *,
        inventory_id: int,
        allocations: Sequence[Allocation],
        order_id: Optional[int] = None,
        performed_by: Optional[str] = None,
    ) -> List[ConsumedLeg]:
        """校验后在一个保存点内提交；提交期旧读 → 保存点回滚并抛 StaleAllocation。不计指标。"""
        await self._check_allocations(session, inventory_id=inventory_id, allocations=allocations)
        async with tx_atomic(session):
            return await self._commit_legs(
                session,
                inventory_id=inventory_id,
                allocations=allocations,
                order_id=order_id,
                performed_by=performed_by,
            )

    async def consume_allocations(
        self,
        session: AsyncSession,
        *,
        inventory_id: int,
        allocations: Sequence[Allocation],
        order_id: Optional[int] = None,
        performed_by: Optional[str] = None,
    ) -> List[ConsumedLeg]:
        """
        按给定批次扣减。任一腿提交期余量不足 → 整体回滚 + InsufficientStockError（不重试：批次是人工指定的）。
        """
        try:
            legs = await self.commit_allocations(
                session,
                inventory_id=inventory_id,
                allocations=allocations,
                order_id=order_id,
                performed_by=performed_by,
            )
        except StaleAllocation as e:
            CONSUME_CONFLICTS.inc()
            log.warning("explicit consume rejected inv=%s order=%s: %s", inventory_id, order_id, e)
            raise stale_to_shortage(e) from None

        STOCK_CONSUMED.labels("explicit").inc(sum(leg.qty for leg in legs))
        log.info("consumed inv=%s order=%s legs=%s", inventory_id, order_id, [leg.to_dict() for leg in legs])
        return legs

    # ---------------------------------------------------------------
    # 对外：自动 FEFO 扣减
    # ---------------------------------------------------------------
    async def consume(
        self,
        session: AsyncSession,
        *,
        inventory_id: int,
        quantity: int,
        order_id: Optional[int] = None,
        performed_by: Optional[str] = None,
        today: Optional[date] = None,
    ) -> List[ConsumedLeg]:
        """
        FEFO 计划 → 提交。

        - 计划期不足：直接 InsufficientStockError（不改任何批次）
        - 提交期冲突：保存点回滚，用新读重新计划；超过 max_attempts 仍冲突 → InsufficientStockError
        """
        last: Optional[StaleAllocation] = None
        for attempt in range(1, self.max_attempts + 1):
            plan = await self.allocator.plan(session, inventory_id=inventory_id, need=quantity, today=today)
            try:
                async with tx_atomic(session):
                    legs = await self._commit_legs(
                        session,
                        inventory_id=inventory_id,
                        allocations=plan,
                        order_id=order_id,
                        performed_by=performed_by,
                    )
            except StaleAllocation as e:
                CONSUME_CONFLICTS.inc()
                last = e
                log.warning(
                    "stale FEFO plan inv=%s attempt=%s/%s: %s", inventory_id, attempt, self.max_attempts, e
                )
                continue

            STOCK_CONSUMED.labels("fefo").inc(int(quantity))
            log.info("consumed (fefo) inv=%s qty=%s order=%s legs=%s", inventory_id, quantity, order_id, len(legs))
            return legs

        if last is None:
            raise InsufficientStockError("not enough stock in non-expired batches")
        raise stale_to_shortage(last, message="stock changed concurrently; not enough stock in non-expired batches")
