# app/services/fefo_allocator.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.errors import InsufficientStockError, ValidationError
from app.api.problem import shortage_detail
from app.models.batch import Batch


@dataclass(frozen=True)
class Allocation:
    batch_id: int
    qty: int

    def to_dict(self) -> dict:
        return {"batch_id": self.batch_id, "qty": self.qty}


def fefo_candidates(batches: Iterable[Batch], *, today: date) -> List[Batch]:
    """
    可自动分配的候选批次，按 FEFO 排序：

    - 过滤：remaining_qty = 0（用尽）、expiry_date < today（过期）
    - 排序：expiry_date ASC，created_at ASC，id ASC（稳定 tie-breaker）
    """
    seq = [b for b in batches if int(b.remaining_qty) > 0 and b.expiry_date >= today]
    seq.sort(key=lambda b: (b.expiry_date, b.created_at, b.id))
    return seq


def plan_fefo(
    batches: Iterable[Batch],
    *,
    need: int,
    today: date,
    inventory_id: Optional[int] = None,
) -> List[Allocation]:
    """
    FEFO 贪心切片（纯函数，不访问数据库）：

        每个候选批次取 min(remaining_qty, 仍需数量)，直到需求满足或候选耗尽。

    需求无法满足 → InsufficientStockError（带 shortage 明细），不返回“部分计划”。
    """
    need = int(need)
    if need <= 0:
        raise ValidationError("requested quantity must be a positive integer", code="invalid_quantity")

    remaining = need
    plan: List[Allocation] = []

    for b in fefo_candidates(batches, today=today):
        if remaining <= 0:
            break
        take = min(remaining, int(b.remaining_qty))
        if take > 0:
            plan.append(Allocation(batch_id=int(b.id), qty=take))
            remaining -= take

    if remaining > 0:
        available = need - remaining
        inv = int(inventory_id) if inventory_id is not None else 0
        raise InsufficientStockError(
            "not enough stock in non-expired batches",
            context={"inventory_id": inventory_id, "today": today.isoformat()},
            details=[
                shortage_detail(
                    inventory_id=inv,
                    required_qty=need,
                    available_qty=available,
                    path="fefo.plan",
                )
            ],
            next_actions=[
                {"action": "select_batches_manually", "label": "Select batches manually"},
                {"action": "adjust_to_available", "label": "Reduce to available quantity"},
            ],
        )

    return plan


class FefoAllocator:
    """
    FEFO 分配器

    - 分配维度：inventory_id（商品）下的全部批次
    - expiry_date 为排序主键；同到期日按创建先后
    - 过期 / 用尽批次永不自动选中（人工指定批次走履约编排器的 selections）
    - plan() 只读、不加锁；提交期的余量校验由条件扣减负责（见 StockConsumeService）
    """

    async def plan(
        self,
        session: AsyncSession,
        *,
        inventory_id: int,
        need: int,
        today: Optional[date] = None,
    ) -> List[Allocation]:
        rows = await session.execute(
            select(Batch)
            .where(Batch.inventory_id == int(inventory_id))
            .order_by(Batch.expiry_date.asc(), Batch.created_at.asc(), Batch.id.asc())
            .execution_options(populate_existing=True)
        )
        return plan_fefo(
            rows.scalars().all(),
            need=need,
            today=today or date.today(),
            inventory_id=inventory_id,
        )

    async def available(
        self,
        session: AsyncSession,
        *,
        inventory_id: int,
        today: Optional[date] = None,
    ) -> int:
        """可自动分配的总量（未过期 + 有余量）。"""
        rows = await session.execute(
            select(Batch)
            .where(Batch.inventory_id == int(inventory_id))
            .execution_options(populate_existing=True)
        )
        return sum(int(b.remaining_qty) for b in fefo_candidates(rows.scalars().all(), today=today or date.today()))
