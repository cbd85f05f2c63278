# app/services/inventory_alerts_service.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.errors import NotFoundError
from app.core.config import get_settings
from app.core.tx import tx_atomic
from app.models.batch import Batch
from app.models.inventory_item import InventoryItem
from app.services.batch_service import BatchService

log = logging.getLogger("pharmacy.alerts")


@dataclass(frozen=True)
class StockLevel:
    inventory_id: int
    name: str
    available_qty: int
    has_batches: bool

    def to_dict(self) -> dict:
        return {
            "inventory_id": self.inventory_id,
            "name": self.name,
            "available_qty": self.available_qty,
            "has_batches": self.has_batches,
        }


@dataclass
class AlertsSummary:
    pharmacy_id: str
    low_stock: List[StockLevel] = field(default_factory=list)
    critical_stock: List[StockLevel] = field(default_factory=list)
    out_of_stock: List[StockLevel] = field(default_factory=list)
    expiring: List[Batch] = field(default_factory=list)
    expired: List[Batch] = field(default_factory=list)

    @property
    def total(self) -> int:
        return (
            len(self.low_stock)
            + len(self.critical_stock)
            + len(self.out_of_stock)
            + len(self.expiring)
            + len(self.expired)
        )


class InventoryAlertsService:
    """
    库存读路径 + 告警

    可用量口径：
      - 商品有批次：Σ 未过期批次的 remaining_qty（与 FEFO 可分配量一致）
      - 商品无批次：inventory.stock（老数据 / 未启用批次管理的商品）

    告警分档互斥：
      - out_of_stock : 可用量 = 0
      - critical     : 0 < 可用量 <= CRITICAL_STOCK_THRESHOLD
      - low          : CRITICAL < 可用量 <= LOW_STOCK_THRESHOLD
    """

    def __init__(self, batches: Optional[BatchService] = None) -> None:
        self.batches = batches or BatchService()

    async def _levels(
        self, session: AsyncSession, pharmacy_id: str, *, today: Optional[date] = None
    ) -> List[StockLevel]:
        t = today or date.today()

        live = case((Batch.expiry_date >= t, Batch.remaining_qty), else_=0)
        agg = (
            select(
                Batch.inventory_id.label("inventory_id"),
                func.count(Batch.id).label("n"),
                func.coalesce(func.sum(live), 0).label("available"),
            )
            .group_by(Batch.inventory_id)
            .subquery()
        )
        rows = await session.execute(
            select(InventoryItem.id, InventoryItem.name, InventoryItem.stock, agg.c.n, agg.c.available)
            .outerjoin(agg, agg.c.inventory_id == InventoryItem.id)
            .where(InventoryItem.pharmacy_id == pharmacy_id)
            .order_by(InventoryItem.id.asc())
        )

        levels: List[StockLevel] = []
        for inv_id, name, stock, n, available in rows.all():
            has_batches = bool(n)
            qty = int(available or 0) if has_batches else int(stock or 0)
            levels.append(StockLevel(int(inv_id), name, qty, has_batches))
        return levels

    # ------------------------------------------------------------------
    # 单商品
    # ------------------------------------------------------------------

    async def available_stock(
        self, session: AsyncSession, inventory_id: int, *, today: Optional[date] = None
    ) -> int:
        item = await session.get(InventoryItem, int(inventory_id))
        if item is None:
            raise NotFoundError(f"inventory item {inventory_id} not found")

        totals = await self.batches.get_batches_with_total(session, item.id, today=today)
        if totals.batches:
            return totals.total_available
        return int(item.stock)

    async def reconcile_item_stock(
        self, session: AsyncSession, inventory_id: int, *, today: Optional[date] = None
    ) -> InventoryItem:
        """
        显式对账：把批次口径的可用量写回 inventory.stock。
        扣减路径从不隐式调用这里；stock 只在操作员要求时才与批次对齐。
        """
        item = await session.get(InventoryItem, int(inventory_id))
        if item is None:
            raise NotFoundError(f"inventory item {inventory_id} not found")

        totals = await self.batches.get_batches_with_total(session, item.id, today=today)
        if not totals.batches:
            return item

        before = int(item.stock)
        async with tx_atomic(session):
            item.stock = totals.total_available
            await session.flush()

        if before != item.stock:
            log.info("inventory %s stock reconciled %s -> %s", item.id, before, item.stock)
        return item

    # ------------------------------------------------------------------
    # 按药房
    # ------------------------------------------------------------------

    async def low_stock_items(
        self,
        session: AsyncSession,
        pharmacy_id: str,
        *,
        threshold: Optional[int] = None,
        critical_threshold: Optional[int] = None,
        today: Optional[date] = None,
    ) -> List[StockLevel]:
        s = get_settings()
        hi = s.LOW_STOCK_THRESHOLD if threshold is None else int(threshold)
        lo = s.CRITICAL_STOCK_THRESHOLD if critical_threshold is None else int(critical_threshold)
        return [x for x in await self._levels(session, pharmacy_id, today=today) if lo < x.available_qty <= hi]

    async def critical_stock_items(
        self,
        session: AsyncSession,
        pharmacy_id: str,
        *,
        threshold: Optional[int] = None,
        today: Optional[date] = None,
    ) -> List[StockLevel]:
        lim = get_settings().CRITICAL_STOCK_THRESHOLD if threshold is None else int(threshold)
        return [x for x in await self._levels(session, pharmacy_id, today=today) if 0 < x.available_qty <= lim]

    async def out_of_stock_items(
        self, session: AsyncSession, pharmacy_id: str, *, today: Optional[date] = None
    ) -> List[StockLevel]:
        return [x for x in await self._levels(session, pharmacy_id, today=today) if x.available_qty <= 0]

    async def alerts_summary(
        self, session: AsyncSession, pharmacy_id: str, *, today: Optional[date] = None
    ) -> AlertsSummary:
        s = get_settings()
        levels = await self._levels(session, pharmacy_id, today=today)

        buckets: Dict[str, List[StockLevel]] = {"low": [], "critical": [], "out": []}
        for x in levels:
            if x.available_qty <= 0:
                buckets["out"].append(x)
            elif x.available_qty <= s.CRITICAL_STOCK_THRESHOLD:
                buckets["critical"].append(x)
            elif x.available_qty <= s.LOW_STOCK_THRESHOLD:
                buckets["low"].append(x)

        return AlertsSummary(
            pharmacy_id=pharmacy_id,
            low_stock=buckets["low"],
            critical_stock=buckets["critical"],
            out_of_stock=buckets["out"],
            expiring=await self.batches.get_expiring_batches(
                session, pharmacy_id, days_ahead=s.EXPIRING_SOON_DAYS, today=today
            ),
            expired=await self.batches.get_expired_batches(session, pharmacy_id, today=today),
        )
