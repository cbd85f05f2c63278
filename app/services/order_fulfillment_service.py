# app/services/order_fulfillment_service.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Mapping, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.errors import BizError, ConflictError, InsufficientStockError, ValidationError
from app.api.problem import shortage_detail
from app.core.tx import tx_atomic
from app.metrics import CONSUME_CONFLICTS, FULFILLMENTS, STOCK_CONSUMED
from app.models.batch import Batch
from app.models.enums import AcceptanceStatus, FulfillmentStatus, OrderStatus
from app.models.order import Order
from app.models.order_fulfillment import OrderFulfillment
from app.models.order_item import OrderItem
from app.services.fefo_allocator import Allocation, FefoAllocator
from app.services.order_service import OrderService
from app.services.stock_consume_service import StaleAllocation, StockConsumeService, stale_to_shortage
from app.services.utils.expiry_rules import is_expired

log = logging.getLogger("pharmacy.fulfillment")


@dataclass(frozen=True)
class OrderLineNeed:
    inventory_id: int
    requested_qty: int


@dataclass
class LinePlan:
    inventory_id: int
    requested_qty: int
    allocations: List[Allocation]
    source: str  # fefo | manual


@dataclass
class LinePreview:
    inventory_id: int
    requested_qty: int
    available_qty: int
    allocations: List[Allocation] = field(default_factory=list)

    @property
    def shortfall(self) -> int:
        return max(0, self.requested_qty - sum(a.qty for a in self.allocations))


@dataclass
class FulfillmentResult:
    order_id: int
    status: str
    fulfillment_status: str
    fulfillments: List[OrderFulfillment]


async def _load_order_needs(session: AsyncSession, *, order_id: int) -> List[OrderLineNeed]:
    """
    返回整单需求（同一商品多行合并）：[OrderLineNeed(inventory_id, qty)]，按 inventory_id 升序。
    """
    rows = await session.execute(
        select(OrderItem.inventory_id, func.sum(OrderItem.quantity).label("qty"))
        .where(OrderItem.order_id == int(order_id))
        .group_by(OrderItem.inventory_id)
        .order_by(OrderItem.inventory_id)
    )
    needs: List[OrderLineNeed] = []
    for inventory_id, qty in rows.all():
        q = int(qty or 0)
        if q > 0:
            needs.append(OrderLineNeed(inventory_id=int(inventory_id), requested_qty=q))
    return needs


class OrderFulfillmentService:
    """
    订单履约编排器

    状态机（orders.fulfillment_status）：pending → completed（失败不自动重试，由操作员重新发起）

    fulfill_order 两阶段：
      1) 校验 / 计划（只读）：每行得到 {batch_id, qty} 列表（人工选批或 FEFO），合计必须等于需求量
      2) 提交（一个保存点）：逐行条件扣减 + consumption 台账 + order_fulfillments；最后推进订单状态
    任一行失败 → 整单不落任何写入，订单保持 pending。
    """

    def __init__(
        self,
        *,
        allocator: Optional[FefoAllocator] = None,
        consumer: Optional[StockConsumeService] = None,
        orders: Optional[OrderService] = None,
    ) -> None:
        self.allocator = allocator or FefoAllocator()
        self.consumer = consumer or StockConsumeService(self.allocator)
        self.orders = orders or OrderService()

    # ---------------------------------------------------------------
    # 阶段 1：校验 + 计划
    # ---------------------------------------------------------------
    async def _check_selection(
        self,
        session: AsyncSession,
        *,
        need: OrderLineNeed,
        selection: Sequence[Allocation],
        allow_expired: bool,
        today: date,
    ) -> List[Allocation]:
        path = f"selections[{need.inventory_id}]"
        if not selection:
            raise ValidationError(f"{path}: no batches selected", code="allocation_mismatch")

        ids = [a.batch_id for a in selection]
        if len(set(ids)) != len(ids):
            raise ValidationError(f"{path}: a batch is selected more than once", code="duplicate_batch")

        rows = await session.execute(
            select(Batch).where(Batch.id.in_(ids)).execution_options(populate_existing=True)
        )
        batches: Dict[int, Batch] = {b.id: b for b in rows.scalars().all()}

        total = 0
        for a in selection:
            if isinstance(a.qty, bool) or not isinstance(a.qty, int) or a.qty <= 0:
                raise ValidationError(f"{path}: qty for batch {a.batch_id} must be positive", code="invalid_quantity")
            b = batches.get(a.batch_id)
            if b is None or b.inventory_id != need.inventory_id:
                raise ValidationError(
                    f"{path}: batch {a.batch_id} does not belong to inventory item {need.inventory_id}",
                    code="batch_mismatch",
                )
            if not allow_expired and is_expired(b.expiry_date, today):
                raise ValidationError(f"{path}: batch {b.batch_code} is expired", code="batch_expired")
            if a.qty > b.remaining_qty:
                raise InsufficientStockError(
                    f"batch {b.batch_code} has only {b.remaining_qty} units left",
                    details=[
                        shortage_detail(
                            inventory_id=need.inventory_id,
                            batch_id=b.id,
                            required_qty=a.qty,
                            available_qty=b.remaining_qty,
                            path=path,
                        )
                    ],
                )
            total += a.qty

        if total != need.requested_qty:
            raise ValidationError(
                f"{path}: selected {total} units but {need.requested_qty} were requested",
                code="allocation_mismatch",
                details=[
                    {
                        "type": "validation",
                        "path": path,
                        "inventory_id": need.inventory_id,
                        "required_qty": need.requested_qty,
                        "available_qty": total,
                        "reason": "allocation_sum_mismatch",
                    }
                ],
            )
        return list(selection)

    async def plan_order(
        self,
        session: AsyncSession,
        *,
        needs: Sequence[OrderLineNeed],
        selections: Optional[Mapping[int, Sequence[Allocation]]] = None,
        allow_expired: bool = False,
        today: Optional[date] = None,
    ) -> List[LinePlan]:
        """只读：为每一行生成完整分配；任何一行不满足即抛错。"""
        t = today or date.today()
        selections = dict(selections or {})

        unknown = set(selections) - {n.inventory_id for n in needs}
        if unknown:
            raise ValidationError(
                f"selections reference items that are not in the order: {sorted(unknown)}",
                code="selection_not_in_order",
            )

        plans: List[LinePlan] = []
        for need in needs:
            if need.inventory_id in selections:
                allocs = await self._check_selection(
                    session,
                    need=need,
                    selection=selections[need.inventory_id],
                    allow_expired=allow_expired,
                    today=t,
                )
                plans.append(LinePlan(need.inventory_id, need.requested_qty, allocs, "manual"))
            else:
                allocs = await self.allocator.plan(
                    session, inventory_id=need.inventory_id, need=need.requested_qty, today=t
                )
                plans.append(LinePlan(need.inventory_id, need.requested_qty, allocs, "fefo"))
        return plans

    # ---------------------------------------------------------------
    # 对外：履约
    # ---------------------------------------------------------------
    async def _commit_plans(
        self,
        session: AsyncSession,
        *,
        order: Order,
        plans: Sequence[LinePlan],
        performed_by: Optional[str],
        notes: Optional[str],
    ) -> List[OrderFulfillment]:
        """阶段 2：一个保存点内提交整单；任一腿旧读 → 整单回滚并抛 StaleAllocation。"""
        created: List[OrderFulfillment] = []
        async with tx_atomic(session):
            for p in plans:
                legs = await self.consumer.commit_allocations(
                    session,
                    inventory_id=p.inventory_id,
                    allocations=p.allocations,
                    order_id=order.id,
                    performed_by=performed_by,
                )
                for leg in legs:
                    row = OrderFulfillment(
                        order_id=order.id,
                        inventory_id=p.inventory_id,
                        batch_id=leg.batch_id,
                        requested_qty=p.requested_qty,
                        fulfilled_qty=leg.qty,
                        notes=notes,
                        fulfilled_by=performed_by,
                    )
                    session.add(row)
                    created.append(row)

            order.fulfillment_status = FulfillmentStatus.COMPLETED.value
            if order.status == OrderStatus.PLACED.value:
                order.status = OrderStatus.READY.value
            await session.flush()
        return created

    async def fulfill_order(
        self,
        session: AsyncSession,
        *,
        order_id: int,
        selections: Optional[Mapping[int, Sequence[Allocation]]] = None,
        performed_by: Optional[str] = None,
        notes: Optional[str] = None,
        allow_expired: bool = False,
        today: Optional[date] = None,
    ) -> FulfillmentResult:
        """
        提交期冲突（计划后批次被他人扣走）：
          - 冲突落在 FEFO 行 → 整单回滚，重新计划全部行再试，最多 consumer.max_attempts 次
          - 冲突落在人工选批行 → 不重试，直接 InsufficientStockError
        """
        try:
            order = await self.orders.get_order(session, order_id)
            self._check_order_state(order)

            needs = await _load_order_needs(session, order_id=order.id)
            if not needs:
                raise ValidationError(f"order {order.id} has no items to fulfill", code="empty_order")

            attempts = self.consumer.max_attempts
            for attempt in range(1, attempts + 1):
                plans = await self.plan_order(
                    session, needs=needs, selections=selections, allow_expired=allow_expired, today=today
                )
                try:
                    created = await self._commit_plans(
                        session, order=order, plans=plans, performed_by=performed_by, notes=notes
                    )
                    break
                except StaleAllocation as e:
                    CONSUME_CONFLICTS.inc()
                    source = {p.inventory_id: p.source for p in plans}.get(e.inventory_id)
                    log.warning(
                        "fulfill order=%s stale %s line attempt=%s/%s: %s", order.id, source, attempt, attempts, e
                    )
                    if source != "fefo" or attempt == attempts:
                        raise stale_to_shortage(e) from None
        except BizError as e:
            FULFILLMENTS.labels(type(e).code).inc()
            log.warning("fulfill order=%s failed (%s): %s", order_id, e.code, e.message)
            raise

        for p in plans:
            STOCK_CONSUMED.labels("fefo" if p.source == "fefo" else "explicit").inc(p.requested_qty)
        FULFILLMENTS.labels("completed").inc()
        log.info(
            "order %s fulfilled: lines=%s rows=%s sources=%s",
            order.id,
            len(plans),
            len(created),
            {p.inventory_id: p.source for p in plans},
        )
        return FulfillmentResult(
            order_id=order.id,
            status=order.status,
            fulfillment_status=order.fulfillment_status,
            fulfillments=created,
        )

    @staticmethod
    def _check_order_state(order: Order) -> None:
        if order.fulfillment_status == FulfillmentStatus.COMPLETED.value:
            raise ConflictError(f"order {order.id} is already fully allocated", code="order_already_fulfilled")
        if order.status == OrderStatus.CANCELLED.value:
            raise ConflictError(f"order {order.id} is cancelled", code="order_cancelled")
        if order.status == OrderStatus.COMPLETE.value:
            raise ConflictError(f"order {order.id} is already complete", code="order_complete")
        if order.acceptance_status != AcceptanceStatus.ACCEPTED.value:
            raise ConflictError(
                f"order {order.id} has not been accepted by the patient ({order.acceptance_status})",
                code="order_not_accepted",
            )

    # ---------------------------------------------------------------
    # 对外：只读查询
    # ---------------------------------------------------------------
    async def preview_allocations(
        self, session: AsyncSession, *, order_id: int, today: Optional[date] = None
    ) -> List[LinePreview]:
        """给操作员看的 FEFO 建议（只读）；不足的行给出可用量，不抛错。"""
        order = await self.orders.get_order(session, order_id)
        t = today or date.today()

        previews: List[LinePreview] = []
        for need in await _load_order_needs(session, order_id=order.id):
            available = await self.allocator.available(session, inventory_id=need.inventory_id, today=t)
            try:
                allocs = await self.allocator.plan(
                    session, inventory_id=need.inventory_id, need=need.requested_qty, today=t
                )
            except InsufficientStockError:
                allocs = []
            previews.append(LinePreview(need.inventory_id, need.requested_qty, available, allocs))
        return previews

    async def get_fulfillments(self, session: AsyncSession, order_id: int) -> List[OrderFulfillment]:
        await self.orders.get_order(session, order_id)
        rows = await session.execute(
            select(OrderFulfillment)
            .where(OrderFulfillment.order_id == int(order_id))
            .order_by(OrderFulfillment.id.asc())
        )
        return list(rows.scalars().all())
