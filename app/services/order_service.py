# app/services/order_service.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.errors import ConflictError, NotFoundError, ValidationError
from app.core.tx import tx_atomic
from app.models.enums import AcceptanceStatus, FulfillmentStatus, InitiatorType, OrderStatus
from app.models.inventory_item import InventoryItem
from app.models.order import Order
from app.models.order_item import OrderItem

log = logging.getLogger("pharmacy.orders")

# 允许的人工状态流转；ready 由履约编排器推进，这里也允许（无批次商品的手工出货）
_TRANSITIONS: Dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PLACED: {OrderStatus.READY, OrderStatus.CANCELLED},
    OrderStatus.READY: {OrderStatus.COMPLETE, OrderStatus.CANCELLED},
    OrderStatus.COMPLETE: set(),
    OrderStatus.CANCELLED: set(),
}


@dataclass(frozen=True)
class OrderLineIn:
    inventory_id: int
    quantity: int


class OrderService:
    """
    订单入口（最小事实）：
      - create_order：价格快照（price_at_time）+ total_price
      - get_order / get_order_items
      - update_status：placed → ready → complete；未完成前可 cancelled
      - accept_order / reject_order：药房代下单需患者确认后才可履约
    """

    async def create_order(
        self,
        session: AsyncSession,
        *,
        pharmacy_id: str,
        lines: Sequence[Union[OrderLineIn, dict]],
        patient_id: Optional[str] = None,
        initiator_type: Union[str, InitiatorType] = InitiatorType.PATIENT,
        acceptance_deadline: Optional[datetime] = None,
    ) -> Order:
        if not lines:
            raise ValidationError("order must contain at least one line", code="empty_order")

        norm: List[OrderLineIn] = []
        for ln in lines:
            ln = ln if isinstance(ln, OrderLineIn) else OrderLineIn(**ln)
            if isinstance(ln.quantity, bool) or not isinstance(ln.quantity, int) or ln.quantity <= 0:
                raise ValidationError(
                    f"quantity for inventory {ln.inventory_id} must be a positive integer", code="invalid_quantity"
                )
            norm.append(ln)

        ids = {ln.inventory_id for ln in norm}
        rows = await session.execute(select(InventoryItem).where(InventoryItem.id.in_(ids)))
        items = {it.id: it for it in rows.scalars().all()}
        for inv_id in ids:
            item = items.get(inv_id)
            if item is None:
                raise NotFoundError(f"inventory item {inv_id} not found")
            if item.pharmacy_id != pharmacy_id:
                raise ValidationError(
                    f"inventory item {inv_id} does not belong to pharmacy {pharmacy_id}", code="pharmacy_mismatch"
                )

        try:
            initiator = InitiatorType(initiator_type)
        except ValueError:
            raise ValidationError(f"unknown initiator_type {initiator_type!r}", code="invalid_initiator") from None
        acceptance = AcceptanceStatus.PENDING if initiator is InitiatorType.PHARMACY else AcceptanceStatus.ACCEPTED

        total = sum((Decimal(items[ln.inventory_id].price) * ln.quantity for ln in norm), Decimal("0"))

        async with tx_atomic(session):
            order = Order(
                patient_id=patient_id,
                pharmacy_id=pharmacy_id,
                total_price=total,
                status=OrderStatus.PLACED.value,
                initiator_type=initiator.value,
                acceptance_status=acceptance.value,
                acceptance_deadline=acceptance_deadline,
                fulfillment_status=FulfillmentStatus.PENDING.value,
            )
            session.add(order)
            await session.flush()

            for ln in norm:
                session.add(
                    OrderItem(
                        order_id=order.id,
                        inventory_id=ln.inventory_id,
                        quantity=ln.quantity,
                        price_at_time=Decimal(items[ln.inventory_id].price),
                    )
                )
            await session.flush()

        log.info("order created id=%s pharmacy=%s lines=%s total=%s", order.id, pharmacy_id, len(norm), total)
        return order

    async def get_order(self, session: AsyncSession, order_id: int) -> Order:
        row = (
            await session.execute(
                select(Order).where(Order.id == int(order_id)).execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if row is None:
            raise NotFoundError(f"order {order_id} not found")
        return row

    async def get_order_items(self, session: AsyncSession, order_id: int) -> List[OrderItem]:
        rows = await session.execute(
            select(OrderItem).where(OrderItem.order_id == int(order_id)).order_by(OrderItem.id.asc())
        )
        return list(rows.scalars().all())

    async def update_status(
        self, session: AsyncSession, *, order_id: int, status: Union[str, OrderStatus]
    ) -> Order:
        try:
            target = OrderStatus(status)
        except ValueError:
            raise ValidationError(f"unknown order status {status!r}", code="invalid_status") from None

        order = await self.get_order(session, order_id)
        current = OrderStatus(order.status)
        if target not in _TRANSITIONS[current]:
            raise ConflictError(
                f"order {order.id} cannot move from {current.value} to {target.value}",
                code="invalid_status_transition",
            )
        async with tx_atomic(session):
            order.status = target.value
            await session.flush()
        log.info("order %s status %s -> %s", order.id, current.value, target.value)
        return order

    # ------------------------------------------------------------------
    # 患者确认药房代下单：pending → accepted / rejected
    # ------------------------------------------------------------------

    async def _pending_acceptance(self, session: AsyncSession, order_id: int) -> Order:
        order = await self.get_order(session, order_id)
        if order.acceptance_status != AcceptanceStatus.PENDING.value:
            raise ConflictError(
                f"order {order.id} is not awaiting acceptance ({order.acceptance_status})",
                code="acceptance_not_pending",
            )
        if order.status != OrderStatus.PLACED.value:
            raise ConflictError(f"order {order.id} is {order.status}", code="invalid_status_transition")
        return order

    async def accept_order(
        self, session: AsyncSession, *, order_id: int, now: Optional[datetime] = None
    ) -> Order:
        """
        患者接受：acceptance_status pending → accepted，订单保持 placed，之后才可履约。
        超过 acceptance_deadline 的订单不可再接受（等待超时清理）。
        """
        order = await self._pending_acceptance(session, order_id)

        deadline = _as_utc(order.acceptance_deadline)
        now = _as_utc(now) or datetime.now(timezone.utc)
        if deadline is not None and deadline < now:
            raise ConflictError(
                f"order {order.id} acceptance deadline passed at {deadline.isoformat()}",
                code="acceptance_expired",
            )

        async with tx_atomic(session):
            order.acceptance_status = AcceptanceStatus.ACCEPTED.value
            await session.flush()
        log.info("order %s accepted by patient %s", order.id, order.patient_id)
        return order

    async def reject_order(self, session: AsyncSession, *, order_id: int) -> Order:
        """患者拒绝：acceptance_status → rejected，status → cancelled；不涉及库存。"""
        order = await self._pending_acceptance(session, order_id)
        async with tx_atomic(session):
            order.acceptance_status = AcceptanceStatus.REJECTED.value
            order.status = OrderStatus.CANCELLED.value
            await session.flush()
        log.info("order %s rejected by patient %s", order.id, order.patient_id)
        return order


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite 读回的时间不带时区，按 UTC 处理
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
