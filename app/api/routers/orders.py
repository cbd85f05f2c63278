# app/api/routers/orders.py
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.tx import tx_commit
from app.db.session import get_session
from app.models.order import Order
from app.schemas.batch import AllocationIn
from app.schemas.order import (
    FulfillIn,
    FulfillmentOut,
    FulfillResultOut,
    OrderCreate,
    OrderItemOut,
    OrderOut,
    OrderStatusIn,
    PreviewLineOut,
)
from app.services.fefo_allocator import Allocation
from app.services.order_fulfillment_service import OrderFulfillmentService
from app.services.order_service import OrderLineIn, OrderService

router = APIRouter(prefix="/orders", tags=["orders"])


async def _order_out(session: AsyncSession, order: Order) -> OrderOut:
    out = OrderOut.model_validate(order)
    out.items = [OrderItemOut.model_validate(it) for it in await OrderService().get_order_items(session, order.id)]
    return out


@router.post("", response_model=OrderOut, status_code=status.HTTP_201_CREATED)
async def create_order(body: OrderCreate, session: AsyncSession = Depends(get_session)):
    async with tx_commit(session):
        order = await OrderService().create_order(
            session,
            pharmacy_id=body.pharmacy_id,
            patient_id=body.patient_id,
            initiator_type=body.initiator_type,
            acceptance_deadline=body.acceptance_deadline,
            lines=[OrderLineIn(inventory_id=ln.inventory_id, quantity=ln.quantity) for ln in body.items],
        )
    return await _order_out(session, order)


@router.get("/{order_id}", response_model=OrderOut)
async def get_order(order_id: int, session: AsyncSession = Depends(get_session)):
    return await _order_out(session, await OrderService().get_order(session, order_id))


@router.post("/{order_id}/status", response_model=OrderOut)
async def update_order_status(order_id: int, body: OrderStatusIn, session: AsyncSession = Depends(get_session)):
    async with tx_commit(session):
        order = await OrderService().update_status(session, order_id=order_id, status=body.status)
    return await _order_out(session, order)


@router.post("/{order_id}/accept", response_model=OrderOut)
async def accept_order(order_id: int, session: AsyncSession = Depends(get_session)):
    """患者接受药房代下单；超过 acceptance_deadline 返回 409 acceptance_expired。"""
    async with tx_commit(session):
        order = await OrderService().accept_order(session, order_id=order_id)
    return await _order_out(session, order)


@router.post("/{order_id}/reject", response_model=OrderOut)
async def reject_order(order_id: int, session: AsyncSession = Depends(get_session)):
    async with tx_commit(session):
        order = await OrderService().reject_order(session, order_id=order_id)
    return await _order_out(session, order)


@router.get("/{order_id}/fulfillment-preview", response_model=List[PreviewLineOut])
async def fulfillment_preview(order_id: int, session: AsyncSession = Depends(get_session)):
    """只读：逐行 FEFO 建议；不足的行 allocations 为空并给出 available_qty / shortfall。"""
    lines = await OrderFulfillmentService().preview_allocations(session, order_id=order_id)
    return [
        PreviewLineOut(
            inventory_id=ln.inventory_id,
            requested_qty=ln.requested_qty,
            available_qty=ln.available_qty,
            shortfall=ln.shortfall,
            allocations=[AllocationIn(batch_id=a.batch_id, qty=a.qty) for a in ln.allocations],
        )
        for ln in lines
    ]


@router.post("/{order_id}/fulfill", response_model=FulfillResultOut)
async def fulfill_order(order_id: int, body: FulfillIn, session: AsyncSession = Depends(get_session)):
    """
    整单履约：全部商品行校验通过后一次性扣减；任一行失败整单不落库，订单保持 pending。
    """
    selections = None
    if body.selections:
        selections = {
            inv_id: [Allocation(batch_id=a.batch_id, qty=a.qty) for a in allocs]
            for inv_id, allocs in body.selections.items()
        }

    async with tx_commit(session):
        result = await OrderFulfillmentService().fulfill_order(
            session,
            order_id=order_id,
            selections=selections,
            performed_by=body.performed_by,
            notes=body.notes,
            allow_expired=body.allow_expired,
        )
    return FulfillResultOut(
        order_id=result.order_id,
        status=result.status,
        fulfillment_status=result.fulfillment_status,
        fulfillments=[FulfillmentOut.model_validate(f) for f in result.fulfillments],
    )


@router.get("/{order_id}/fulfillments", response_model=List[FulfillmentOut])
async def list_fulfillments(order_id: int, session: AsyncSession = Depends(get_session)):
    rows = await OrderFulfillmentService().get_fulfillments(session, order_id)
    return [FulfillmentOut.model_validate(r) for r in rows]
