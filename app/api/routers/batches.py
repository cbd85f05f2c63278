# app/api/routers/batches.py
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.errors import NotFoundError
from app.core.config import get_settings
from app.core.tx import tx_commit
from app.db.session import get_session
from app.models.inventory_item import InventoryItem
from app.schemas.alerts import AvailableOut, ReconcileOut
from app.schemas.batch import (
    AllocationIn,
    BatchAdjustIn,
    BatchCreate,
    BatchOut,
    BatchStockIn,
    BatchSummaryOut,
    BatchUpdate,
    ConsumedLegOut,
    ConsumeIn,
    ConsumeOut,
    FefoPlanOut,
    MovementOut,
)
from app.services.batch_service import BatchService
from app.services.fefo_allocator import Allocation, FefoAllocator
from app.services.inventory_alerts_service import InventoryAlertsService
from app.services.ledger_writer import list_movements
from app.services.stock_consume_service import StockConsumeService

# 商品维度：/inventory/{inventory_id}/...
inventory_router = APIRouter(prefix="/inventory", tags=["batches"])
# 批次维度：/batches/{batch_id}/...
router = APIRouter(prefix="/batches", tags=["batches"])


def _out(b) -> BatchOut:
    return BatchOut.from_batch(b, expiring_days=get_settings().EXPIRING_SOON_DAYS)


async def _ensure_item(session: AsyncSession, inventory_id: int) -> InventoryItem:
    item = await session.get(InventoryItem, inventory_id)
    if item is None:
        raise NotFoundError(f"inventory item {inventory_id} not found")
    return item


# ==========================
# /inventory/{inventory_id}
# ==========================


@inventory_router.get("/{inventory_id}/batches", response_model=List[BatchOut])
async def list_batches(inventory_id: int, session: AsyncSession = Depends(get_session)):
    await _ensure_item(session, inventory_id)
    return [_out(b) for b in await BatchService().get_batches_by_inventory_id(session, inventory_id)]


@inventory_router.post("/{inventory_id}/batches", response_model=BatchOut, status_code=status.HTTP_201_CREATED)
async def create_batch(inventory_id: int, body: BatchCreate, session: AsyncSession = Depends(get_session)):
    async with tx_commit(session):
        b = await BatchService().add_batch(
            session,
            inventory_id=inventory_id,
            batch_code=body.batch_code,
            manufacturing_date=body.manufacturing_date,
            expiry_date=body.expiry_date,
            quantity=body.quantity,
            created_by=body.created_by,
        )
    return _out(b)


@inventory_router.get("/{inventory_id}/batches/summary", response_model=BatchSummaryOut)
async def batches_summary(inventory_id: int, session: AsyncSession = Depends(get_session)):
    await _ensure_item(session, inventory_id)
    totals = await BatchService().get_batches_with_total(session, inventory_id)
    return BatchSummaryOut(
        inventory_id=inventory_id,
        batches=[_out(b) for b in totals.batches],
        total_remaining=totals.total_remaining,
        total_available=totals.total_available,
    )


@inventory_router.get("/{inventory_id}/fefo-plan", response_model=FefoPlanOut)
async def fefo_plan(
    inventory_id: int,
    qty: int = Query(..., gt=0, description="需求数量"),
    session: AsyncSession = Depends(get_session),
):
    """只读：FEFO 建议分配；不足时返回 409 insufficient_stock。"""
    await _ensure_item(session, inventory_id)
    plan = await FefoAllocator().plan(session, inventory_id=inventory_id, need=qty)
    return FefoPlanOut(
        inventory_id=inventory_id,
        quantity=qty,
        allocations=[AllocationIn(batch_id=a.batch_id, qty=a.qty) for a in plan],
    )


@inventory_router.post("/{inventory_id}/consume", response_model=ConsumeOut)
async def consume(inventory_id: int, body: ConsumeIn, session: AsyncSession = Depends(get_session)):
    """
    扣减库存：
      - quantity    → FEFO 自动选批（提交期冲突自动重新计划）
      - allocations → 按指定批次扣减
    """
    await _ensure_item(session, inventory_id)
    svc = StockConsumeService()
    async with tx_commit(session):
        if body.allocations:
            legs = await svc.consume_allocations(
                session,
                inventory_id=inventory_id,
                allocations=[Allocation(batch_id=a.batch_id, qty=a.qty) for a in body.allocations],
                order_id=body.order_id,
                performed_by=body.performed_by,
            )
        else:
            legs = await svc.consume(
                session,
                inventory_id=inventory_id,
                quantity=int(body.quantity),
                order_id=body.order_id,
                performed_by=body.performed_by,
            )
    return ConsumeOut(
        inventory_id=inventory_id,
        consumed=sum(leg.qty for leg in legs),
        legs=[ConsumedLegOut(**leg.to_dict()) for leg in legs],
    )


@inventory_router.get("/{inventory_id}/available", response_model=AvailableOut)
async def available(inventory_id: int, session: AsyncSession = Depends(get_session)):
    qty = await InventoryAlertsService().available_stock(session, inventory_id)
    return AvailableOut(inventory_id=inventory_id, available_qty=qty)


@inventory_router.post("/{inventory_id}/reconcile", response_model=ReconcileOut)
async def reconcile(inventory_id: int, session: AsyncSession = Depends(get_session)):
    async with tx_commit(session):
        item = await InventoryAlertsService().reconcile_item_stock(session, inventory_id)
    return ReconcileOut(inventory_id=item.id, stock=item.stock)


# ==========================
# /batches/{batch_id}
# ==========================


@router.patch("/{batch_id}", response_model=BatchOut)
async def update_batch(batch_id: int, body: BatchUpdate, session: AsyncSession = Depends(get_session)):
    async with tx_commit(session):
        b = await BatchService().update_batch(
            session, batch_id=batch_id, changes=body.model_dump(exclude_unset=True)
        )
    return _out(b)


@router.delete("/{batch_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_batch(batch_id: int, session: AsyncSession = Depends(get_session)):
    async with tx_commit(session):
        await BatchService().delete_batch(session, batch_id=batch_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{batch_id}/stock", response_model=BatchOut)
async def add_stock(batch_id: int, body: BatchStockIn, session: AsyncSession = Depends(get_session)):
    async with tx_commit(session):
        b = await BatchService().add_stock_to_batch(
            session, batch_id=batch_id, quantity=body.quantity, performed_by=body.performed_by
        )
    return _out(b)


@router.post("/{batch_id}/adjust", response_model=BatchOut)
async def adjust(batch_id: int, body: BatchAdjustIn, session: AsyncSession = Depends(get_session)):
    async with tx_commit(session):
        b = await BatchService().adjust_batch(
            session,
            batch_id=batch_id,
            quantity_delta=body.quantity_delta,
            performed_by=body.performed_by,
            notes=body.notes,
        )
    return _out(b)


@router.get("/{batch_id}/movements", response_model=List[MovementOut])
async def movements(batch_id: int, session: AsyncSession = Depends(get_session)):
    await BatchService().get_batch(session, batch_id)
    return [MovementOut.model_validate(mv) for mv in await list_movements(session, batch_id)]
