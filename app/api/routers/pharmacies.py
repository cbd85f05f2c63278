# app/api/routers/pharmacies.py
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.db.session import get_session
from app.schemas.alerts import AlertsSummaryOut, StockLevelOut
from app.schemas.batch import BatchOut
from app.services.batch_service import BatchService
from app.services.inventory_alerts_service import InventoryAlertsService

router = APIRouter(prefix="/pharmacies", tags=["pharmacies"])


def _outs(batches) -> List[BatchOut]:
    days = get_settings().EXPIRING_SOON_DAYS
    return [BatchOut.from_batch(b, expiring_days=days) for b in batches]


@router.get("/{pharmacy_id}/batches/expired", response_model=List[BatchOut])
async def expired_batches(pharmacy_id: str, session: AsyncSession = Depends(get_session)):
    return _outs(await BatchService().get_expired_batches(session, pharmacy_id))


@router.get("/{pharmacy_id}/batches/expiring", response_model=List[BatchOut])
async def expiring_batches(
    pharmacy_id: str,
    days: Optional[int] = Query(None, ge=1, description="默认 EXPIRING_SOON_DAYS"),
    session: AsyncSession = Depends(get_session),
):
    days_ahead = days or get_settings().EXPIRING_SOON_DAYS
    return _outs(await BatchService().get_expiring_batches(session, pharmacy_id, days_ahead=days_ahead))


@router.get("/{pharmacy_id}/alerts", response_model=AlertsSummaryOut)
async def alerts(pharmacy_id: str, session: AsyncSession = Depends(get_session)):
    s = await InventoryAlertsService().alerts_summary(session, pharmacy_id)
    return AlertsSummaryOut(
        pharmacy_id=s.pharmacy_id,
        low_stock=[StockLevelOut(**x.to_dict()) for x in s.low_stock],
        critical_stock=[StockLevelOut(**x.to_dict()) for x in s.critical_stock],
        out_of_stock=[StockLevelOut(**x.to_dict()) for x in s.out_of_stock],
        expiring=_outs(s.expiring),
        expired=_outs(s.expired),
        total=s.total,
    )
