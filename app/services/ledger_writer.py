# app/services/ledger_writer.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.errors import NotFoundError, ValidationError
from app.models.batch import Batch
from app.models.batch_movement import BatchMovement
from app.models.enums import MovementType

log = logging.getLogger("pharmacy.ledger")


async def write_movement(
    session: AsyncSession,
    *,
    batch_id: int,
    movement_type: Union[str, MovementType],
    quantity_delta: int,
    order_id: Optional[int] = None,
    performed_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> BatchMovement:
    """
    台账写入（只增不改）：

    - addition     : delta 必须 > 0
    - consumption  : delta 必须 < 0
    - adjustment   : delta 非 0 即可

    本函数不改 batches.remaining_qty；余量更新与台账写入由调用方放在同一事务里。
    返回已 flush 的 BatchMovement（id 可用）。
    """
    mt = MovementType(movement_type)
    delta = int(quantity_delta)

    if delta == 0:
        raise ValidationError("quantity_delta must not be zero", code="invalid_movement")
    if mt is MovementType.ADDITION and delta < 0:
        raise ValidationError("addition movement requires a positive delta", code="invalid_movement")
    if mt is MovementType.CONSUMPTION and delta > 0:
        raise ValidationError("consumption movement requires a negative delta", code="invalid_movement")

    mv = BatchMovement(
        batch_id=int(batch_id),
        type=mt.value,
        quantity_delta=delta,
        order_id=order_id,
        performed_by=performed_by,
        notes=notes,
    )
    session.add(mv)
    await session.flush()

    log.debug("movement %s batch=%s delta=%s order=%s", mt.value, batch_id, delta, order_id)
    return mv


async def list_movements(session: AsyncSession, batch_id: int) -> List[BatchMovement]:
    """完整历史：created_at 升序，同一时刻按 id 升序。"""
    rows = await session.execute(
        select(BatchMovement)
        .where(BatchMovement.batch_id == int(batch_id))
        .order_by(BatchMovement.created_at.asc(), BatchMovement.id.asc())
    )
    return list(rows.scalars().all())


async def replay_remaining(session: AsyncSession, batch_id: int) -> int:
    """仅靠台账重建余量：从 0 开始累加 quantity_delta。"""
    total = await session.scalar(
        select(func.coalesce(func.sum(BatchMovement.quantity_delta), 0)).where(
            BatchMovement.batch_id == int(batch_id)
        )
    )
    return int(total or 0)


@dataclass(frozen=True)
class LedgerCheck:
    batch_id: int
    remaining_qty: int
    replayed_qty: int

    @property
    def ok(self) -> bool:
        return self.remaining_qty == self.replayed_qty

    @property
    def diff(self) -> int:
        return self.remaining_qty - self.replayed_qty


async def verify_batch_ledger(session: AsyncSession, batch_id: int) -> LedgerCheck:
    """对账：batches.remaining_qty vs 台账重放结果。"""
    remaining = await session.scalar(select(Batch.remaining_qty).where(Batch.id == int(batch_id)))
    if remaining is None:
        raise NotFoundError(f"batch {batch_id} not found")

    replayed = await replay_remaining(session, batch_id)
    check = LedgerCheck(batch_id=int(batch_id), remaining_qty=int(remaining), replayed_qty=replayed)
    if not check.ok:
        log.warning(
            "ledger mismatch batch=%s remaining=%s replayed=%s", batch_id, check.remaining_qty, replayed
        )
    return check
