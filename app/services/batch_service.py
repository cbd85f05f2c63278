# app/services/batch_service.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, List, Mapping, Optional

from sqlalchemy import Select, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from app.api.problem import shortage_detail
from app.core.tx import tx_atomic
from app.models.batch import Batch
from app.models.batch_movement import BatchMovement
from app.models.enums import MovementType
from app.models.inventory_item import InventoryItem
from app.services.ledger_writer import write_movement
from app.services.utils.expiry_rules import DateLike, as_date, is_expired

log = logging.getLogger("pharmacy.batches")

MIN_BATCH_CODE_LEN = 3
EDITABLE_FIELDS = frozenset({"batch_code", "manufacturing_date", "expiry_date"})
LEDGER_ONLY_FIELDS = frozenset({"quantity", "remaining_qty"})


@dataclass
class BatchTotals:
    batches: List[Batch] = field(default_factory=list)
    total_remaining: int = 0
    total_available: int = 0  # 仅未过期批次


# ----------------------------------------------------------------------
# 余量原子增减（条件更新；不写台账）
# ----------------------------------------------------------------------


async def decrement_remaining(session: AsyncSession, *, batch_id: int, qty: int) -> bool:
    """
    条件扣减：
        UPDATE batches SET remaining_qty = remaining_qty - :q
         WHERE id = :id AND remaining_qty >= :q

    返回是否命中。未命中 = 余量在读与写之间已被他人扣走（或批次不存在），由调用方决定报错 / 重试。
    PG READ COMMITTED 下并发 UPDATE 会等行锁并重新求值 WHERE，因此两笔扣减不可能同时越过 0。
    """
    res = await session.execute(
        update(Batch)
        .where(Batch.id == int(batch_id), Batch.remaining_qty >= int(qty))
        .values(remaining_qty=Batch.remaining_qty - int(qty))
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def _increment_remaining_within_quantity(session: AsyncSession, *, batch_id: int, qty: int) -> bool:
    res = await session.execute(
        update(Batch)
        .where(Batch.id == int(batch_id), Batch.remaining_qty + int(qty) <= Batch.quantity)
        .values(remaining_qty=Batch.remaining_qty + int(qty))
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def _fresh(stmt: Select) -> Select:
    # 余量由条件 UPDATE 直接改库；读批次时总是用库里的值覆盖 identity map
    return stmt.execution_options(populate_existing=True)


class BatchService:
    """
    批次服务（异步 Session）

    提供：
      - add_batch(...)             ：新建批次 + addition 台账
      - add_stock_to_batch(...)    ：同批次补货（quantity / remaining_qty 同增）+ addition 台账
      - update_batch(...)          ：批次元数据纠错（不走台账；禁止直接改数量）
      - adjust_batch(...)          ：余量调整 + adjustment 台账
      - delete_batch(...)          ：仅允许删除未动用过的批次
      - get_* 查询                 ：按商品 / 过期 / 临期

    说明：
      - 每个写操作自带保存点：要么批次与台账一起落地，要么都不落地
      - 提交由外层（路由 / 编排器调用方）负责
    """

    # ------------------------------------------------------------------
    # 校验
    # ------------------------------------------------------------------

    @staticmethod
    def _clean_code(batch_code: Any) -> str:
        code = str(batch_code or "").strip()
        if len(code) < MIN_BATCH_CODE_LEN:
            raise ValidationError(
                f"batch_code must be at least {MIN_BATCH_CODE_LEN} characters",
                code="batch_code_too_short",
            )
        return code

    @staticmethod
    def _positive_qty(quantity: Any, *, name: str = "quantity") -> int:
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValidationError(f"{name} must be a positive integer", code="invalid_quantity")
        if quantity <= 0:
            raise ValidationError(f"{name} must be a positive integer", code="invalid_quantity")
        return quantity

    @staticmethod
    def _parse_date(value: DateLike, *, name: str) -> date:
        try:
            return as_date(value, field=name)
        except ValueError as e:
            raise ValidationError(str(e), code="invalid_date") from None

    @staticmethod
    def _check_date_order(mfg: date, exp: date) -> None:
        if exp <= mfg:
            raise ValidationError(
                f"expiry_date ({exp}) must be after manufacturing_date ({mfg})",
                code="invalid_date_range",
            )

    async def _ensure_code_free(
        self, session: AsyncSession, *, inventory_id: int, code: str, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(Batch.id).where(Batch.inventory_id == inventory_id, Batch.batch_code == code)
        if exclude_id is not None:
            stmt = stmt.where(Batch.id != exclude_id)
        if (await session.execute(stmt.limit(1))).scalar_one_or_none() is not None:
            raise ConflictError(
                f"batch_code {code!r} already exists for inventory {inventory_id}",
                code="batch_code_exists",
            )

    # ------------------------------------------------------------------
    # 写：新建 / 补货 / 纠错 / 调整 / 删除
    # ------------------------------------------------------------------

    async def add_batch(
        self,
        session: AsyncSession,
        *,
        inventory_id: int,
        batch_code: str,
        manufacturing_date: DateLike,
        expiry_date: DateLike,
        quantity: int,
        created_by: Optional[str] = None,
        today: Optional[date] = None,
    ) -> Batch:
        """
        新建批次：remaining_qty = quantity，并写一条 addition(+quantity) 台账。
        """
        code = self._clean_code(batch_code)
        qty = self._positive_qty(quantity)
        mfg = self._parse_date(manufacturing_date, name="manufacturing_date")
        exp = self._parse_date(expiry_date, name="expiry_date")
        self._check_date_order(mfg, exp)
        if is_expired(exp, today):
            raise ValidationError(f"expiry_date ({exp}) is already in the past", code="batch_expired")

        item = await session.get(InventoryItem, int(inventory_id))
        if item is None:
            raise NotFoundError(f"inventory item {inventory_id} not found")

        await self._ensure_code_free(session, inventory_id=item.id, code=code)

        try:
            async with tx_atomic(session):
                batch = Batch(
                    inventory_id=item.id,
                    pharmacy_id=item.pharmacy_id,
                    batch_code=code,
                    manufacturing_date=mfg,
                    expiry_date=exp,
                    quantity=qty,
                    remaining_qty=qty,
                    created_by=created_by,
                )
                session.add(batch)
                await session.flush()

                await write_movement(
                    session,
                    batch_id=batch.id,
                    movement_type=MovementType.ADDITION,
                    quantity_delta=qty,
                    performed_by=created_by,
                )
        except IntegrityError:
            # 并发下同码批次可能已被其他事务创建
            raise ConflictError(
                f"batch_code {code!r} already exists for inventory {inventory_id}",
                code="batch_code_exists",
            ) from None

        log.info("batch created id=%s inv=%s code=%s qty=%s exp=%s", batch.id, item.id, code, qty, exp)
        return batch

    async def add_stock_to_batch(
        self,
        session: AsyncSession,
        *,
        batch_id: int,
        quantity: int,
        performed_by: Optional[str] = None,
    ) -> Batch:
        """同批次补货：quantity 与 remaining_qty 同增，并写 addition 台账。"""
        qty = self._positive_qty(quantity)
        batch = await self.get_batch(session, batch_id)

        async with tx_atomic(session):
            await session.execute(
                update(Batch)
                .where(Batch.id == batch.id)
                .values(quantity=Batch.quantity + qty, remaining_qty=Batch.remaining_qty + qty)
                .execution_options(synchronize_session=False)
            )
            await write_movement(
                session,
                batch_id=batch.id,
                movement_type=MovementType.ADDITION,
                quantity_delta=qty,
                performed_by=performed_by,
            )

        await session.refresh(batch)
        log.info("batch restocked id=%s +%s -> remaining=%s", batch.id, qty, batch.remaining_qty)
        return batch

    async def update_batch(
        self,
        session: AsyncSession,
        *,
        batch_id: int,
        changes: Mapping[str, Any],
    ) -> Batch:
        """
        批次元数据纠错（batch_code / manufacturing_date / expiry_date），不写台账。

        quantity / remaining_qty 不允许在这里改：
          - 收货量变化 → add_stock_to_batch
          - 余量纠偏   → adjust_batch（adjustment 台账）
        """
        keys = set(changes)
        if keys & LEDGER_ONLY_FIELDS:
            raise ValidationError(
                "quantity cannot be edited directly; use add-stock or an adjustment",
                code="quantity_edit_forbidden",
                next_actions=[
                    {"action": "add_stock", "label": "Add stock to batch"},
                    {"action": "adjust", "label": "Record an adjustment"},
                ],
            )
        unknown = keys - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"unsupported fields: {sorted(unknown)}", code="invalid_fields")

        batch = await self.get_batch(session, batch_id)

        code = batch.batch_code
        if "batch_code" in changes:
            code = self._clean_code(changes["batch_code"])
            if code != batch.batch_code:
                await self._ensure_code_free(
                    session, inventory_id=batch.inventory_id, code=code, exclude_id=batch.id
                )
        mfg = batch.manufacturing_date
        if changes.get("manufacturing_date") is not None:
            mfg = self._parse_date(changes["manufacturing_date"], name="manufacturing_date")
        exp = batch.expiry_date
        if changes.get("expiry_date") is not None:
            exp = self._parse_date(changes["expiry_date"], name="expiry_date")
        self._check_date_order(mfg, exp)

        async with tx_atomic(session):
            batch.batch_code = code
            batch.manufacturing_date = mfg
            batch.expiry_date = exp
            await session.flush()

        log.info("batch corrected id=%s code=%s mfg=%s exp=%s", batch.id, code, mfg, exp)
        return batch

    async def adjust_batch(
        self,
        session: AsyncSession,
        *,
        batch_id: int,
        quantity_delta: int,
        performed_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Batch:
        """
        余量调整（盘点差异 / 破损报废）：只动 remaining_qty，结果必须落在 [0, quantity]。
        """
        if isinstance(quantity_delta, bool) or not isinstance(quantity_delta, int) or quantity_delta == 0:
            raise ValidationError("quantity_delta must be a non-zero integer", code="invalid_quantity")

        batch = await self.get_batch(session, batch_id)

        async with tx_atomic(session):
            if quantity_delta < 0:
                ok = await decrement_remaining(session, batch_id=batch.id, qty=-quantity_delta)
                if not ok:
                    raise InsufficientStockError(
                        f"adjustment of {quantity_delta} exceeds remaining stock of batch {batch.id}",
                        details=[
                            shortage_detail(
                                inventory_id=batch.inventory_id,
                                batch_id=batch.id,
                                required_qty=-quantity_delta,
                                available_qty=batch.remaining_qty,
                                path="batch.adjust",
                            )
                        ],
                    )
            else:
                ok = await _increment_remaining_within_quantity(session, batch_id=batch.id, qty=quantity_delta)
                if not ok:
                    raise ValidationError(
                        f"adjustment of +{quantity_delta} would exceed the received quantity; use add-stock",
                        code="adjustment_exceeds_quantity",
                    )

            await write_movement(
                session,
                batch_id=batch.id,
                movement_type=MovementType.ADJUSTMENT,
                quantity_delta=quantity_delta,
                performed_by=performed_by,
                notes=notes,
            )

        await session.refresh(batch)
        log.info("batch adjusted id=%s delta=%s -> remaining=%s", batch.id, quantity_delta, batch.remaining_qty)
        return batch

    async def delete_batch(self, session: AsyncSession, *, batch_id: int) -> None:
        """
        删除策略：
          - 已被动用（remaining_qty < quantity，或存在非 addition 台账）→ ConflictError
          - 从未动用的批次：连同其 addition 台账一起删除
        """
        batch = await self.get_batch(session, batch_id)

        if batch.remaining_qty < batch.quantity:
            raise ConflictError(
                f"batch {batch.id} has been partially consumed and cannot be deleted",
                code="batch_in_use",
            )

        used = await session.scalar(
            select(func.count())
            .select_from(BatchMovement)
            .where(BatchMovement.batch_id == batch.id, BatchMovement.type != MovementType.ADDITION.value)
        )
        if used:
            raise ConflictError(
                f"batch {batch.id} has stock movement history and cannot be deleted",
                code="batch_in_use",
            )

        async with tx_atomic(session):
            additions = await session.execute(select(BatchMovement).where(BatchMovement.batch_id == batch.id))
            for mv in additions.scalars().all():
                await session.delete(mv)
            await session.flush()
            await session.delete(batch)
            await session.flush()

        log.info("batch deleted id=%s inv=%s code=%s", batch.id, batch.inventory_id, batch.batch_code)

    # ------------------------------------------------------------------
    # 读
    # ------------------------------------------------------------------

    async def get_batch(self, session: AsyncSession, batch_id: int) -> Batch:
        row = (await session.execute(_fresh(select(Batch).where(Batch.id == int(batch_id))))).scalar_one_or_none()
        if row is None:
            raise NotFoundError(f"batch {batch_id} not found")
        return row

    async def get_batches_by_inventory_id(self, session: AsyncSession, inventory_id: int) -> List[Batch]:
        """全部批次（含过期 / 用尽），按 id 升序；FEFO 排序由调用方负责。"""
        rows = await session.execute(
            _fresh(select(Batch).where(Batch.inventory_id == int(inventory_id)).order_by(Batch.id.asc()))
        )
        return list(rows.scalars().all())

    async def get_batches_with_total(
        self, session: AsyncSession, inventory_id: int, *, today: Optional[date] = None
    ) -> BatchTotals:
        batches = await self.get_batches_by_inventory_id(session, inventory_id)
        return BatchTotals(
            batches=batches,
            total_remaining=sum(b.remaining_qty for b in batches),
            total_available=sum(b.remaining_qty for b in batches if not is_expired(b.expiry_date, today)),
        )

    async def get_expired_batches(
        self, session: AsyncSession, pharmacy_id: str, *, today: Optional[date] = None
    ) -> List[Batch]:
        """已过期但仍有余量的批次（报损 / 告警用）。"""
        t = today or date.today()
        rows = await session.execute(
            _fresh(
                select(Batch)
                .where(
                    Batch.pharmacy_id == pharmacy_id,
                    Batch.expiry_date < t,
                    Batch.remaining_qty > 0,
                )
                .order_by(Batch.expiry_date.asc(), Batch.id.asc())
            )
        )
        return list(rows.scalars().all())

    async def get_expiring_batches(
        self,
        session: AsyncSession,
        pharmacy_id: str,
        *,
        days_ahead: int = 30,
        today: Optional[date] = None,
    ) -> List[Batch]:
        """未过期、有余量、且在 days_ahead 天内到期的批次，按到期日升序。"""
        t = today or date.today()
        rows = await session.execute(
            _fresh(
                select(Batch)
                .where(
                    Batch.pharmacy_id == pharmacy_id,
                    Batch.expiry_date >= t,
                    Batch.expiry_date <= t + timedelta(days=int(days_ahead)),
                    Batch.remaining_qty > 0,
                )
                .order_by(Batch.expiry_date.asc(), Batch.id.asc())
            )
        )
        return list(rows.scalars().all())
