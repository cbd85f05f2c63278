# app/schemas/batch.py
from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.services.utils.expiry_rules import batch_status


# ========= 通用基类 =========
class _Base(BaseModel):
    """
    - from_attributes: 允许 ORM 对象直接序列化
    - extra="ignore": 忽略冗余字段（对旧客户端更宽容）
    - populate_by_name: 支持别名/字段名互填
    """
    model_config = ConfigDict(
        from_attributes=True,
        extra="ignore",
        populate_by_name=True,
    )


PositiveQty = Annotated[int, Field(gt=0)]


# ========= 创建 / 纠错 =========
class BatchCreate(_Base):
    """
    新建批次（收货）

    格式与业务规则（批次码长度、到期 > 生产、未过期、同商品批次码唯一）由服务层统一校验，
    错误走统一的 problem 结构。
    """
    batch_code: str = Field(..., max_length=64, description="批次编码（同商品内唯一）")
    manufacturing_date: date
    expiry_date: date
    quantity: PositiveQty
    created_by: Optional[str] = Field(default=None, max_length=64)

    model_config = _Base.model_config | {
        "json_schema_extra": {
            "example": {
                "batch_code": "AMX-2501",
                "manufacturing_date": "2025-01-10",
                "expiry_date": "2027-01-10",
                "quantity": 100,
            }
        }
    }


class BatchUpdate(_Base):
    """
    批次元数据纠错：字段均为可选。

    quantity / remaining_qty 会被接收但由服务层拒绝（数量只能经台账变化）。
    """
    batch_code: Optional[str] = Field(default=None, max_length=64)
    manufacturing_date: Optional[date] = None
    expiry_date: Optional[date] = None
    quantity: Optional[int] = None
    remaining_qty: Optional[int] = None


class BatchStockIn(_Base):
    quantity: PositiveQty
    performed_by: Optional[str] = Field(default=None, max_length=64)


class BatchAdjustIn(_Base):
    """余量调整：负数 = 报损 / 盘亏；正数 = 盘盈（不超过收货量）。"""
    quantity_delta: int
    performed_by: Optional[str] = Field(default=None, max_length=64)
    notes: Optional[str] = None


# ========= 输出 =========
class BatchOut(_Base):
    id: int
    inventory_id: int
    pharmacy_id: str
    batch_code: str
    manufacturing_date: date
    expiry_date: date
    quantity: int
    remaining_qty: int
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    status: Optional[str] = Field(default=None, description="depleted / expired / expiring / good")

    @classmethod
    def from_batch(cls, b, *, today: Optional[date] = None, expiring_days: int = 30) -> "BatchOut":
        out = cls.model_validate(b)
        out.status = batch_status(
            remaining_qty=b.remaining_qty,
            expiry_date=b.expiry_date,
            today=today,
            expiring_days=expiring_days,
        ).value
        return out


class BatchSummaryOut(_Base):
    inventory_id: int
    batches: List[BatchOut]
    total_remaining: int
    total_available: int = Field(..., description="仅未过期批次")


class MovementOut(_Base):
    id: int
    batch_id: int
    type: str
    quantity_delta: int
    order_id: Optional[int] = None
    performed_by: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


# ========= 分配 / 扣减 =========
class AllocationIn(_Base):
    batch_id: int
    qty: PositiveQty


class FefoPlanOut(_Base):
    inventory_id: int
    quantity: int
    allocations: List[AllocationIn]


class ConsumeIn(_Base):
    """
    扣减请求：二选一
      - quantity    ：按 FEFO 自动选批
      - allocations ：显式 {batch_id, qty}
    """
    quantity: Optional[PositiveQty] = None
    allocations: Optional[List[AllocationIn]] = None
    order_id: Optional[int] = None
    performed_by: Optional[str] = Field(default=None, max_length=64)

    @model_validator(mode="after")
    def _one_mode(self):
        if (self.quantity is None) == (not self.allocations):
            raise ValueError("provide either quantity or allocations")
        return self


class ConsumedLegOut(_Base):
    batch_id: int
    qty: int
    movement_id: int


class ConsumeOut(_Base):
    inventory_id: int
    consumed: int
    legs: List[ConsumedLegOut]
