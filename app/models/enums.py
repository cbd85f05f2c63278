# app/models/enums.py
from __future__ import annotations

from enum import StrEnum


class MovementType(StrEnum):
    """
    批次台账 batch_movements.type：

    - ADDITION     入库（新建批次 / 同批次补货），delta > 0
    - CONSUMPTION  出库（订单履约 / FEFO 扣减），delta < 0
    - ADJUSTMENT   调整（盘点差异 / 破损报废 / 手工纠偏），delta 正负均可
    """

    ADDITION = "addition"
    CONSUMPTION = "consumption"
    ADJUSTMENT = "adjustment"


class OrderStatus(StrEnum):
    PLACED = "placed"
    READY = "ready"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


class FulfillmentStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class InitiatorType(StrEnum):
    PATIENT = "patient"
    PHARMACY = "pharmacy"


class AcceptanceStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class BatchStatus(StrEnum):
    """批次展示状态（优先级：depleted > expired > expiring > good）"""

    DEPLETED = "depleted"
    EXPIRED = "expired"
    EXPIRING = "expiring"
    GOOD = "good"


__all__ = [
    "MovementType",
    "OrderStatus",
    "FulfillmentStatus",
    "InitiatorType",
    "AcceptanceStatus",
    "BatchStatus",
]
