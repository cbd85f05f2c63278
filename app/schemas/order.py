# app/schemas/order.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.batch import AllocationIn, PositiveQty


class _Base(BaseModel):
    model_config = ConfigDict(
        from_attributes=True,
        extra="ignore",
        populate_by_name=True,
    )


# ========= 下单 =========
class OrderLineIn(_Base):
    inventory_id: int
    quantity: PositiveQty


class OrderCreate(_Base):
    """
    下单：
      - patient 发起：直接 accepted
      - pharmacy 代下单：acceptance_status=pending，需患者在 acceptance_deadline 前接受
    """
    pharmacy_id: str = Field(..., max_length=64)
    patient_id: Optional[str] = Field(default=None, max_length=64)
    initiator_type: Literal["patient", "pharmacy"] = "patient"
    acceptance_deadline: Optional[datetime] = None
    items: List[OrderLineIn] = Field(..., min_length=1)


class OrderStatusIn(_Base):
    status: Literal["placed", "ready", "complete", "cancelled"]


class OrderItemOut(_Base):
    id: int
    inventory_id: int
    quantity: int
    price_at_time: Decimal


class OrderOut(_Base):
    id: int
    pharmacy_id: str
    patient_id: Optional[str] = None
    total_price: Decimal
    status: str
    initiator_type: str
    acceptance_status: str
    acceptance_deadline: Optional[datetime] = None
    fulfillment_status: str
    created_at: Optional[datetime] = None
    items: List[OrderItemOut] = Field(default_factory=list)


# ========= 履约 =========
class FulfillIn(_Base):
    """
    selections：{inventory_id: [{batch_id, qty}, ...]}，未出现的商品行走 FEFO。
    每个商品的 qty 合计必须等于该商品在订单中的数量。
    """
    selections: Optional[Dict[int, List[AllocationIn]]] = None
    performed_by: Optional[str] = Field(default=None, max_length=64)
    notes: Optional[str] = None
    allow_expired: bool = False


class FulfillmentOut(_Base):
    id: int
    order_id: int
    inventory_id: int
    batch_id: int
    requested_qty: int
    fulfilled_qty: int
    notes: Optional[str] = None
    fulfilled_by: Optional[str] = None
    created_at: Optional[datetime] = None


class FulfillResultOut(_Base):
    order_id: int
    status: str
    fulfillment_status: str
    fulfillments: List[FulfillmentOut]


class PreviewLineOut(_Base):
    inventory_id: int
    requested_qty: int
    available_qty: int
    shortfall: int
    allocations: List[AllocationIn]
