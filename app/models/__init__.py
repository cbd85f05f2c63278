# app/models/__init__.py
"""
统一导出 ORM 模型。
"""

from app.models.batch import Batch
from app.models.batch_movement import BatchMovement
from app.models.inventory_item import InventoryItem
from app.models.order import Order
from app.models.order_fulfillment import OrderFulfillment
from app.models.order_item import OrderItem

__all__ = [
    # -------- 商品 / 批次 / 台账 --------
    "InventoryItem",
    "Batch",
    "BatchMovement",
    # -------- 订单 & 履约 --------
    "Order",
    "OrderItem",
    "OrderFulfillment",
]
