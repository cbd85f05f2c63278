# app/models/order_item.py
from __future__ import annotations

from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class OrderItem(Base):
    """订单行；price_at_time 为下单时价格快照，之后不随 inventory.price 变化。"""

    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    inventory_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("inventory.id", ondelete="RESTRICT"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    price_at_time: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False)

    __table_args__ = (sa.CheckConstraint("quantity > 0", name="ck_order_items_qty_pos"),)

    def __repr__(self) -> str:
        return f"<OrderItem order={self.order_id} inv={self.inventory_id} qty={self.quantity}>"
