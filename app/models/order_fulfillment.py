# app/models/order_fulfillment.py
from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.db.base import Base


class OrderFulfillment(Base):
    """
    履约记录：一条订单行 × 一个批次 = 一行

    - requested_qty：整行需求量（同一行拆到多个批次时每行重复记录）
    - fulfilled_qty：本批次实际出库量
    """

    __tablename__ = "order_fulfillments"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)

    order_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    inventory_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("inventory.id", ondelete="RESTRICT"), nullable=False
    )
    batch_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("batches.id", ondelete="RESTRICT"), nullable=False
    )

    requested_qty: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    fulfilled_qty: Mapped[int] = mapped_column(sa.Integer, nullable=False)

    notes: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    fulfilled_by: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        sa.CheckConstraint("fulfilled_qty > 0", name="ck_order_fulfillments_qty_pos"),
        sa.Index("ix_order_fulfillments_order_inv", "order_id", "inventory_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<OrderFulfillment order={self.order_id} inv={self.inventory_id} "
            f"batch={self.batch_id} {self.fulfilled_qty}/{self.requested_qty}>"
        )
