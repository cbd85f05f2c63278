# app/models/inventory_item.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.db.base import Base


class InventoryItem(Base):
    """
    药房可售商品。

    stock 字段是反规范化的兜底值：
      - 无批次的商品：stock 即可用库存
      - 有批次的商品：可用库存 = 未过期批次 remaining_qty 之和；stock 仅在显式 reconcile 时回写
    """

    __tablename__ = "inventory"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    pharmacy_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)

    name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    brand_name: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    form: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)

    price: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False, default=Decimal("0"))
    stock: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (sa.CheckConstraint("stock >= 0", name="ck_inventory_stock_nonneg"),)

    def __repr__(self) -> str:
        return f"<InventoryItem id={self.id} pharmacy={self.pharmacy_id} name={self.name} stock={self.stock}>"
