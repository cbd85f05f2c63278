# app/models/batch_movement.py
from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.db.base import Base


class BatchMovement(Base):
    """
    批次台账（只增不改）

    - type：addition / consumption / adjustment（见 MovementType）
    - quantity_delta：带符号；从 0 开始累加即得 batches.remaining_qty
    - order_id：订单出库时关联订单；其余为空
    """

    __tablename__ = "batch_movements"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)

    batch_id: Mapped[int] = mapped_column(
        sa.Integer,
        sa.ForeignKey("batches.id", ondelete="RESTRICT"),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    quantity_delta: Mapped[int] = mapped_column(sa.Integer, nullable=False)

    order_id: Mapped[int | None] = mapped_column(
        sa.Integer,
        sa.ForeignKey("orders.id", ondelete="SET NULL"),
        nullable=True,
    )
    performed_by: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(sa.Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        sa.CheckConstraint("quantity_delta <> 0", name="ck_batch_movements_delta_nonzero"),
        sa.CheckConstraint(
            "type IN ('addition', 'consumption', 'adjustment')",
            name="ck_batch_movements_type",
        ),
        sa.Index("ix_batch_movements_batch_created", "batch_id", "created_at"),
        sa.Index("ix_batch_movements_order_id", "order_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<BatchMovement {self.type} batch={self.batch_id} delta={self.quantity_delta} "
            f"order={self.order_id} by={self.performed_by}>"
        )
