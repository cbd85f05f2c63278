# app/models/batch.py
from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class Batch(Base):
    """
    批次（一个商品的一个有效期批）

    批次业务唯一维度：
        (inventory_id, batch_code)

    数量：
        - quantity       收货总量（只在“补货”时随 remaining_qty 同步增加）
        - remaining_qty  当前余量；由台账 batch_movements 物化而来
          （任一时刻 = 该批次所有 quantity_delta 之和）

    约束：
        - expiry_date > manufacturing_date
        - quantity > 0
        - 0 <= remaining_qty <= quantity
    """

    __tablename__ = "batches"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    inventory_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("inventory.id", ondelete="RESTRICT"),
        nullable=False,
    )
    pharmacy_id: Mapped[str] = mapped_column(String(64), nullable=False)

    batch_code: Mapped[str] = mapped_column(String(64), nullable=False)

    manufacturing_date: Mapped[date] = mapped_column(Date, nullable=False)
    expiry_date: Mapped[date] = mapped_column(Date, nullable=False)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    remaining_qty: Mapped[int] = mapped_column(Integer, nullable=False)

    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("inventory_id", "batch_code", name="uq_batches_inventory_code"),
        CheckConstraint("quantity > 0", name="ck_batches_quantity_pos"),
        CheckConstraint("remaining_qty >= 0", name="ck_batches_remaining_nonneg"),
        CheckConstraint("remaining_qty <= quantity", name="ck_batches_remaining_le_quantity"),
        CheckConstraint("expiry_date > manufacturing_date", name="ck_batches_expiry_after_mfg"),
        Index("ix_batches_inventory_expiry", "inventory_id", "expiry_date"),
        Index("ix_batches_pharmacy_expiry", "pharmacy_id", "expiry_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<Batch id={self.id} inv={self.inventory_id} code={self.batch_code} "
            f"qty={self.quantity} remaining={self.remaining_qty} "
            f"mfg={self.manufacturing_date} exp={self.expiry_date}>"
        )
