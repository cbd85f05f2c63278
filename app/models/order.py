# app/models/order.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.db.base import Base


class Order(Base):
    """
    订单头

    - status：placed → ready → complete；未完成前可 cancelled
    - acceptance_*：药房代下单（initiator_type=pharmacy）需患者在 deadline 前接受
    - fulfillment_status：pending → (in_progress) → completed，仅由履约编排器推进
    """

    __tablename__ = "orders"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)

    patient_id: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)  # 到店散客为空
    pharmacy_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)

    total_price: Mapped[Decimal] = mapped_column(sa.Numeric(12, 2), nullable=False, default=Decimal("0"))
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, default="placed")

    initiator_type: Mapped[str] = mapped_column(sa.String(16), nullable=False, default="patient")
    acceptance_status: Mapped[str] = mapped_column(sa.String(16), nullable=False, default="accepted")
    acceptance_deadline: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    fulfillment_status: Mapped[str] = mapped_column(sa.String(16), nullable=False, default="pending")

    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        sa.CheckConstraint(
            "status IN ('placed', 'ready', 'complete', 'cancelled')", name="ck_orders_status"
        ),
        sa.CheckConstraint(
            "fulfillment_status IN ('pending', 'in_progress', 'completed')",
            name="ck_orders_fulfillment_status",
        ),
        sa.Index("ix_orders_acceptance", "initiator_type", "acceptance_status", "acceptance_deadline"),
    )

    def __repr__(self) -> str:
        return (
            f"<Order id={self.id} pharmacy={self.pharmacy_id} status={self.status} "
            f"fulfillment={self.fulfillment_status}>"
        )
