"""pharmacy batches init

Revision ID: 0001_pharmacy_batches_init
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_pharmacy_batches_init"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # 商品（stock 为反规范化兜底值；有批次的商品以批次为准）
    op.create_table(
        "inventory",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("pharmacy_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("brand_name", sa.String(length=255), nullable=True),
        sa.Column("form", sa.String(length=64), nullable=True),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("stock", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("stock >= 0", name="ck_inventory_stock_nonneg"),
    )
    op.create_index("ix_inventory_pharmacy_id", "inventory", ["pharmacy_id"])

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("patient_id", sa.String(length=64), nullable=True),
        sa.Column("pharmacy_id", sa.String(length=64), nullable=False),
        sa.Column("total_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("initiator_type", sa.String(length=16), nullable=False),
        sa.Column("acceptance_status", sa.String(length=16), nullable=False),
        sa.Column("acceptance_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fulfillment_status", sa.String(length=16), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("status IN ('placed', 'ready', 'complete', 'cancelled')", name="ck_orders_status"),
        sa.CheckConstraint(
            "fulfillment_status IN ('pending', 'in_progress', 'completed')",
            name="ck_orders_fulfillment_status",
        ),
    )
    op.create_index("ix_orders_pharmacy_id", "orders", ["pharmacy_id"])
    op.create_index(
        "ix_orders_acceptance", "orders", ["initiator_type", "acceptance_status", "acceptance_deadline"]
    )

    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "inventory_id", sa.Integer(), sa.ForeignKey("inventory.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("price_at_time", sa.Numeric(10, 2), nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_order_items_qty_pos"),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])

    # 批次：同商品批次码唯一；0 <= remaining_qty <= quantity
    op.create_table(
        "batches",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "inventory_id", sa.Integer(), sa.ForeignKey("inventory.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("pharmacy_id", sa.String(length=64), nullable=False),
        sa.Column("batch_code", sa.String(length=64), nullable=False),
        sa.Column("manufacturing_date", sa.Date(), nullable=False),
        sa.Column("expiry_date", sa.Date(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("remaining_qty", sa.Integer(), nullable=False),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("inventory_id", "batch_code", name="uq_batches_inventory_code"),
        sa.CheckConstraint("quantity > 0", name="ck_batches_quantity_pos"),
        sa.CheckConstraint("remaining_qty >= 0", name="ck_batches_remaining_nonneg"),
        sa.CheckConstraint("remaining_qty <= quantity", name="ck_batches_remaining_le_quantity"),
        sa.CheckConstraint("expiry_date > manufacturing_date", name="ck_batches_expiry_after_mfg"),
    )
    op.create_index("ix_batches_inventory_expiry", "batches", ["inventory_id", "expiry_date"])
    op.create_index("ix_batches_pharmacy_expiry", "batches", ["pharmacy_id", "expiry_date"])

    # 台账：只增不改
    op.create_table(
        "batch_movements",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("batch_id", sa.Integer(), sa.ForeignKey("batches.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("quantity_delta", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="SET NULL"), nullable=True),
        sa.Column("performed_by", sa.String(length=64), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("quantity_delta <> 0", name="ck_batch_movements_delta_nonzero"),
        sa.CheckConstraint(
            "type IN ('addition', 'consumption', 'adjustment')", name="ck_batch_movements_type"
        ),
    )
    op.create_index("ix_batch_movements_batch_created", "batch_movements", ["batch_id", "created_at"])
    op.create_index("ix_batch_movements_order_id", "batch_movements", ["order_id"])

    op.create_table(
        "order_fulfillments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "inventory_id", sa.Integer(), sa.ForeignKey("inventory.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("batch_id", sa.Integer(), sa.ForeignKey("batches.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("requested_qty", sa.Integer(), nullable=False),
        sa.Column("fulfilled_qty", sa.Integer(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("fulfilled_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("fulfilled_qty > 0", name="ck_order_fulfillments_qty_pos"),
    )
    op.create_index("ix_order_fulfillments_order_inv", "order_fulfillments", ["order_id", "inventory_id"])


def downgrade() -> None:
    op.drop_index("ix_order_fulfillments_order_inv", table_name="order_fulfillments")
    op.drop_table("order_fulfillments")

    op.drop_index("ix_batch_movements_order_id", table_name="batch_movements")
    op.drop_index("ix_batch_movements_batch_created", table_name="batch_movements")
    op.drop_table("batch_movements")

    op.drop_index("ix_batches_pharmacy_expiry", table_name="batches")
    op.drop_index("ix_batches_inventory_expiry", table_name="batches")
    op.drop_table("batches")

    op.drop_index("ix_order_items_order_id", table_name="order_items")
    op.drop_table("order_items")

    op.drop_index("ix_orders_acceptance", table_name="orders")
    op.drop_index("ix_orders_pharmacy_id", table_name="orders")
    op.drop_table("orders")

    op.drop_index("ix_inventory_pharmacy_id", table_name="inventory")
    op.drop_table("inventory")
