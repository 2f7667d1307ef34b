"""initial po engine schema

Revision ID: a1f3c2d4e5b6
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "a1f3c2d4e5b6"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PO_STATUS = postgresql.ENUM(
    "draft",
    "pending_approval",
    "approved",
    "sent_to_supplier",
    "partially_received",
    "fully_received",
    "cancelled",
    "closed",
    name="po_status",
    create_type=False,
)
ROLE = postgresql.ENUM("admin", "manager", "purchaser", "warehouse", "employee", "system", name="role", create_type=False)
RECEIPT_CONDITION = postgresql.ENUM("good", "damaged", "expired", name="receipt_condition", create_type=False)
MOVEMENT_TYPE = postgresql.ENUM("RECEIPT", "ADJUSTMENT", name="movement_type", create_type=False)


def _tz() -> sa.DateTime:
    return sa.DateTime(timezone=True)


def upgrade() -> None:
    # types partagés (po_status sert à deux tables) : créés une seule fois
    bind = op.get_bind()
    for enum in (PO_STATUS, ROLE, RECEIPT_CONDITION, MOVEMENT_TYPE):
        enum.create(bind, checkfirst=True)

    # ---------- MASTER DATA ----------
    op.create_table(
        "products",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("sku", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("uom", sa.String(32), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
    )
    op.create_table(
        "suppliers",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("lead_time_days", sa.Integer(), nullable=False),
        sa.CheckConstraint("lead_time_days >= 0", name="ck_supplier_lead_time_nonneg"),
    )
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("role", ROLE, nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("created_at", _tz(), nullable=False),
    )

    # ---------- PROCUREMENT ----------
    op.create_table(
        "purchase_orders",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("po_number", sa.String(64), nullable=False, unique=True),
        sa.Column("supplier_id", sa.BigInteger(), sa.ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("status", PO_STATUS, nullable=False),
        sa.Column("subtotal", sa.Numeric(14, 2), nullable=False),
        sa.Column("tax", sa.Numeric(14, 2), nullable=False),
        sa.Column("total", sa.Numeric(14, 2), nullable=False),
        sa.Column("expected_date", sa.Date()),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("created_at", _tz(), nullable=False),
        sa.Column("submitted_at", _tz()),
        sa.Column("approved_at", _tz()),
        sa.Column("approved_by", sa.String(64)),
        sa.Column("received_at", _tz()),
        sa.Column("closed_at", _tz()),
        sa.Column("approval_round", sa.Integer(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.CheckConstraint("tax >= 0", name="ck_po_tax_nonneg"),
    )
    op.create_index("ix_purchase_orders_status", "purchase_orders", ["status"])

    op.create_table(
        "purchase_order_lines",
        sa.Column("po_id", sa.BigInteger(), sa.ForeignKey("purchase_orders.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), primary_key=True),
        sa.Column("qty_ordered", sa.Integer(), nullable=False),
        sa.Column("unit_cost", sa.Numeric(14, 2), nullable=False),
        sa.Column("line_total", sa.Numeric(14, 2), nullable=False),
        sa.Column("qty_received", sa.Integer(), nullable=False),
        sa.Column("qty_damaged", sa.Integer(), nullable=False),
        sa.CheckConstraint("qty_ordered > 0", name="ck_po_line_qty_pos"),
        sa.CheckConstraint("unit_cost >= 0", name="ck_po_line_unit_cost_nonneg"),
        sa.CheckConstraint("qty_received >= 0 AND qty_received <= qty_ordered", name="ck_po_line_received_range"),
        sa.CheckConstraint("qty_damaged >= 0 AND qty_damaged <= qty_received", name="ck_po_line_damaged_range"),
    )

    op.create_table(
        "approval_decisions",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("po_id", sa.BigInteger(), sa.ForeignKey("purchase_orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("approval_round", sa.Integer(), nullable=False),
        sa.Column("approver_id", sa.String(64), nullable=False),
        sa.Column("approver_role", sa.String(32), nullable=False),
        sa.Column("threshold_id", sa.String(64), nullable=False),
        sa.Column("reason", sa.Text()),
        sa.Column("created_at", _tz(), nullable=False),
        sa.UniqueConstraint("po_id", "approval_round", "approver_id", name="uq_approval_vote_once"),
    )
    op.create_index("ix_approval_decisions_po_id", "approval_decisions", ["po_id"])

    op.create_table(
        "goods_receipts",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("po_id", sa.BigInteger(), sa.ForeignKey("purchase_orders.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("received_at", _tz(), nullable=False),
        sa.Column("received_by", sa.String(64), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("status_before", PO_STATUS, nullable=False),
        sa.Column("status_after", PO_STATUS, nullable=False),
        sa.Column("idempotency_key", sa.String(64), nullable=False, unique=True),
        sa.Column("stock_reference", sa.String(64), nullable=False, unique=True),
    )
    op.create_index("ix_goods_receipts_po_id", "goods_receipts", ["po_id"])

    op.create_table(
        "goods_receipt_lines",
        sa.Column("receipt_id", sa.BigInteger(), sa.ForeignKey("goods_receipts.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), primary_key=True),
        sa.Column("qty_ordered", sa.Integer(), nullable=False),
        sa.Column("qty_previously_received", sa.Integer(), nullable=False),
        sa.Column("qty_received", sa.Integer(), nullable=False),
        sa.Column("qty_total_received", sa.Integer(), nullable=False),
        sa.Column("condition", RECEIPT_CONDITION, nullable=False),
        sa.Column("lot_code", sa.String(64)),
        sa.Column("expiration_date", sa.Date()),
        sa.CheckConstraint("qty_received >= 0", name="ck_gr_line_qty_received_nonneg"),
        sa.CheckConstraint("qty_total_received <= qty_ordered", name="ck_gr_line_total_le_ordered"),
    )

    # ---------- INVENTORY ----------
    op.create_table(
        "stock_movements",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("movement_type", MOVEMENT_TYPE, nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("qty_before", sa.Integer(), nullable=False),
        sa.Column("qty_after", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(255)),
        sa.Column("reference_id", sa.String(255), nullable=False),
        sa.Column("happened_at", _tz(), nullable=False),
        sa.Column("created_by", sa.String(64)),
        sa.Column("idempotency_key", sa.String(64), nullable=False, unique=True),
        sa.CheckConstraint("quantity > 0", name="ck_stock_movement_qty_pos"),
    )
    op.create_index("ix_stock_movements_product_id", "stock_movements", ["product_id"])
    op.create_index("ix_stock_movements_product_time", "stock_movements", ["product_id", "happened_at"])

    op.create_table(
        "stock_levels",
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), primary_key=True),
        sa.Column("qty_on_hand", sa.Integer(), nullable=False),
        sa.Column("qty_on_order", sa.Integer(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("updated_at", _tz(), nullable=False),
        sa.CheckConstraint("qty_on_hand >= 0", name="ck_stock_on_hand_nonneg"),
        sa.CheckConstraint("qty_on_order >= 0", name="ck_stock_on_order_nonneg"),
    )

    # ---------- AUDIT ----------
    op.create_table(
        "audit_log",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("entity_type", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("actor_id", sa.String(64), nullable=False),
        sa.Column("actor_name", sa.String(200)),
        sa.Column("diff", sa.JSON()),
        sa.Column("reason", sa.Text()),
        sa.Column("meta", sa.JSON()),
        sa.Column("ip_address", sa.String(64)),
        sa.Column("user_agent", sa.String(255)),
        sa.Column("created_at", _tz(), nullable=False),
    )
    op.create_index("ix_audit_log_actor_id", "audit_log", ["actor_id"])
    op.create_index("ix_audit_entity", "audit_log", ["entity_type", "entity_id"])
    op.create_index("ix_audit_created_at", "audit_log", ["created_at"])

    # audit_log est append-only, même hors ORM (Postgres)
    op.execute(
        """
        CREATE OR REPLACE FUNCTION audit_log_append_only() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'audit_log is append-only';
        END $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_audit_log_append_only
        BEFORE UPDATE OR DELETE ON audit_log
        FOR EACH ROW EXECUTE FUNCTION audit_log_append_only();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_audit_log_append_only ON audit_log")
    op.execute("DROP FUNCTION IF EXISTS audit_log_append_only()")
    for table in (
        "audit_log",
        "stock_levels",
        "stock_movements",
        "goods_receipt_lines",
        "goods_receipts",
        "approval_decisions",
        "purchase_order_lines",
        "purchase_orders",
        "users",
        "suppliers",
        "products",
    ):
        op.drop_table(table)
    for enum in (MOVEMENT_TYPE, RECEIPT_CONDITION, ROLE, PO_STATUS):
        enum.drop(op.get_bind(), checkfirst=True)
