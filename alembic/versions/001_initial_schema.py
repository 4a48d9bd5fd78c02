"""Initial schema: orders, items, transactions, status history, escrow releases.

Revision ID: 001_initial
Revises: None
Create Date: 2024-01-01 00:00:00.000000
"""
from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_APPEND_ONLY_TABLES = ("order_item_status_history", "escrow_releases")


def upgrade() -> None:
    # Orders
    op.create_table(
        "orders",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("order_code", sa.BigInteger, nullable=False, unique=True),
        sa.Column("buyer_id", sa.String(64), nullable=False),
        sa.Column("shipping_address_id", sa.String(64), nullable=False),
        sa.Column("total_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("payment_method", sa.String(32), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("payment_intent_ref", sa.String(128), nullable=True),
        sa.Column("refunded_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("status_forced", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("shipped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_orders_buyer_id", "orders", ["buyer_id"])
    op.create_index("ix_orders_status_created", "orders", ["status", "created_at"])

    # Order items
    op.create_table(
        "order_items",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("order_id", sa.String(36), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("product_id", sa.String(64), nullable=False),
        sa.Column("seller_id", sa.String(64), nullable=False),
        sa.Column("price", sa.Numeric(18, 2), nullable=False),
        sa.Column("platform_fee", sa.Numeric(18, 2), nullable=False),
        sa.Column("seller_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("fee_percentage", sa.Numeric(7, 4), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("escrow_status", sa.String(32), nullable=True),
        sa.Column("refunded_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("review_eligible", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("notes", sa.Text, nullable=False, server_default=""),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("price = platform_fee + seller_amount", name="ck_order_items_fee_split"),
        sa.CheckConstraint(
            "refunded_amount >= 0 AND refunded_amount <= price", name="ck_order_items_refunded"
        ),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])
    op.create_index("ix_order_items_product_id", "order_items", ["product_id"])
    op.create_index("ix_order_items_seller_id", "order_items", ["seller_id"])
    op.create_index("ix_order_items_escrow_status", "order_items", ["escrow_status"])

    # Transactions (one per item)
    op.create_table(
        "transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("order_id", sa.String(36), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("order_item_id", sa.String(36), sa.ForeignKey("order_items.id"), nullable=False, unique=True),
        sa.Column("buyer_id", sa.String(64), nullable=False),
        sa.Column("seller_id", sa.String(64), nullable=False),
        sa.Column("seller_payout_ref", sa.String(128), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("platform_fee", sa.Numeric(18, 2), nullable=False),
        sa.Column("seller_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("payment_intent_ref", sa.String(128), nullable=True),
        sa.Column("provider_txn_id", sa.String(128), nullable=True),
        sa.Column("refund_ref", sa.String(128), nullable=True),
        sa.Column("payout_ref", sa.String(128), nullable=True),
        sa.Column("payout_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_payout_error", sa.Text, nullable=True),
        sa.Column("tracking_number", sa.String(64), nullable=True),
        sa.Column("pickup_evidence", JSONB, nullable=False, server_default="[]"),
        sa.Column("delivery_evidence", JSONB, nullable=False, server_default="[]"),
        sa.Column("dispute_status", sa.String(16), nullable=False, server_default="none"),
        sa.Column("dispute_reason", sa.Text, nullable=True),
        sa.Column("dispute_opened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("shipped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("transferred_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_transactions_order_id", "transactions", ["order_id"])

    # Status history (append-only)
    op.create_table(
        "order_item_status_history",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("order_id", sa.String(36), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("order_item_id", sa.String(36), nullable=True),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_id", sa.String(64), nullable=False),
        sa.Column("actor_role", sa.String(16), nullable=False),
        sa.Column("notes", sa.Text, nullable=False, server_default=""),
        sa.Column("forced", sa.Boolean, nullable=False, server_default="false"),
    )
    op.create_index("ix_order_item_status_history_order_id", "order_item_status_history", ["order_id"])
    op.create_index("ix_order_item_status_history_order_item_id", "order_item_status_history", ["order_item_id"])

    # Escrow releases (append-only)
    op.create_table(
        "escrow_releases",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("order_id", sa.String(36), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("order_item_id", sa.String(36), nullable=True),
        sa.Column("transaction_id", sa.String(36), nullable=True),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("reason", sa.Text, nullable=False, server_default=""),
        sa.Column("actor_id", sa.String(64), nullable=False),
        sa.Column("actor_role", sa.String(16), nullable=False),
        sa.Column("external_ref", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_escrow_releases_order_id", "escrow_releases", ["order_id"])
    op.create_index("ix_escrow_releases_transaction_id", "escrow_releases", ["transaction_id"])

    # Processed gateway events (webhook dedupe ledger)
    op.create_table(
        "processed_gateway_events",
        sa.Column("provider_txn_id", sa.String(128), primary_key=True),
        sa.Column("status", sa.String(16), primary_key=True),
        sa.Column("order_id", sa.String(36), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
    )

    # Audit tables reject UPDATE and DELETE at the database level.
    op.execute(
        """
        CREATE FUNCTION reject_audit_mutation() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION '% is append-only', TG_TABLE_NAME;
        END;
        $$ LANGUAGE plpgsql
        """
    )
    for table in _APPEND_ONLY_TABLES:
        op.execute(
            f"CREATE TRIGGER {table}_append_only BEFORE UPDATE OR DELETE ON {table} "
            "FOR EACH ROW EXECUTE FUNCTION reject_audit_mutation()"
        )


def downgrade() -> None:
    for table in _APPEND_ONLY_TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS {table}_append_only ON {table}")
    op.execute("DROP FUNCTION IF EXISTS reject_audit_mutation()")
    op.drop_table("processed_gateway_events")
    op.drop_table("escrow_releases")
    op.drop_table("order_item_status_history")
    op.drop_table("transactions")
    op.drop_table("order_items")
    op.drop_table("orders")
