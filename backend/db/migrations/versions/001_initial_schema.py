"""
Initial schema - reconciliation tables

Revision ID: 001
Revises: None
Create Date: 2026-02-17
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

CHANNELS_SQL = "('Sun.store', 'Solartraders', 'Direct', 'Other')"
SOURCES_SQL = "('email', 'stripe', 'scrape', 'zoho', 'envia', 'manual')"


def money() -> sa.Numeric:
    return sa.Numeric(12, 2)


def upgrade() -> None:
    # 1. Orders
    op.create_table(
        "orders",
        sa.Column("order_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("store_id", sa.String(100), nullable=False),
        sa.Column("channel", sa.String(20), nullable=False),
        sa.Column("external_order_id", sa.String(255), nullable=False),
        sa.Column("source_status", sa.String(50)),
        sa.Column("order_status", sa.String(20), nullable=False, server_default="provisional"),
        sa.Column("last_source", sa.String(20)),
        sa.Column("order_date", sa.Date),
        sa.Column("source_event_at", sa.DateTime),
        sa.Column("client_name", sa.String(255)),
        sa.Column("transaction_ref", sa.String(255)),
        sa.Column("customer_country", sa.String(10)),
        sa.Column("payment_method", sa.String(20)),
        sa.Column("currency", sa.String(3), nullable=False, server_default="EUR"),
        sa.Column("shipping_charged_ht", money(), server_default="0"),
        sa.Column("shipping_charged_ttc", money()),
        sa.Column("shipping_real_ht", money(), server_default="0"),
        sa.Column("shipping_real_ttc", money()),
        sa.Column("fees_platform", money(), server_default="0"),
        sa.Column("fees_processor", money(), server_default="0"),
        sa.Column("net_received", money()),
        sa.Column("source_payload", sa.JSON, nullable=False, server_default="{}"),
        sa.Column("validated_at", sa.DateTime),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("store_id", "channel", "external_order_id", name="uq_order_per_channel"),
        sa.CheckConstraint(f"channel IN {CHANNELS_SQL}", name="ck_order_channel"),
        sa.CheckConstraint(
            "order_status IN ('provisional', 'enriched', 'needs_completion', 'validated')",
            name="ck_order_status",
        ),
    )
    op.create_index("ix_orders_store", "orders", ["store_id"])
    op.create_index("ix_orders_transaction_ref", "orders", ["transaction_ref"])
    op.create_index("ix_orders_status", "orders", ["order_status"])

    # 2. Sale lines
    op.create_table(
        "sale_lines",
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column("store_id", sa.String(100), primary_key=True),
        sa.Column("order_id", UUID(as_uuid=True), sa.ForeignKey("orders.order_id", ondelete="SET NULL")),
        sa.Column("line_index", sa.Integer, nullable=False, server_default="1"),
        sa.Column("source", sa.String(20), nullable=False, server_default="manual"),
        sa.Column("order_date", sa.Date),
        sa.Column("client_or_tx", sa.String(255), nullable=False, server_default=""),
        sa.Column("transaction_ref", sa.String(255), nullable=False, server_default=""),
        sa.Column("channel", sa.String(20), nullable=False),
        sa.Column("customer_country", sa.String(10), nullable=False, server_default="FR"),
        sa.Column("product_ref", sa.String(255), nullable=False),
        sa.Column("product_label", sa.String(500)),
        sa.Column("quantity", sa.Numeric(12, 3), nullable=False, server_default="1"),
        sa.Column("sell_price_unit_ht", money(), nullable=False, server_default="0"),
        sa.Column("sell_price_unit_ttc", money()),
        sa.Column("buy_price_unit", money(), nullable=False, server_default="0"),
        sa.Column("category", sa.String(20), nullable=False, server_default="Accessories"),
        sa.Column("payment_method", sa.String(20), nullable=False, server_default="Wire"),
        sa.Column("power_wp", sa.Numeric(14, 2)),
        sa.Column("shipping_charged_ht", money(), nullable=False, server_default="0"),
        sa.Column("shipping_charged_ttc", money()),
        sa.Column("shipping_real_ht", money(), nullable=False, server_default="0"),
        sa.Column("shipping_real_ttc", money()),
        sa.Column("shipping_cost_source", sa.String(30), server_default="manual"),
        sa.Column("tracking_numbers", sa.JSON, nullable=False, server_default="[]"),
        sa.Column("shipping_provider", sa.String(100)),
        sa.Column("shipping_status", sa.String(100)),
        sa.Column("shipping_event_at", sa.DateTime),
        sa.Column("shipping_tracking_url", sa.Text),
        sa.Column("shipping_label_url", sa.Text),
        sa.Column("shipping_proof_url", sa.Text),
        sa.Column("invoice_url", sa.Text),
        sa.Column("attachments", sa.JSON, nullable=False, server_default="[]"),
        sa.Column("sell_total_ht", money(), nullable=False, server_default="0"),
        sa.Column("transaction_value", money(), nullable=False, server_default="0"),
        sa.Column("commission_rate_display", sa.String(30), nullable=False, server_default="0%"),
        sa.Column("commission_eur", money(), nullable=False, server_default="0"),
        sa.Column("payment_fee", money(), nullable=False, server_default="0"),
        sa.Column("net_received", money(), nullable=False, server_default="0"),
        sa.Column("total_cost", money(), nullable=False, server_default="0"),
        sa.Column("gross_margin", money(), nullable=False, server_default="0"),
        sa.Column("net_margin", money(), nullable=False, server_default="0"),
        sa.Column("net_margin_pct", money(), nullable=False, server_default="0"),
        sa.Column("source_payload", sa.JSON, nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(f"channel IN {CHANNELS_SQL}", name="ck_sale_line_channel"),
        sa.CheckConstraint(
            "category IN ('Inverters', 'Solar Panels', 'Batteries', 'Accessories')", name="ck_sale_line_category"
        ),
        sa.CheckConstraint("payment_method IN ('Stripe', 'Wire', 'PayPal', 'Cash')", name="ck_sale_line_payment"),
        sa.CheckConstraint("quantity > 0", name="ck_sale_line_quantity_positive"),
    )
    op.create_index("ix_sale_lines_store", "sale_lines", ["store_id"])
    op.create_index("ix_sale_lines_order", "sale_lines", ["order_id"])
    op.create_index("ix_sale_lines_group", "sale_lines", ["store_id", "order_date", "transaction_ref", "channel"])
    op.create_index("ix_sale_lines_product_ref", "sale_lines", ["product_ref"])

    # 3. Ingest ledger
    op.create_table(
        "ingest_events",
        sa.Column("event_id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("store_id", sa.String(100), nullable=False),
        sa.Column("source", sa.String(20), nullable=False),
        sa.Column("source_event_id", sa.String(255), nullable=False),
        sa.Column("channel", sa.String(20)),
        sa.Column("external_order_id", sa.String(255)),
        sa.Column("status", sa.String(20), nullable=False, server_default="received"),
        sa.Column("payload", sa.JSON, nullable=False, server_default="{}"),
        sa.Column("error_message", sa.Text),
        sa.Column("processed_at", sa.DateTime),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("store_id", "source", "source_event_id", name="uq_ingest_event_key"),
        sa.CheckConstraint(f"source IN {SOURCES_SQL}", name="ck_ingest_event_source"),
        sa.CheckConstraint("status IN ('received', 'processed', 'ignored', 'failed')", name="ck_ingest_event_status"),
    )
    op.create_index("ix_ingest_events_store_created", "ingest_events", ["store_id", "created_at"])

    # 4. Inbox messages
    op.create_table(
        "inbox_messages",
        sa.Column(
            "inbox_message_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
        ),
        sa.Column("store_id", sa.String(100), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False, server_default="imap"),
        sa.Column("message_id", sa.String(500), nullable=False),
        sa.Column("thread_id", sa.String(500)),
        sa.Column("received_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("from_email", sa.String(255)),
        sa.Column("subject", sa.Text),
        sa.Column("raw_text", sa.Text),
        sa.Column("channel", sa.String(20)),
        sa.Column("negotiation_id", sa.String(100)),
        sa.Column("parsed_product_refs", sa.JSON, nullable=False, server_default="[]"),
        sa.Column("parse_confidence", sa.Float, nullable=False, server_default="0"),
        sa.Column("parse_errors", sa.JSON, nullable=False, server_default="[]"),
        sa.Column("payload", sa.JSON, nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("store_id", "message_id", name="uq_inbox_message"),
        sa.CheckConstraint("channel IS NULL OR channel IN ('Sun.store', 'Solartraders')", name="ck_inbox_channel"),
    )
    op.create_index("ix_inbox_messages_negotiation", "inbox_messages", ["store_id", "channel", "negotiation_id"])

    # 5. Sync logs
    op.create_table(
        "sync_logs",
        sa.Column("log_id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("store_id", sa.String(100), nullable=False),
        sa.Column("component", sa.String(50), nullable=False),
        sa.Column("level", sa.String(10), nullable=False, server_default="info"),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("context", sa.JSON, nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("level IN ('info', 'warn', 'error')", name="ck_sync_log_level"),
    )
    op.create_index("ix_sync_logs_store_created", "sync_logs", ["store_id", "created_at"])

    # 6. Catalog
    op.create_table(
        "catalog_products",
        sa.Column(
            "catalog_product_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
        ),
        sa.Column("store_id", sa.String(100), nullable=False),
        sa.Column("ref", sa.String(255), nullable=False),
        sa.Column("buy_price_unit", money(), nullable=False, server_default="0"),
        sa.Column("category", sa.String(20), nullable=False, server_default="Accessories"),
        sa.Column("initial_stock", sa.Numeric(12, 3), nullable=False, server_default="0"),
        sa.Column("display_order", sa.Integer, nullable=False, server_default="0"),
        sa.Column("datasheet_url", sa.Text),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("store_id", "ref", name="uq_catalog_product_ref"),
    )

    # 7. Catalog SKU aliases
    op.create_table(
        "catalog_sku_aliases",
        sa.Column("alias_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("store_id", sa.String(100), nullable=False),
        sa.Column("alias_sku", sa.String(255), nullable=False),
        sa.Column("product_ref", sa.String(255), nullable=False),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.UniqueConstraint("store_id", "alias_sku", name="uq_catalog_alias"),
    )


def downgrade() -> None:
    for table in (
        "catalog_sku_aliases",
        "catalog_products",
        "sync_logs",
        "inbox_messages",
        "ingest_events",
        "sale_lines",
        "orders",
    ):
        op.drop_table(table)
