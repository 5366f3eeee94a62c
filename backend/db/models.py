"""
MarginSync Database Models

7 tables for the order reconciliation and margin engine.
Every table is scoped by store_id (one store = one tenant).

Tables:
  Pipeline:
  1. orders               - Canonical order per (store, channel, external order id)
  2. sale_lines           - One priced line per product reference (derived margins)
  3. ingest_events        - Idempotence ledger keyed by (store, source, source event id)
  4. inbox_messages       - Parsed marketplace notification emails
  5. sync_logs            - Durable audit trail of every ingest

  Catalog:
  6. catalog_products     - Buy price, category and initial stock per product ref
  7. catalog_sku_aliases  - Accounting SKU -> catalog ref overrides
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


def Money():
    return Numeric(12, 2)


CHANNELS_SQL = "('Sun.store', 'Solartraders', 'Direct', 'Other')"
SOURCES_SQL = "('email', 'stripe', 'scrape', 'zoho', 'envia', 'manual')"


# ─── 1. Orders ─────────────────────────────────────────────────────────────


class Order(Base):
    __tablename__ = "orders"

    order_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    store_id = Column(String(100), nullable=False)
    channel = Column(String(20), nullable=False)
    external_order_id = Column(String(255), nullable=False)
    source_status = Column(String(50))  # email_detected, stripe_enriched, scraped, zoho_synced
    order_status = Column(String(20), nullable=False, default="provisional")
    last_source = Column(String(20))
    order_date = Column(Date)
    source_event_at = Column(DateTime)
    client_name = Column(String(255))
    transaction_ref = Column(String(255))
    customer_country = Column(String(10))
    payment_method = Column(String(20))
    currency = Column(String(3), nullable=False, default="EUR")
    shipping_charged_ht = Column(Money(), default=0)
    shipping_charged_ttc = Column(Money())
    shipping_real_ht = Column(Money(), default=0)
    shipping_real_ttc = Column(Money())
    fees_platform = Column(Money(), default=0)
    fees_processor = Column(Money(), default=0)
    net_received = Column(Money())
    source_payload = Column(JSON, nullable=False, default=dict)  # keyed by ingest source
    validated_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("store_id", "channel", "external_order_id", name="uq_order_per_channel"),
        Index("ix_orders_store", "store_id"),
        Index("ix_orders_transaction_ref", "transaction_ref"),
        Index("ix_orders_status", "order_status"),
        CheckConstraint(f"channel IN {CHANNELS_SQL}", name="ck_order_channel"),
        CheckConstraint(
            "order_status IN ('provisional', 'enriched', 'needs_completion', 'validated')",
            name="ck_order_status",
        ),
    )


# ─── 2. Sale Lines ─────────────────────────────────────────────────────────


class SaleLine(Base):
    """One priced product line. Derived money fields are recomputed on every write."""

    __tablename__ = "sale_lines"

    id = Column(String(255), primary_key=True)  # zoho-{order}-{line} | order-{uuid}-{n}, unique per store
    store_id = Column(String(100), primary_key=True)
    order_id = Column(GUID(), ForeignKey("orders.order_id", ondelete="SET NULL"))
    line_index = Column(Integer, nullable=False, default=1)
    source = Column(String(20), nullable=False, default="manual")

    # Order grouping key
    order_date = Column(Date)
    client_or_tx = Column(String(255), nullable=False, default="")
    transaction_ref = Column(String(255), nullable=False, default="")
    channel = Column(String(20), nullable=False)
    customer_country = Column(String(10), nullable=False, default="FR")

    product_ref = Column(String(255), nullable=False)
    product_label = Column(String(500))
    quantity = Column(Numeric(12, 3), nullable=False, default=1)
    sell_price_unit_ht = Column(Money(), nullable=False, default=0)
    sell_price_unit_ttc = Column(Money())
    buy_price_unit = Column(Money(), nullable=False, default=0)
    category = Column(String(20), nullable=False, default="Accessories")
    payment_method = Column(String(20), nullable=False, default="Wire")
    power_wp = Column(Numeric(14, 2))

    # Shipping (allocated portions of order-level amounts)
    shipping_charged_ht = Column(Money(), nullable=False, default=0)
    shipping_charged_ttc = Column(Money())
    shipping_real_ht = Column(Money(), nullable=False, default=0)
    shipping_real_ttc = Column(Money())
    shipping_cost_source = Column(String(30), default="manual")

    # Enrichment preserved across authoritative re-syncs
    tracking_numbers = Column(JSON, nullable=False, default=list)
    shipping_provider = Column(String(100))
    shipping_status = Column(String(100))
    shipping_event_at = Column(DateTime)
    shipping_tracking_url = Column(Text)
    shipping_label_url = Column(Text)
    shipping_proof_url = Column(Text)
    invoice_url = Column(Text)
    attachments = Column(JSON, nullable=False, default=list)

    # Derived
    sell_total_ht = Column(Money(), nullable=False, default=0)
    transaction_value = Column(Money(), nullable=False, default=0)
    commission_rate_display = Column(String(30), nullable=False, default="0%")
    commission_eur = Column(Money(), nullable=False, default=0)
    payment_fee = Column(Money(), nullable=False, default=0)
    net_received = Column(Money(), nullable=False, default=0)
    total_cost = Column(Money(), nullable=False, default=0)
    gross_margin = Column(Money(), nullable=False, default=0)
    net_margin = Column(Money(), nullable=False, default=0)
    net_margin_pct = Column(Money(), nullable=False, default=0)

    source_payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_sale_lines_store", "store_id"),
        Index("ix_sale_lines_order", "order_id"),
        Index("ix_sale_lines_group", "store_id", "order_date", "transaction_ref", "channel"),
        Index("ix_sale_lines_product_ref", "product_ref"),
        CheckConstraint(f"channel IN {CHANNELS_SQL}", name="ck_sale_line_channel"),
        CheckConstraint(
            "category IN ('Inverters', 'Solar Panels', 'Batteries', 'Accessories')", name="ck_sale_line_category"
        ),
        CheckConstraint("payment_method IN ('Stripe', 'Wire', 'PayPal', 'Cash')", name="ck_sale_line_payment"),
        CheckConstraint("quantity > 0", name="ck_sale_line_quantity_positive"),
    )


# ─── 3. Ingest Events ──────────────────────────────────────────────────────


class IngestEvent(Base):
    __tablename__ = "ingest_events"

    event_id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(String(100), nullable=False)
    source = Column(String(20), nullable=False)
    source_event_id = Column(String(255), nullable=False)
    channel = Column(String(20))
    external_order_id = Column(String(255))
    status = Column(String(20), nullable=False, default="received")
    payload = Column(JSON, nullable=False, default=dict)
    error_message = Column(Text)
    processed_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("store_id", "source", "source_event_id", name="uq_ingest_event_key"),
        Index("ix_ingest_events_store_created", "store_id", "created_at"),
        CheckConstraint(f"source IN {SOURCES_SQL}", name="ck_ingest_event_source"),
        CheckConstraint("status IN ('received', 'processed', 'ignored', 'failed')", name="ck_ingest_event_status"),
    )


# ─── 4. Inbox Messages ─────────────────────────────────────────────────────


class InboxMessage(Base):
    __tablename__ = "inbox_messages"

    inbox_message_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    store_id = Column(String(100), nullable=False)
    provider = Column(String(20), nullable=False, default="imap")
    message_id = Column(String(500), nullable=False)
    thread_id = Column(String(500))
    received_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    from_email = Column(String(255))
    subject = Column(Text)
    raw_text = Column(Text)
    channel = Column(String(20))
    negotiation_id = Column(String(100))
    parsed_product_refs = Column(JSON, nullable=False, default=list)
    parse_confidence = Column(Float, nullable=False, default=0.0)
    parse_errors = Column(JSON, nullable=False, default=list)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("store_id", "message_id", name="uq_inbox_message"),
        Index("ix_inbox_messages_negotiation", "store_id", "channel", "negotiation_id"),
        CheckConstraint("channel IS NULL OR channel IN ('Sun.store', 'Solartraders')", name="ck_inbox_channel"),
    )


# ─── 5. Sync Logs ──────────────────────────────────────────────────────────


class SyncLog(Base):
    __tablename__ = "sync_logs"

    log_id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(String(100), nullable=False)
    component = Column(String(50), nullable=False)
    level = Column(String(10), nullable=False, default="info")
    message = Column(Text, nullable=False)
    context = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_sync_logs_store_created", "store_id", "created_at"),
        CheckConstraint("level IN ('info', 'warn', 'error')", name="ck_sync_log_level"),
    )


# ─── 6. Catalog ────────────────────────────────────────────────────────────


class CatalogProduct(Base):
    __tablename__ = "catalog_products"

    catalog_product_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    store_id = Column(String(100), nullable=False)
    ref = Column(String(255), nullable=False)
    buy_price_unit = Column(Money(), nullable=False, default=0)
    category = Column(String(20), nullable=False, default="Accessories")
    initial_stock = Column(Numeric(12, 3), nullable=False, default=0)
    display_order = Column(Integer, nullable=False, default=0)
    datasheet_url = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (UniqueConstraint("store_id", "ref", name="uq_catalog_product_ref"),)


# ─── 7. Catalog SKU Aliases ────────────────────────────────────────────────


class CatalogSkuAlias(Base):
    __tablename__ = "catalog_sku_aliases"

    alias_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    store_id = Column(String(100), nullable=False)
    alias_sku = Column(String(255), nullable=False)
    product_ref = Column(String(255), nullable=False)
    active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (UniqueConstraint("store_id", "alias_sku", name="uq_catalog_alias"),)
