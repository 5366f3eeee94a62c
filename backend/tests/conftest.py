"""
Test Configuration — Fixtures for async DB, test client, and seed data.

Uses per-test transactions with SAVEPOINT/rollback so each test gets a
clean database state while sharing the same session-level schema.
"""

from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from api.deps import get_db
from api.main import app
from core.config import Settings, get_settings
from db.session import Base

# Use in-memory SQLite for tests.
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

STORE_ID = "store-test"


@pytest.fixture(scope="session")
async def test_engine():
    """Create a test database engine and build all tables once."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    # Let SQLAlchemy emit BEGIN itself so SAVEPOINT release never commits the outer transaction
    @event.listens_for(engine.sync_engine, "connect")
    def disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    """Create a test session wrapped in a transaction that rolls back after each test."""
    async with test_engine.connect() as conn:
        trans = await conn.begin()
        # App commits and begin_nested() blocks become SAVEPOINTs inside the outer transaction
        session = AsyncSession(bind=conn, expire_on_commit=False, join_transaction_mode="create_savepoint")

        yield session

        await session.close()
        await trans.rollback()


@pytest.fixture
def test_settings():
    """Settings with every webhook secured by a known token."""
    return Settings(
        app_env="test",
        store_id=STORE_ID,
        stripe_webhook_secret="whsec_test",
        stripe_signature_tolerance_seconds=300,
        zoho_webhook_token="zoho-token",
        envia_webhook_token="envia-token",
        ingest_api_token="ingest-token",
        slack_webhook_url="",
        allowed_sender_domains=["sun.store", "solartraders.com"],
    )


@pytest.fixture
async def client(test_db, test_settings):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: test_settings

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def seeded_catalog(test_db):
    """Seed a small Huawei catalog with one SKU alias."""
    from db.models import CatalogProduct, CatalogSkuAlias

    products = [
        CatalogProduct(
            store_id=STORE_ID,
            ref="SUN2000-5KTL-M1",
            buy_price_unit=Decimal("700.00"),
            category="Inverters",
            initial_stock=Decimal("10"),
            display_order=1,
        ),
        CatalogProduct(
            store_id=STORE_ID,
            ref="LUNA2000-5-E0",
            buy_price_unit=Decimal("1500.00"),
            category="Batteries",
            initial_stock=Decimal("4"),
            display_order=2,
        ),
        CatalogProduct(
            store_id=STORE_ID,
            ref="SMARTGUARD-63A-T0",
            buy_price_unit=Decimal("300.00"),
            category="Accessories",
            initial_stock=Decimal("20"),
            display_order=3,
        ),
    ]
    test_db.add_all(products)
    test_db.add(CatalogSkuAlias(store_id=STORE_ID, alias_sku="HW-INV-5K", product_ref="SUN2000-5KTL-M1", active=True))
    await test_db.flush()
    await test_db.commit()
    return {product.ref: product for product in products}


# ─── Inbound payloads ───────────────────────────────────────────────────────


@pytest.fixture
def stripe_checkout_event():
    return {
        "id": "evt_checkout_1",
        "type": "checkout.session.completed",
        "created": 1771322400,  # 2026-02-17T10:00:00Z
        "data": {
            "object": {
                "id": "cs_test_1",
                "payment_intent": "pi_123",
                "amount_total": 107000,
                "currency": "eur",
                "shipping_cost": {"amount_total": 3000},
                "customer_details": {"name": "Solar Dupont SARL", "address": {"country": "FR"}},
                "metadata": {"negotiation_id": "wpT5sgv0"},
            }
        },
    }


@pytest.fixture
def stripe_charge_event():
    return {
        "id": "evt_charge_1",
        "type": "charge.succeeded",
        "created": 1771322400,
        "data": {
            "object": {
                "id": "ch_1",
                "payment_intent": "pi_456",
                "amount": 107000,
                "currency": "eur",
                "application_fee_amount": 500,
                "balance_transaction": {"fee": 4270, "net": 102230},
                "billing_details": {"name": "Energie Nord", "address": {"country": "BE"}},
                "metadata": {"order_ref": "ORD-0001"},
            }
        },
    }


@pytest.fixture
def zoho_salesorder():
    return {
        "salesorder": {
            "salesorder_id": "9001",
            "salesorder_number": "CC-00123",
            "reference_number": "Transaction #wpT5sgv0",
            "date": "2026-02-17",
            "customer_name": "Solar Dupont SARL",
            "currency_code": "EUR",
            "billing_address": {"country": "France"},
            "shipping_charge": 50,
            "custom_fields": [],
            "line_items": [
                {
                    "line_item_id": "L1",
                    "sku": "HUA/SUN2000-5KTL-M1",
                    "name": "Huawei SUN2000-5KTL-M1 onduleur",
                    "quantity": 2,
                    "rate": 1000,
                    "discount": "10%",
                },
                {
                    "line_item_id": "L2",
                    "sku": "LUNA2000-5-E0",
                    "name": "Huawei LUNA2000 battery",
                    "quantity": 1,
                    "amount": 1200,
                },
                {"line_item_id": "L3", "sku": "CABLE-10M", "name": "Cable 10m", "quantity": 1, "amount": 20},
                {"line_item_id": "L4", "sku": "TRANSPORT", "name": "Frais de port", "quantity": 1, "amount": 10},
            ],
        }
    }


@pytest.fixture
def envia_shipment():
    return {
        "event_id": "env_evt_1",
        "data": {
            "reference": "CC-00123",
            "carrier": "DHL",
            "status": "in_transit",
            "tracking_number": "JD014600006281234567",
            "shipping_cost_ttc": "84,00",
            "occurred_at": "2026-02-18T08:30:00Z",
            "label": {"url": "https://envia.com/labels/1.pdf"},
        },
    }
