"""
Orders Router — canonical orders, their sale lines, and validation.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db, get_store_id
from core.config import Settings, get_settings
from db.models import Order, SaleLine
from engine.catalog import compute_stock_map, low_stock_refs
from engine.errors import SaleValidationError
from ingest.reconciler import Reconciler, load_catalog

router = APIRouter(prefix="/api/v1/orders", tags=["orders"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class SaleLineResponse(BaseModel):
    id: str
    order_id: UUID | None
    line_index: int
    source: str
    order_date: date | None
    client_or_tx: str | None
    transaction_ref: str | None
    channel: str
    customer_country: str | None
    product_ref: str
    product_label: str | None
    quantity: Decimal
    sell_price_unit_ht: Decimal
    buy_price_unit: Decimal
    category: str
    payment_method: str
    power_wp: Decimal | None
    shipping_charged_ht: Decimal
    shipping_real_ht: Decimal
    shipping_real_ttc: Decimal | None
    shipping_cost_source: str | None
    tracking_numbers: list[str] | None
    shipping_provider: str | None
    shipping_status: str | None
    invoice_url: str | None
    sell_total_ht: Decimal | None
    transaction_value: Decimal | None
    commission_rate_display: str | None
    commission_eur: Decimal | None
    payment_fee: Decimal | None
    net_received: Decimal | None
    total_cost: Decimal | None
    gross_margin: Decimal | None
    net_margin: Decimal | None
    net_margin_pct: Decimal | None

    model_config = {"from_attributes": True}


class OrderResponse(BaseModel):
    order_id: UUID
    store_id: str
    channel: str
    external_order_id: str
    order_status: str
    source_status: str | None
    last_source: str | None
    order_date: date | None
    client_name: str | None
    transaction_ref: str | None
    customer_country: str | None
    payment_method: str | None
    currency: str
    shipping_charged_ht: Decimal | None
    shipping_real_ht: Decimal | None
    shipping_real_ttc: Decimal | None
    fees_platform: Decimal | None
    fees_processor: Decimal | None
    net_received: Decimal | None
    validated_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class OrderDetailResponse(OrderResponse):
    lines: list[SaleLineResponse] = []


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[OrderResponse])
async def list_orders(
    channel: str | None = None,
    order_status: str | None = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    store_id: str = Depends(get_store_id),
    db: AsyncSession = Depends(get_db),
):
    query = select(Order).where(Order.store_id == store_id)
    if channel:
        query = query.where(Order.channel == channel)
    if order_status:
        query = query.where(Order.order_status == order_status)
    query = query.order_by(Order.order_date.desc(), Order.created_at.desc()).limit(limit).offset(offset)
    result = await db.execute(query)
    return result.scalars().all()


async def _order_detail(reconciler: Reconciler, order: Order) -> OrderDetailResponse:
    lines = await reconciler.order_lines(order)
    detail = OrderDetailResponse.model_validate(order)
    detail.lines = [SaleLineResponse.model_validate(line) for line in lines]
    return detail


@router.get("/{order_id}", response_model=OrderDetailResponse)
async def get_order(
    order_id: UUID,
    store_id: str = Depends(get_store_id),
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
):
    reconciler = Reconciler(db, store_id, settings=settings)
    order = await reconciler.get_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return await _order_detail(reconciler, order)


@router.post("/{order_id}/validate", response_model=OrderDetailResponse)
async def validate_order(
    order_id: UUID,
    store_id: str = Depends(get_store_id),
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
):
    """Explicit human validation: the only way an order reaches "validated"."""
    reconciler = Reconciler(db, store_id, settings=settings)
    try:
        order = await reconciler.validate_order(order_id)
    except SaleValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    await db.commit()
    return await _order_detail(reconciler, order)


# ─── Sales ──────────────────────────────────────────────────────────────────

sales_router = APIRouter(prefix="/api/v1/sales", tags=["sales"])


class StockResponse(BaseModel):
    stock: dict[str, Decimal]
    low_stock: list[str]


@sales_router.get("/", response_model=list[SaleLineResponse])
async def list_sales(
    transaction_ref: str | None = None,
    limit: int = Query(200, ge=1, le=1000),
    store_id: str = Depends(get_store_id),
    db: AsyncSession = Depends(get_db),
):
    query = select(SaleLine).where(SaleLine.store_id == store_id)
    if transaction_ref:
        query = query.where(SaleLine.transaction_ref == transaction_ref)
    query = query.order_by(SaleLine.order_date.desc(), SaleLine.line_index, SaleLine.id).limit(limit)
    result = await db.execute(query)
    return result.scalars().all()


@sales_router.post("/recompute")
async def recompute_sales(
    store_id: str = Depends(get_store_id),
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
):
    """Re-derive every line's money fields from its inputs."""
    count = await Reconciler(db, store_id, settings=settings).recompute_lines()
    await db.commit()
    return {"status": "ok", "lines": count}


@sales_router.get("/stock", response_model=StockResponse)
async def sales_stock(
    store_id: str = Depends(get_store_id),
    db: AsyncSession = Depends(get_db),
):
    """Remaining stock per catalog ref and the refs at or below the low-stock threshold."""
    catalog = await load_catalog(db, store_id)
    lines = (await db.execute(select(SaleLine).where(SaleLine.store_id == store_id))).scalars().all()
    stock = compute_stock_map(catalog.entries, lines)
    return StockResponse(stock=stock, low_stock=low_stock_refs(stock))
