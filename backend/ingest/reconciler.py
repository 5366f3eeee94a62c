"""
Order / Line Reconciler.

Applies normalized facts to the canonical order and its sale lines:

  upsert_order     one Order per (store, channel, external order id); facts
                   only fill or overwrite the fields they carry; status only
                   moves forward and never reaches "validated"
  replace_lines    wholesale replacement of the lines a source owns (by id
                   prefix), carrying forward enrichment the source does not
                   know about (tracking, documents, real shipping...)
  apply_shipment   carrier update matched to an existing line group; real
                   shipping is re-split across the group and lines recomputed
  validate_order   the only way into "validated"

Every apply reads the full order + lines set, merges and writes it back in
the caller's transaction. Derived money fields are always recomputed from
the line's own inputs after a mutation.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings, get_settings
from db.models import CatalogProduct, CatalogSkuAlias, Order, SaleLine
from engine.calculator import line_inputs, recompute, validate_sale_inputs
from engine.catalog import CatalogEntry, CatalogIndex
from engine.extraction import normalize_ref, order_code_from_sale_id
from engine.money import allocate_by_weight, line_weights, round2, to_decimal
from engine.rates import DEFAULT_SCHEDULE, CommissionSchedule
from engine.types import Category, OrderStatus, PaymentMethod, ShippingCostSource, advance_status
from integrations.base import LineFact, OrderFact, ReconcileResult, ReconcileStatus, ShipmentFact

logger = structlog.get_logger()

# Order attribute <- OrderFact attribute; None on the fact keeps the stored value
ORDER_FIELD_MAP = {
    "order_date": "order_date",
    "source_event_at": "event_at",
    "client_name": "customer_name",
    "transaction_ref": "transaction_ref",
    "customer_country": "customer_country",
    "payment_method": "payment_method",
    "currency": "currency",
    "shipping_charged_ht": "shipping_charged_ht",
    "shipping_charged_ttc": "shipping_charged_ttc",
    "shipping_real_ht": "shipping_real_ht",
    "shipping_real_ttc": "shipping_real_ttc",
    "fees_platform": "fees_platform",
    "fees_processor": "fees_processor",
    "net_received": "net_received",
    "source_status": "source_status",
}

# Set by shipments and manual edits; an authoritative re-sync must not erase them
ENRICHMENT_FIELDS = (
    "tracking_numbers",
    "shipping_provider",
    "shipping_status",
    "shipping_event_at",
    "shipping_tracking_url",
    "shipping_label_url",
    "shipping_proof_url",
    "attachments",
)


def _value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


def order_line_prefix(order: Order) -> str:
    return f"order-{order.order_id}-"


def same_order_group(a: SaleLine, b: SaleLine) -> bool:
    return (
        a.order_date == b.order_date
        and a.client_or_tx == b.client_or_tx
        and a.transaction_ref == b.transaction_ref
        and a.channel == b.channel
    )


async def load_catalog(db: AsyncSession, store_id: str) -> CatalogIndex:
    """Catalog snapshot for normalizers and stock reports."""
    products = (
        await db.execute(
            select(CatalogProduct)
            .where(CatalogProduct.store_id == store_id)
            .order_by(CatalogProduct.display_order, CatalogProduct.ref)
        )
    ).scalars()
    aliases = (
        await db.execute(
            select(CatalogSkuAlias).where(CatalogSkuAlias.store_id == store_id, CatalogSkuAlias.active.is_(True))
        )
    ).scalars()
    return CatalogIndex.build(
        [
            CatalogEntry(
                ref=p.ref,
                buy_price_unit=to_decimal(p.buy_price_unit),
                category=p.category,
                initial_stock=to_decimal(p.initial_stock),
            )
            for p in products
        ],
        [(a.alias_sku, a.product_ref) for a in aliases],
    )


class Reconciler:
    def __init__(
        self,
        db: AsyncSession,
        store_id: str,
        settings: Settings | None = None,
        schedule: CommissionSchedule = DEFAULT_SCHEDULE,
    ):
        self.db = db
        self.store_id = store_id
        self.settings = settings or get_settings()
        self.schedule = schedule
        self.logger = logger.bind(store_id=store_id)

    @property
    def french_vat(self) -> Decimal:
        return Decimal(str(self.settings.french_vat_rate))

    @property
    def shipment_vat(self) -> Decimal:
        return Decimal(str(self.settings.envia_ttc_vat_rate))

    # ── Entry point ───────────────────────────────────────────────────────

    async def apply(self, fact: OrderFact) -> ReconcileResult:
        """Apply one normalized fact. Raises SaleValidationError on unusable line inputs."""
        if fact.shipment is not None:
            result = await self.apply_shipment(fact.shipment)
        else:
            order = await self.upsert_order(fact)
            if order is None:
                return ReconcileResult(
                    status=ReconcileStatus.IGNORED,
                    reason="order_key_missing",
                    transaction_ref=fact.transaction_ref,
                )
            if fact.lines:
                line_ids = await self.replace_lines(order, fact)
            else:
                line_ids = await self.refresh_order_lines(order)
            result = ReconcileResult(
                status=ReconcileStatus.PROCESSED,
                order_id=str(order.order_id),
                external_order_id=order.external_order_id,
                transaction_ref=order.transaction_ref,
                lines_affected=line_ids,
                metadata={"order_status": order.order_status},
            )
        result.source = fact.source
        result.source_event_id = fact.source_event_id
        return result

    # ── Orders ────────────────────────────────────────────────────────────

    async def get_order(self, order_id: uuid.UUID | str) -> Order | None:
        result = await self.db.execute(
            select(Order).where(Order.store_id == self.store_id, Order.order_id == uuid.UUID(str(order_id)))
        )
        return result.scalar_one_or_none()

    async def upsert_order(self, fact: OrderFact) -> Order | None:
        if fact.channel is None or not fact.external_order_id:
            return None

        channel = _value(fact.channel)
        result = await self.db.execute(
            select(Order).where(
                Order.store_id == self.store_id,
                Order.channel == channel,
                Order.external_order_id == fact.external_order_id,
            )
        )
        order = result.scalar_one_or_none()
        created = order is None
        if order is None:
            order = Order(
                order_id=uuid.uuid4(),
                store_id=self.store_id,
                channel=channel,
                external_order_id=fact.external_order_id,
                order_status=OrderStatus.PROVISIONAL.value,
                currency="EUR",
                source_payload={},
            )
            self.db.add(order)

        for order_attr, fact_attr in ORDER_FIELD_MAP.items():
            value = getattr(fact, fact_attr)
            if value is not None:
                setattr(order, order_attr, _value(value))

        order.order_status = advance_status(OrderStatus(order.order_status), fact.target_status).value
        order.last_source = fact.source.value
        # Reassign so the JSON column change is tracked
        order.source_payload = {**(order.source_payload or {}), fact.source.value: fact.source_payload}
        order.updated_at = datetime.utcnow()
        await self.db.flush()

        self.logger.info(
            "reconcile.order_upserted",
            order_id=str(order.order_id),
            channel=channel,
            external_order_id=order.external_order_id,
            order_status=order.order_status,
            created=created,
        )
        return order

    async def validate_order(self, order_id: uuid.UUID | str) -> Order | None:
        """Promote an order to validated after checking every line's inputs."""
        order = await self.get_order(order_id)
        if order is None:
            return None
        for line in await self.order_lines(order):
            validate_sale_inputs(line_inputs(line))
        order.order_status = OrderStatus.VALIDATED.value
        order.validated_at = datetime.utcnow()
        await self.db.flush()
        self.logger.info("reconcile.order_validated", order_id=str(order.order_id))
        return order

    # ── Lines ─────────────────────────────────────────────────────────────

    async def order_lines(self, order: Order) -> list[SaleLine]:
        result = await self.db.execute(
            select(SaleLine)
            .where(SaleLine.store_id == self.store_id, SaleLine.order_id == order.order_id)
            .order_by(SaleLine.line_index, SaleLine.id)
        )
        return list(result.scalars())

    async def _lines_with_prefix(self, prefix: str) -> dict[str, SaleLine]:
        result = await self.db.execute(
            select(SaleLine).where(
                SaleLine.store_id == self.store_id,
                SaleLine.id.startswith(prefix, autoescape=True),
            )
        )
        return {line.id: line for line in result.scalars()}

    def _apply_group_key(self, line: SaleLine, order: Order) -> None:
        line.order_id = order.order_id
        line.order_date = order.order_date
        line.client_or_tx = order.client_name or order.transaction_ref or order.external_order_id
        line.transaction_ref = order.transaction_ref or ""
        line.channel = order.channel
        line.customer_country = order.customer_country or line.customer_country or "FR"
        line.payment_method = order.payment_method or line.payment_method or PaymentMethod.WIRE.value

    def _is_french(self, line: SaleLine) -> bool:
        return (line.customer_country or "").upper() == "FR"

    def _merge_line(self, line: SaleLine, previous: SaleLine | None, line_fact: LineFact) -> None:
        def pick(fact_value: Any, attr: str, default: Any = None) -> Any:
            if fact_value is not None:
                return _value(fact_value)
            if previous is not None and getattr(previous, attr) is not None:
                return getattr(previous, attr)
            return default

        line.product_ref = line_fact.product_ref
        line.product_label = pick(line_fact.product_label, "product_label")
        line.quantity = line_fact.quantity
        line.sell_price_unit_ht = pick(line_fact.sell_price_unit_ht, "sell_price_unit_ht", Decimal("0"))
        line.sell_price_unit_ttc = pick(line_fact.sell_price_unit_ttc, "sell_price_unit_ttc")
        line.buy_price_unit = pick(line_fact.buy_price_unit, "buy_price_unit", Decimal("0"))
        line.category = pick(line_fact.category, "category", Category.ACCESSORIES.value)
        line.power_wp = pick(line_fact.power_wp, "power_wp")
        line.shipping_charged_ht = pick(line_fact.shipping_charged_ht, "shipping_charged_ht", Decimal("0"))
        line.shipping_charged_ttc = pick(line_fact.shipping_charged_ttc, "shipping_charged_ttc")

        if line_fact.shipping_real_ht is not None:
            line.shipping_real_ht = line_fact.shipping_real_ht
        elif previous is not None:
            line.shipping_real_ht = previous.shipping_real_ht
        elif line_fact.shipping_cost_source == ShippingCostSource.ESTIMATED_FROM_CHARGED:
            line.shipping_real_ht = line.shipping_charged_ht
        else:
            line.shipping_real_ht = Decimal("0")

        if not self._is_french(line):
            line.shipping_real_ttc = None
        elif line_fact.shipping_real_ttc is not None:
            line.shipping_real_ttc = line_fact.shipping_real_ttc
        elif previous is not None and previous.shipping_real_ttc is not None:
            line.shipping_real_ttc = previous.shipping_real_ttc
        else:
            line.shipping_real_ttc = round2(to_decimal(line.shipping_real_ht) * (1 + self.french_vat))

        line.shipping_cost_source = (
            (previous.shipping_cost_source if previous is not None else None)
            or _value(line_fact.shipping_cost_source)
            or ShippingCostSource.MANUAL.value
        )
        line.invoice_url = (previous.invoice_url if previous is not None else None) or line_fact.invoice_url
        for attr in ENRICHMENT_FIELDS:
            if previous is not None and getattr(previous, attr) is not None:
                setattr(line, attr, getattr(previous, attr))
        if line.tracking_numbers is None:
            line.tracking_numbers = []
        if line.attachments is None:
            line.attachments = []

    def _allocate_order_shipping(self, order: Order, lines: list[SaleLine]) -> None:
        """Split the order's charged shipping across lines by sell total (quantity when unpriced)."""
        if not lines or order.shipping_charged_ht is None:
            return
        for line in lines:
            recompute(line, self.schedule)
        weights = line_weights(lines)
        for line, share in zip(lines, allocate_by_weight(order.shipping_charged_ht, weights)):
            line.shipping_charged_ht = share
        if order.shipping_charged_ttc is not None:
            for line, share in zip(lines, allocate_by_weight(order.shipping_charged_ttc, weights)):
                line.shipping_charged_ttc = share

    async def replace_lines(self, order: Order, fact: OrderFact) -> list[str]:
        """Replace the lines ``fact.source`` owns on ``order`` with freshly computed ones."""
        prefix = fact.line_prefix or order_line_prefix(order)
        existing = await self._lines_with_prefix(prefix)
        now = datetime.utcnow()

        lines: list[SaleLine] = []
        for index, line_fact in enumerate(fact.lines, start=1):
            line_id = f"{prefix}{line_fact.line_id}"
            previous = existing.get(line_id)
            line = previous or SaleLine(id=line_id, store_id=self.store_id, created_at=now)
            line.line_index = index
            line.source = fact.source.value
            self._apply_group_key(line, order)
            self._merge_line(line, previous, line_fact)
            line.source_payload = {"source": fact.source.value, "event_id": fact.source_event_id}
            line.updated_at = now
            if previous is None:
                self.db.add(line)
            lines.append(line)

        if any(line_fact.shipping_charged_ht is None for line_fact in fact.lines):
            self._allocate_order_shipping(order, lines)

        for line in lines:
            # Source-owned lines carry real prices, so they must be complete before computing
            if fact.line_prefix:
                validate_sale_inputs(line_inputs(line))
            recompute(line, self.schedule)

        kept = {line.id for line in lines}
        stale = [line for line_id, line in existing.items() if line_id not in kept]
        for line in stale:
            await self.db.delete(line)
        await self.db.flush()

        self.logger.info(
            "reconcile.lines_replaced",
            order_id=str(order.order_id),
            prefix=prefix,
            lines=len(lines),
            removed=len(stale),
        )
        return [line.id for line in lines]

    async def refresh_order_lines(self, order: Order) -> list[str]:
        """Push order-level facts (group key, payment, charged shipping) down to existing lines."""
        lines = await self.order_lines(order)
        if not lines:
            return []
        now = datetime.utcnow()
        for line in lines:
            self._apply_group_key(line, order)
        self._allocate_order_shipping(order, lines)
        for line in lines:
            recompute(line, self.schedule)
            line.updated_at = now
        await self.db.flush()
        return [line.id for line in lines]

    async def recompute_lines(self) -> int:
        """Re-derive every line of the store from its own inputs."""
        result = await self.db.execute(select(SaleLine).where(SaleLine.store_id == self.store_id))
        count = 0
        for line in result.scalars():
            recompute(line, self.schedule)
            count += 1
        await self.db.flush()
        self.logger.info("reconcile.recompute_complete", lines=count)
        return count

    # ── Shipments ─────────────────────────────────────────────────────────

    async def _match_shipment(self, shipment: ShipmentFact, lines: list[SaleLine]) -> list[SaleLine]:
        if shipment.order_code:
            matches = [line for line in lines if order_code_from_sale_id(line.id) == shipment.order_code]
            if matches:
                return matches
        wanted = normalize_ref(shipment.transaction_ref)
        matches = [line for line in lines if normalize_ref(line.transaction_ref) == wanted]
        if matches:
            return matches
        prefix = f"zoho-{shipment.transaction_ref}-"
        return [line for line in lines if line.id.startswith(prefix)]

    async def apply_shipment(self, shipment: ShipmentFact) -> ReconcileResult:
        if not shipment.transaction_ref:
            return ReconcileResult(
                status=ReconcileStatus.FAILED,
                reason="transaction_ref_missing",
                errors=["transaction_ref_missing"],
                metadata={"event": shipment.label},
            )

        result = await self.db.execute(
            select(SaleLine).where(SaleLine.store_id == self.store_id).order_by(SaleLine.created_at, SaleLine.id)
        )
        all_lines = list(result.scalars())
        matches = await self._match_shipment(shipment, all_lines)
        if not matches:
            self.logger.info("reconcile.shipment_unmatched", transaction_ref=shipment.transaction_ref)
            return ReconcileResult(
                status=ReconcileStatus.FAILED,
                reason="order_not_found",
                errors=["order_not_found"],
                transaction_ref=shipment.transaction_ref,
                metadata={"event": shipment.label},
            )

        pivot = matches[0]
        group = sorted(
            (line for line in all_lines if same_order_group(line, pivot)),
            key=lambda line: (line.line_index, line.id),
        )
        is_france = all(self._is_french(line) for line in group)

        shares_ht = shares_ttc = None
        order_real_ht = order_real_ttc = None
        if shipment.shipping_cost_ttc is not None:
            order_real_ttc = round2(shipment.shipping_cost_ttc)
            order_real_ht = round2(order_real_ttc / (1 + self.shipment_vat)) if is_france else order_real_ttc
            weights = line_weights(group)
            shares_ht = allocate_by_weight(order_real_ht, weights)
            shares_ttc = allocate_by_weight(order_real_ttc, weights) if is_france else None

        now = datetime.utcnow()
        for index, line in enumerate(group):
            previous_tracking = [t for t in (line.tracking_numbers or []) if isinstance(t, str) and t.strip()]
            line.tracking_numbers = shipment.tracking_numbers or previous_tracking
            line.shipping_provider = shipment.carrier or line.shipping_provider
            line.shipping_status = shipment.effective_status or line.shipping_status
            line.shipping_event_at = shipment.occurred_at or now
            if shipment.shipping_cost_ttc is not None:
                line.shipping_cost_source = ShippingCostSource.ENVIA_WEBHOOK.value
            else:
                line.shipping_cost_source = line.shipping_cost_source or ShippingCostSource.MANUAL.value
            line.shipping_tracking_url = shipment.tracking_url or line.shipping_tracking_url
            line.shipping_label_url = shipment.label_url or line.shipping_label_url
            line.shipping_proof_url = shipment.proof_url or line.shipping_proof_url
            if shares_ht is not None:
                line.shipping_real_ht = shares_ht[index]
            if not is_france:
                line.shipping_real_ttc = None
            elif shares_ttc is not None:
                line.shipping_real_ttc = shares_ttc[index]
            recompute(line, self.schedule)
            line.updated_at = now

        if pivot.order_id is not None and order_real_ht is not None:
            order = await self.get_order(pivot.order_id)
            if order is not None:
                order.shipping_real_ht = order_real_ht
                order.shipping_real_ttc = order_real_ttc if is_france else None
                order.updated_at = now
        await self.db.flush()

        order_number = shipment.order_code or order_code_from_sale_id(pivot.id)
        self.logger.info(
            "reconcile.shipment_applied",
            transaction_ref=pivot.transaction_ref,
            order_number=order_number,
            lines=len(group),
            shipping_cost_ttc=str(shipment.shipping_cost_ttc) if shipment.shipping_cost_ttc is not None else None,
        )
        return ReconcileResult(
            status=ReconcileStatus.PROCESSED,
            order_id=str(pivot.order_id) if pivot.order_id else None,
            transaction_ref=pivot.transaction_ref,
            lines_affected=[line.id for line in group],
            metadata={
                "event": shipment.label,
                "order_number": order_number,
                "order_lines": len(group),
                "carrier": shipment.carrier,
                "status": shipment.status,
                "tracking_numbers": shipment.tracking_numbers,
                "shipping_cost_ttc": str(shipment.shipping_cost_ttc)
                if shipment.shipping_cost_ttc is not None
                else None,
                "tracking_url": shipment.tracking_url,
                "label_url": shipment.label_url,
                "proof_url": shipment.proof_url,
            },
        )
