"""
Event Normalizer — Abstract Base Class

Every inbound feed (platform emails, Stripe, marketplace scrapes, Zoho
Books, Envia) implements this interface so the ingest pipeline and the
reconciler never look at a raw payload.

A normalizer is pure: it maps one raw payload to one ``OrderFact`` and
names the ledger key for it. Database reads, catalog lookups and order
matching happen in the reconciler; anything a normalizer needs from the
outside (settings, a catalog snapshot) is handed to its constructor.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog

from core.config import Settings, get_settings
from engine.catalog import CatalogIndex
from engine.types import Category, Channel, IngestSource, OrderStatus, PaymentMethod, ShippingCostSource

logger = structlog.get_logger()


# ── Result status ─────────────────────────────────────────────────────────


class ReconcileStatus(str, Enum):
    """Outcome of one ingested event."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"  # ledger key already seen, nothing mutated
    IGNORED = "ignored"  # valid event that carries nothing to apply
    FAILED = "failed"


# ── Normalized facts ──────────────────────────────────────────────────────


@dataclass
class LineFact:
    """One product line as a source reports it. None means "not reported"."""

    line_id: str
    product_ref: str
    quantity: Decimal = Decimal("1")
    product_label: str | None = None
    sell_price_unit_ht: Decimal | None = None
    sell_price_unit_ttc: Decimal | None = None
    buy_price_unit: Decimal | None = None
    category: Category | None = None
    power_wp: Decimal | None = None
    shipping_charged_ht: Decimal | None = None
    shipping_charged_ttc: Decimal | None = None
    shipping_real_ht: Decimal | None = None
    shipping_real_ttc: Decimal | None = None
    shipping_cost_source: ShippingCostSource | None = None
    invoice_url: str | None = None
    amount: Decimal | None = None  # line total HT after discount


@dataclass
class ShipmentFact:
    """Carrier update for an already-known order."""

    transaction_ref: str = ""
    order_code: str | None = None
    tracking_numbers: list[str] = field(default_factory=list)
    carrier: str | None = None
    status: str | None = None
    shipping_cost_ttc: Decimal | None = None
    occurred_at: datetime | None = None
    source_event_id: str | None = None
    tracking_url: str | None = None
    label_url: str | None = None
    proof_url: str | None = None

    @property
    def label(self) -> str:
        return self.source_event_id or (self.tracking_numbers[0] if self.tracking_numbers else "unknown")

    @property
    def effective_status(self) -> str | None:
        # A proof-of-delivery document means delivered, whatever the status text says
        return "delivered" if self.proof_url else self.status


@dataclass
class OrderFact:
    """Source-independent view of one inbound event."""

    source: IngestSource
    source_event_id: str
    source_event_type: str | None = None
    channel: Channel | None = None
    external_order_id: str | None = None
    order_date: date | None = None
    event_at: datetime | None = None
    transaction_ref: str | None = None
    customer_name: str | None = None
    customer_country: str | None = None
    payment_method: PaymentMethod | None = None
    currency: str | None = None
    shipping_charged_ht: Decimal | None = None
    shipping_charged_ttc: Decimal | None = None
    shipping_real_ht: Decimal | None = None
    shipping_real_ttc: Decimal | None = None
    fees_platform: Decimal | None = None
    fees_processor: Decimal | None = None
    net_received: Decimal | None = None
    product_refs: list[str] = field(default_factory=list)
    lines: list[LineFact] = field(default_factory=list)
    target_status: OrderStatus | None = None
    source_status: str | None = None
    # Lines whose id starts with this prefix belong to this source and are replaced wholesale
    line_prefix: str | None = None
    applies_to_order: bool = True
    ignore_reason: str | None = None
    errors: list[str] = field(default_factory=list)
    source_payload: dict[str, Any] = field(default_factory=dict)
    raw_payload: Any = None
    shipment: ShipmentFact | None = None

    @property
    def line_amounts(self) -> list[Decimal]:
        return [line.amount or Decimal("0") for line in self.lines]

    def summary(self) -> dict[str, Any]:
        """JSON-safe snapshot for ledger rows and sync logs."""
        data = asdict(self)
        data.pop("raw_payload", None)
        return _jsonable(data)


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


# ── Reconcile result container ────────────────────────────────────────────


@dataclass
class ReconcileResult:
    """Standardized return from every ingest and reconcile call."""

    status: ReconcileStatus
    source: IngestSource | None = None
    source_event_id: str | None = None
    order_id: str | None = None
    external_order_id: str | None = None
    transaction_ref: str | None = None
    lines_affected: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None

    def complete(self) -> "ReconcileResult":
        self.completed_at = datetime.utcnow()
        return self

    def as_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))


# ── Abstract normalizer ───────────────────────────────────────────────────


class EventNormalizer(ABC):
    """
    Base class for all inbound feeds.

    Lifecycle, per raw payload:
        1. split(payload)     — one payload may batch several events
        2. event_id(item)     — ledger key; redelivery yields the same key
        3. normalize(item)    — OrderFact, never touches the database
    """

    def __init__(
        self,
        store_id: str | None = None,
        settings: Settings | None = None,
        catalog: CatalogIndex | None = None,
    ):
        self.settings = settings or get_settings()
        self.store_id = store_id or self.settings.store_id
        self.catalog = catalog
        self.logger = logger.bind(source=self.source.value, store_id=self.store_id)

    @property
    @abstractmethod
    def source(self) -> IngestSource:
        """Return the ingest source this normalizer handles."""
        ...

    @abstractmethod
    def event_id(self, payload: Any) -> str:
        """Stable ledger key for one event. Raises PayloadError when none can be derived."""
        ...

    @abstractmethod
    def normalize(self, payload: Any) -> OrderFact:
        """Map one event to an OrderFact."""
        ...

    def split(self, payload: Any) -> list[Any]:
        return [payload]


# ── Normalizer registry ───────────────────────────────────────────────────

_NORMALIZER_REGISTRY: dict[IngestSource, type[EventNormalizer]] = {}


def register_normalizer(normalizer_cls: type[EventNormalizer]):
    """Decorator: register a normalizer class for its ingest source."""
    _NORMALIZER_REGISTRY[normalizer_cls.source.fget(None)] = normalizer_cls  # type: ignore
    return normalizer_cls


def get_normalizer(
    source: IngestSource,
    store_id: str | None = None,
    settings: Settings | None = None,
    catalog: CatalogIndex | None = None,
) -> EventNormalizer:
    """Factory: return the right normalizer instance for the given source."""
    normalizer_cls = _NORMALIZER_REGISTRY.get(IngestSource(source))
    if normalizer_cls is None:
        raise ValueError(f"No normalizer registered for ingest source: {IngestSource(source).value}")
    return normalizer_cls(store_id=store_id, settings=settings, catalog=catalog)
