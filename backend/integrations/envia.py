"""
Envia shipment webhooks.

Envia payloads are not stable in shape (different carriers, the dashboard
"Tester", batched deliveries), so every field is found by alias search
over the whole payload. A body may carry several shipments under
``shipments``, ``events``, ``data`` or ``items``; each one is a separate
ledger entry.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from engine.errors import PayloadError
from engine.extraction import (
    extract_order_code,
    find_first_by_aliases,
    find_url_by_parent_aliases,
    first_text,
    parse_number,
    parse_timestamp,
    tracking_numbers,
)
from engine.money import round2
from engine.types import IngestSource
from integrations.base import EventNormalizer, OrderFact, ShipmentFact, register_normalizer

TRANSACTION_REF_ALIASES = [
    "transaction_ref",
    "transaction_number",
    "reference_number",
    "reference",
    "order_reference",
    "order_number",
    "salesorder_number",
    "external_order_id",
    "external_reference",
    "client_reference",
    "imported_id",
    "order_id",
    "shipment_id",
    "shipment_number",
    "pedido",
    "numero_de_comande",
]
TRACKING_ALIASES = [
    "tracking_number",
    "tracking_numbers",
    "tracking",
    "tracking_no",
    "tracking_code",
    "carrier_tracking_number",
    "guide_number",
    "waybill",
    "awb",
]
CARRIER_ALIASES = [
    "carrier",
    "carrier_name",
    "carrier_code",
    "courier",
    "provider",
    "shipping_provider",
    "transport_service",
]
STATUS_ALIASES = ["status", "shipment_status", "tracking_status", "status_name", "state"]
COST_TTC_ALIASES = [
    "shipping_cost_ttc",
    "shipping_total_ttc",
    "cost_ttc",
    "total_cost_ttc",
    "total_ttc",
    "cost_total",
    "shipping_cost",
    "shipment_cost",
    "cout_total",
    "coût_total",
    "price_total",
]
OCCURRED_AT_ALIASES = ["occurred_at", "event_at", "status_date", "updated_at", "created_at", "shipped_at", "timestamp"]
EVENT_ID_ALIASES = ["event_id", "webhook_id"]
TRACKING_URL_ALIASES = [
    "tracking_url",
    "tracking_link",
    "tracking_page",
    "url_tracking",
    "tracking_public_url",
    "carrier_tracking_url",
]
LABEL_URL_ALIASES = [
    "label_url",
    "label_link",
    "etiquette_url",
    "shipping_label_url",
    "label_download_url",
    "shipping_label_download_url",
    "label_pdf_url",
    "etiquette_link",
]
PROOF_URL_ALIASES = [
    "proof_url",
    "proof_of_delivery_url",
    "pod_url",
    "delivery_proof_url",
    "delivery_receipt_url",
    "preuve_livraison_url",
    "justificatif_livraison_url",
]
TRACKING_URL_PARENTS = ["tracking", "tracking_info"]
LABEL_URL_PARENTS = ["label", "etiquette", "shipping_label", "label_document"]
PROOF_URL_PARENTS = ["proof", "proof_of_delivery", "delivery_proof", "pod", "preuve_livraison"]

BATCH_KEYS = ("shipments", "events", "data", "items")


def parse_payload_list(body: Any) -> list[Any]:
    """Shipment items in a webhook body; the body itself when it is not a batch."""
    if not isinstance(body, dict):
        return []
    for key in BATCH_KEYS:
        candidate = body.get(key)
        if isinstance(candidate, list):
            return list(candidate) if candidate else [body]
    return [body]


def parse_shipment(payload: Any) -> ShipmentFact:
    transaction_ref = first_text(find_first_by_aliases(payload, TRANSACTION_REF_ALIASES)) or ""
    numbers = tracking_numbers(find_first_by_aliases(payload, TRACKING_ALIASES))
    cost = parse_number(find_first_by_aliases(payload, COST_TTC_ALIASES))

    return ShipmentFact(
        transaction_ref=transaction_ref,
        order_code=extract_order_code(transaction_ref),
        tracking_numbers=numbers,
        carrier=first_text(find_first_by_aliases(payload, CARRIER_ALIASES)),
        status=first_text(find_first_by_aliases(payload, STATUS_ALIASES)),
        shipping_cost_ttc=round2(cost) if cost is not None else None,
        occurred_at=parse_timestamp(find_first_by_aliases(payload, OCCURRED_AT_ALIASES)),
        source_event_id=first_text(find_first_by_aliases(payload, EVENT_ID_ALIASES)),
        tracking_url=first_text(find_first_by_aliases(payload, TRACKING_URL_ALIASES))
        or find_url_by_parent_aliases(payload, TRACKING_URL_PARENTS),
        label_url=first_text(find_first_by_aliases(payload, LABEL_URL_ALIASES))
        or find_url_by_parent_aliases(payload, LABEL_URL_PARENTS),
        proof_url=first_text(find_first_by_aliases(payload, PROOF_URL_ALIASES))
        or find_url_by_parent_aliases(payload, PROOF_URL_PARENTS),
    )


@register_normalizer
class EnviaNormalizer(EventNormalizer):
    """Shipment item -> ShipmentFact; matching to sale lines happens in the reconciler."""

    @property
    def source(self) -> IngestSource:
        return IngestSource.ENVIA

    def split(self, payload: Any) -> list[Any]:
        items = parse_payload_list(payload)
        if not items:
            raise PayloadError("No shipment payload found")
        return items

    def event_id(self, payload: Any) -> str:
        event_id = first_text(find_first_by_aliases(payload, EVENT_ID_ALIASES))
        if event_id:
            return event_id
        # No id from Envia: the content itself is the key, so a replay is still a duplicate
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
        return f"sha1:{hashlib.sha1(canonical.encode()).hexdigest()}"

    def normalize(self, payload: Any) -> OrderFact:
        shipment = parse_shipment(payload)
        fact = OrderFact(
            source=self.source,
            source_event_id=self.event_id(payload),
            source_event_type="shipment_update",
            event_at=shipment.occurred_at,
            transaction_ref=shipment.transaction_ref or None,
            shipment=shipment,
            source_payload={
                "carrier": shipment.carrier,
                "status": shipment.status,
                "tracking_numbers": shipment.tracking_numbers,
                "shipping_cost_ttc": str(shipment.shipping_cost_ttc) if shipment.shipping_cost_ttc is not None else None,
            },
            raw_payload=payload,
        )

        self.logger.info(
            "envia.parsed",
            shipment_event=shipment.label,
            transaction_ref=shipment.transaction_ref,
            carrier=shipment.carrier,
        )
        return fact
