"""
Marketplace negotiation page scrapes.

The browser automation itself runs elsewhere; it posts its structured
result here:

    {"channel": "Sun.store", "negotiation_id": "wpT5sgv0",
     "url": "...", "product_refs": [...], "detected_amounts_eur": [...],
     "transaction_ref": "pi_...", "client_name": "...",
     "scraped_at": "2026-02-17T10:05:00Z"}

When the runner only sends ``body_text`` the same fields are extracted
from the page text here.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from urllib.parse import quote

from core.config import Settings
from engine.errors import PayloadError
from engine.extraction import (
    extract_amounts,
    extract_client_name,
    extract_scrape_product_refs,
    extract_transaction_ref,
    parse_number,
    parse_timestamp,
)
from engine.types import Channel, IngestSource, OrderStatus
from integrations.base import EventNormalizer, LineFact, OrderFact, register_normalizer

SCRAPED = "scraped"


def negotiation_url(channel: Channel, negotiation_id: str, settings: Settings) -> str:
    if channel == Channel.SOLARTRADERS:
        template = settings.solartraders_negotiation_url_template
    else:
        template = settings.sunstore_negotiation_url_template
    return template.replace("{id}", quote(negotiation_id, safe=""))


def scrape_event_id(channel: str, negotiation_id: str, scraped_at: str) -> str:
    return f"{channel}:{negotiation_id}:{scraped_at}"


def _channel(value: Any) -> Channel:
    try:
        return Channel(value)
    except ValueError as exc:
        raise PayloadError(f"Unknown scrape channel: {value!r}") from exc


@register_normalizer
class ScrapeNormalizer(EventNormalizer):
    """Negotiation page -> enriched order, or needs_completion when no refs were found."""

    @property
    def source(self) -> IngestSource:
        return IngestSource.SCRAPE

    def event_id(self, payload: Any) -> str:
        if not isinstance(payload, dict):
            raise PayloadError("Scrape payload must be a JSON object")
        channel = payload.get("channel") or Channel.SUN_STORE.value
        negotiation_id = str(payload.get("negotiation_id") or "").strip()
        scraped_at = str(payload.get("scraped_at") or "").strip()
        if not negotiation_id or not scraped_at:
            raise PayloadError("negotiation_id and scraped_at are required")
        return scrape_event_id(_channel(channel).value, negotiation_id, scraped_at)

    def normalize(self, payload: Any) -> OrderFact:
        event_id = self.event_id(payload)
        channel = _channel(payload.get("channel") or Channel.SUN_STORE.value)
        negotiation_id = str(payload["negotiation_id"]).strip()
        body_text = payload.get("body_text") or ""

        product_refs = payload.get("product_refs")
        if not isinstance(product_refs, list):
            product_refs = extract_scrape_product_refs(body_text)
        product_refs = [str(ref).strip() for ref in product_refs if str(ref).strip()]

        amounts = payload.get("detected_amounts_eur")
        if isinstance(amounts, list):
            amounts = [a for a in (parse_number(raw) for raw in amounts) if a is not None]
        else:
            amounts = extract_amounts(body_text)

        scraped_at = parse_timestamp(payload.get("scraped_at")) or datetime.utcnow()
        url = payload.get("url") or negotiation_url(channel, negotiation_id, self.settings)
        has_refs = bool(product_refs)

        fact = OrderFact(
            source=self.source,
            source_event_id=event_id,
            source_event_type="negotiation_scrape",
            channel=channel,
            external_order_id=negotiation_id,
            event_at=scraped_at,
            transaction_ref=payload.get("transaction_ref") or extract_transaction_ref(body_text),
            customer_name=payload.get("client_name") or extract_client_name(body_text),
            product_refs=product_refs,
            target_status=OrderStatus.ENRICHED if has_refs else OrderStatus.NEEDS_COMPLETION,
            source_status=SCRAPED,
            source_payload={
                "url": url,
                "product_refs": product_refs,
                "detected_amounts_eur": [str(a) for a in amounts],
                "screenshot_path": payload.get("screenshot_path"),
                "scraped_at": scraped_at.isoformat(),
            },
            raw_payload=payload,
        )
        fact.lines = [
            LineFact(line_id=str(index), product_ref=ref, quantity=Decimal("1"))
            for index, ref in enumerate(product_refs, start=1)
        ]

        self.logger.info(
            "scrape.parsed",
            channel=channel.value,
            negotiation_id=negotiation_id,
            product_refs=len(product_refs),
        )
        return fact
