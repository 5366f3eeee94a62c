"""
Inbound event normalizers.

One normalizer per feed, all mapping raw payloads to ``OrderFact``:
  - Platform notification emails    (email)
  - Stripe webhook events           (stripe)
  - Marketplace negotiation scrapes (scrape)
  - Zoho Books sales orders         (zoho)
  - Envia shipment webhooks         (envia)

Usage:
    from integrations import get_normalizer
    from engine.types import IngestSource

    normalizer = get_normalizer(IngestSource.STRIPE, store_id="store-1")
    fact = normalizer.normalize(event)
"""

from integrations.base import (
    EventNormalizer,
    LineFact,
    OrderFact,
    ReconcileResult,
    ReconcileStatus,
    ShipmentFact,
    get_normalizer,
    register_normalizer,
)
from integrations.email_inbox import EmailNormalizer
from integrations.envia import EnviaNormalizer
from integrations.scrape import ScrapeNormalizer
from integrations.stripe_events import StripeNormalizer
from integrations.zoho_books import ZohoBooksNormalizer

__all__ = [
    "EventNormalizer",
    "LineFact",
    "OrderFact",
    "ReconcileResult",
    "ReconcileStatus",
    "ShipmentFact",
    "get_normalizer",
    "register_normalizer",
    "EmailNormalizer",
    "EnviaNormalizer",
    "ScrapeNormalizer",
    "StripeNormalizer",
    "ZohoBooksNormalizer",
]
