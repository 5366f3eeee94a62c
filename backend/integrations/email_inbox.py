"""
Platform notification emails (Sun.store / Solartraders).

The mailbox poller pushes one JSON object per message:

    {"message_id": "<abc@sun.store>", "from_email": "...", "subject": "...",
     "text": "...", "received_at": "2026-02-17T10:00:00Z", "uid": 42}

An email only ever creates a provisional order: it knows the channel, the
negotiation id and the product references, never prices.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from engine.errors import PayloadError
from engine.extraction import normalize_message_id, parse_platform_email, parse_timestamp
from engine.types import IngestSource, OrderStatus
from integrations.base import EventNormalizer, LineFact, OrderFact, register_normalizer

EMAIL_DETECTED = "email_detected"


@register_normalizer
class EmailNormalizer(EventNormalizer):
    """Platform email -> provisional order with one unit line per product ref."""

    @property
    def source(self) -> IngestSource:
        return IngestSource.EMAIL

    def event_id(self, payload: Any) -> str:
        if not isinstance(payload, dict):
            raise PayloadError("Email payload must be a JSON object")
        raw_id = str(payload.get("message_id") or "")
        uid = payload.get("uid")
        if not raw_id.strip() and uid is None:
            raise PayloadError("message_id is required")
        return normalize_message_id(raw_id, uid)

    def normalize(self, payload: Any) -> OrderFact:
        message_id = self.event_id(payload)
        parsed = parse_platform_email(
            from_email=payload.get("from_email") or "",
            subject=payload.get("subject") or "",
            text=payload.get("text") or "",
        )
        received_at = parse_timestamp(payload.get("received_at")) or datetime.utcnow()

        fact = OrderFact(
            source=self.source,
            source_event_id=message_id,
            source_event_type="platform_email",
            channel=parsed.channel,
            external_order_id=parsed.negotiation_id,
            order_date=received_at.date(),
            event_at=received_at,
            product_refs=parsed.product_refs,
            target_status=OrderStatus.PROVISIONAL,
            source_status=EMAIL_DETECTED,
            errors=list(parsed.errors),
            source_payload={
                "last_message_id": message_id,
                "from_email": payload.get("from_email"),
                "ready_in_days": parsed.ready_in_days,
                "parse_confidence": parsed.confidence,
            },
            raw_payload=payload,
        )
        fact.lines = [
            LineFact(line_id=str(index), product_ref=ref, quantity=Decimal("1"))
            for index, ref in enumerate(parsed.product_refs, start=1)
        ]
        if not parsed.channel or not parsed.negotiation_id:
            fact.applies_to_order = False
            fact.ignore_reason = ",".join(parsed.errors)

        self.logger.info(
            "email.parsed",
            message_id=message_id,
            channel=parsed.channel.value if parsed.channel else None,
            negotiation_id=parsed.negotiation_id,
            confidence=parsed.confidence,
        )
        return fact
