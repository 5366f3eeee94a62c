"""
Stripe webhook events -> payment enrichment facts.

Signature verification happens in the HTTP layer before anything here
runs. Amounts arrive in minor units (cents) and are converted to Decimal
euros; a balance transaction, when expanded, gives the exact net.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from engine.errors import PayloadError
from engine.money import round2
from engine.types import Channel, IngestSource, OrderStatus, PaymentMethod
from engine.extraction import parse_timestamp
from integrations.base import EventNormalizer, OrderFact, register_normalizer

STRIPE_ENRICHED = "stripe_enriched"

# Only these event types create or enrich an order
SUCCEEDED_EVENT_TYPES = frozenset(
    {
        "payment_intent.succeeded",
        "charge.succeeded",
        "checkout.session.completed",
        "checkout.session.async_payment_succeeded",
    }
)


def minor_to_eur(value: Any) -> Decimal | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return round2(Decimal(str(value)) / 100)


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _country(*candidates: Any) -> str | None:
    for candidate in candidates:
        if candidate is None:
            continue
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
        return None
    return None


def _nested(obj: dict, *path: str) -> Any:
    current: Any = obj
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def payment_ids(obj: dict) -> tuple[str | None, str | None, str | None]:
    """(payment intent, charge, checkout session) ids found on a Stripe object."""
    object_id = obj.get("id") if isinstance(obj.get("id"), str) else ""
    payment_intent = obj.get("payment_intent")
    if isinstance(payment_intent, str):
        payment_intent_id = payment_intent
    elif object_id.startswith("pi_"):
        payment_intent_id = object_id
    elif isinstance(payment_intent, dict) and isinstance(payment_intent.get("id"), str):
        payment_intent_id = payment_intent["id"]
    else:
        payment_intent_id = None
    charge_id = object_id if object_id.startswith("ch_") else None
    session_id = object_id if object_id.startswith("cs_") else None
    return payment_intent_id, charge_id, session_id


@register_normalizer
class StripeNormalizer(EventNormalizer):
    """Stripe event envelope -> enrichment of a Sun.store order."""

    @property
    def source(self) -> IngestSource:
        return IngestSource.STRIPE

    def event_id(self, payload: Any) -> str:
        event_id = payload.get("id") if isinstance(payload, dict) else None
        if not isinstance(event_id, str) or not event_id:
            raise PayloadError("Stripe event id is required")
        return event_id

    def normalize(self, payload: Any) -> OrderFact:
        event_id = self.event_id(payload)
        event_type = payload.get("type")
        obj = _nested(payload, "data", "object")
        if not isinstance(event_type, str) or not event_type or not isinstance(obj, dict):
            raise PayloadError("Invalid Stripe event payload")

        if event_type.startswith("payout."):
            return self._payout_fact(payload, event_id, event_type, obj)
        fact = self._payment_fact(payload, event_id, event_type, obj)
        if event_type not in SUCCEEDED_EVENT_TYPES:
            fact.applies_to_order = False
            fact.ignore_reason = f"event_type_not_applied:{event_type}"
        return fact

    def _payment_fact(self, event: dict, event_id: str, event_type: str, obj: dict) -> OrderFact:
        metadata = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}
        event_at = parse_timestamp(event.get("created")) or datetime.utcnow()

        payment_intent_id, charge_id, session_id = payment_ids(obj)
        transaction_ref = payment_intent_id or _text(metadata.get("transaction_ref")) or charge_id or session_id
        negotiation_id = (
            _text(metadata.get("negotiation_id"))
            or _text(metadata.get("external_order_id"))
            or _text(metadata.get("order_ref"))
        )
        external_order_id = negotiation_id or transaction_ref or f"stripe-{event_id}"

        amount_received = None
        for key in ("amount_received", "amount_total", "amount"):
            amount_received = minor_to_eur(obj.get(key))
            if amount_received is not None:
                break

        shipping = minor_to_eur(_nested(obj, "shipping_cost", "amount_total"))
        if shipping is None:
            shipping = minor_to_eur(_nested(obj, "total_details", "amount_shipping"))

        balance_tx = obj.get("balance_transaction") if isinstance(obj.get("balance_transaction"), dict) else {}
        fees_platform = minor_to_eur(obj.get("application_fee_amount"))
        fees_processor = minor_to_eur(balance_tx.get("fee"))
        net_received = minor_to_eur(balance_tx.get("net"))
        if net_received is None and amount_received is not None:
            net_received = round2(amount_received - (fees_platform or 0) - (fees_processor or 0))

        client_name = None
        for candidate in (
            _nested(obj, "customer_details", "name"),
            _nested(obj, "billing_details", "name"),
            obj.get("customer_email"),
            metadata.get("customer_name"),
        ):
            if candidate is not None:
                client_name = candidate if isinstance(candidate, str) else None
                break

        currency = _text(obj.get("currency")) or _text(metadata.get("currency")) or "EUR"

        return OrderFact(
            source=self.source,
            source_event_id=event_id,
            source_event_type=event_type,
            channel=Channel.SUN_STORE,
            external_order_id=external_order_id,
            order_date=event_at.date(),
            event_at=event_at,
            transaction_ref=transaction_ref,
            customer_name=client_name,
            customer_country=_country(
                _nested(obj, "customer_details", "address", "country"),
                _nested(obj, "billing_details", "address", "country"),
                metadata.get("customer_country"),
            ),
            payment_method=PaymentMethod.STRIPE,
            currency=currency.upper(),
            shipping_charged_ht=shipping,
            fees_platform=fees_platform,
            fees_processor=fees_processor,
            net_received=net_received,
            target_status=OrderStatus.ENRICHED,
            source_status=STRIPE_ENRICHED,
            source_payload={
                "stripe_type": event_type,
                "negotiation_id": negotiation_id,
                "payment_intent_id": payment_intent_id,
                "charge_id": charge_id,
                "checkout_session_id": session_id,
                "amount_received": str(amount_received) if amount_received is not None else None,
                "currency": currency.upper(),
                "raw_metadata": metadata,
            },
            raw_payload=event,
        )

    def _payout_fact(self, event: dict, event_id: str, event_type: str, obj: dict) -> OrderFact:
        event_at = parse_timestamp(event.get("created")) or datetime.utcnow()
        payout_id = _text(obj.get("id")) or f"payout-{event_id}"
        arrival = parse_timestamp(obj.get("arrival_date")) if isinstance(obj.get("arrival_date"), int) else None
        amount = minor_to_eur(obj.get("amount"))
        currency = (_text(obj.get("currency")) or "EUR").upper()

        return OrderFact(
            source=self.source,
            source_event_id=event_id,
            source_event_type=event_type,
            channel=Channel.SUN_STORE,
            external_order_id=payout_id,
            order_date=event_at.date(),
            event_at=event_at,
            transaction_ref=payout_id,
            payment_method=PaymentMethod.STRIPE,
            currency=currency,
            applies_to_order=False,
            ignore_reason="payout_event",
            source_payload={
                "stripe_type": event_type,
                "payout_id": payout_id,
                "amount": str(amount) if amount is not None else None,
                "currency": currency,
                "status": _text(obj.get("status")),
                "arrival_date": arrival.date().isoformat() if arrival else None,
            },
            raw_payload=event,
        )
