"""
Slack notifications for newly ingested Stripe payments.

Posting is best-effort: the caller logs and swallows delivery failures so a
Slack outage never fails a webhook.
"""

from __future__ import annotations

from decimal import Decimal

import httpx
import structlog
from tenacity import retry, stop_after_attempt, wait_exponential

from engine.extraction import parse_number
from integrations.base import OrderFact
from integrations.stripe_events import SUCCEEDED_EVENT_TYPES

logger = structlog.get_logger()


def money(value: Decimal | None, currency: str = "EUR") -> str | None:
    if value is None:
        return None
    return f"{value:.2f} {currency}"


def should_notify(fact: OrderFact) -> bool:
    """Only successful payment events with a real amount ("transactions du jour")."""
    if fact.source_event_type not in SUCCEEDED_EVENT_TYPES:
        return False
    gross = parse_number(fact.source_payload.get("amount_received"))
    net = fact.net_received
    return (net is not None and net > 0) or (gross is not None and gross > 0)


def format_payment_message(fact: OrderFact, order_id: str | None = None) -> str:
    currency = fact.currency or "EUR"
    negotiation_id = fact.source_payload.get("negotiation_id")
    order_ref = f"#{negotiation_id}" if negotiation_id else fact.external_order_id
    amount = parse_number(fact.source_payload.get("amount_received"))

    lines = [
        f"*{fact.channel.value if fact.channel else 'Stripe'}* transaction recue",
        f"Order: `{order_ref}`",
        f"PI/TX: `{fact.transaction_ref}`" if fact.transaction_ref else None,
        f"Client: *{fact.customer_name}*" if fact.customer_name else None,
        f"Pays: *{fact.customer_country}*" if fact.customer_country else None,
        f"Montant: *{money(amount, currency)}*" if amount else None,
        f"Fees platform: *{money(fact.fees_platform, currency)}*" if fact.fees_platform else None,
        f"Fees Stripe: *{money(fact.fees_processor, currency)}*" if fact.fees_processor else None,
        f"Net: *{money(fact.net_received, currency)}*" if fact.net_received else None,
        f"Order id: `{order_id}`" if order_id else None,
    ]
    return "\n".join(line for line in lines if line)


class SlackNotifier:
    """Incoming-webhook client."""

    def __init__(self, webhook_url: str, username: str = "SunStore Stripe Monitor"):
        self.webhook_url = (webhook_url or "").strip()
        self.username = username

    @property
    def configured(self) -> bool:
        return bool(self.webhook_url)

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    async def post(self, text: str) -> None:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(
                self.webhook_url,
                json={"username": self.username, "text": text},
            )
            response.raise_for_status()
        logger.info("slack.posted", chars=len(text))
