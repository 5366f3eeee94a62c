"""
Domain enums shared by the calculator, normalizers and the reconciler.
"""

from enum import Enum


class Channel(str, Enum):
    """Sales path an order originated from; selects the commission schedule."""

    SUN_STORE = "Sun.store"  # marketplace with tiered card/wire commission
    SOLARTRADERS = "Solartraders"  # marketplace with flat / per-watt commission
    DIRECT = "Direct"
    OTHER = "Other"


class PaymentMethod(str, Enum):
    STRIPE = "Stripe"  # card processor
    WIRE = "Wire"
    PAYPAL = "PayPal"
    CASH = "Cash"


class Category(str, Enum):
    INVERTERS = "Inverters"
    SOLAR_PANELS = "Solar Panels"
    BATTERIES = "Batteries"
    ACCESSORIES = "Accessories"


class OrderStatus(str, Enum):
    """Per-order lifecycle. Only the validation action reaches VALIDATED."""

    PROVISIONAL = "provisional"
    ENRICHED = "enriched"
    NEEDS_COMPLETION = "needs_completion"
    VALIDATED = "validated"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    OrderStatus.PROVISIONAL: 0,
    OrderStatus.ENRICHED: 1,
    OrderStatus.NEEDS_COMPLETION: 2,
    OrderStatus.VALIDATED: 3,
}


class IngestSource(str, Enum):
    EMAIL = "email"
    STRIPE = "stripe"
    SCRAPE = "scrape"
    ZOHO = "zoho"
    ENVIA = "envia"
    MANUAL = "manual"


class IngestStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"
    FAILED = "failed"


class ShippingCostSource(str, Enum):
    MANUAL = "manual"
    ESTIMATED_FROM_CHARGED = "estimated_from_charged"
    ENVIA_WEBHOOK = "envia_webhook"


def advance_status(current: OrderStatus | None, proposed: OrderStatus | None) -> OrderStatus:
    """
    Monotonic status merge: never downgrades, and never promotes to
    VALIDATED (that transition belongs to the explicit validation action).
    """
    if current is None:
        current = OrderStatus.PROVISIONAL
    if proposed is None or proposed == OrderStatus.VALIDATED:
        return current
    return proposed if proposed.rank > current.rank else current
