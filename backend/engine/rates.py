"""
Commission rate tables.

Tables are immutable configuration handed to the calculator, so a test or
a different jurisdiction can pass its own ``CommissionSchedule`` without
patching module state.

Sun.store brackets are [min, max) on the transaction value (goods HT +
shipping charged); the last tier of every table is open-ended.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from engine.types import Category, PaymentMethod


@dataclass(frozen=True)
class RateTier:
    minimum: Decimal
    maximum: Decimal | None  # None = open-ended
    card_rate: Decimal
    wire_rate: Decimal

    def contains(self, value: Decimal) -> bool:
        return value >= self.minimum and (self.maximum is None or value < self.maximum)

    def rate_for(self, payment_method: PaymentMethod | None) -> Decimal:
        return self.wire_rate if payment_method == PaymentMethod.WIRE else self.card_rate


@dataclass(frozen=True)
class TierTable:
    tiers: tuple[RateTier, ...]

    def __post_init__(self):
        if not self.tiers:
            raise ValueError("A tier table needs at least one tier")
        for previous, current in zip(self.tiers, self.tiers[1:]):
            if previous.maximum is None or previous.maximum != current.minimum:
                raise ValueError("Tiers must be contiguous and ordered by ascending minimum")
        if self.tiers[-1].maximum is not None:
            raise ValueError("The last tier must be open-ended")

    def pick(self, value: Decimal) -> RateTier:
        for tier in self.tiers:
            if tier.contains(value):
                return tier
        return self.tiers[-1]


def _table(rows: list[tuple[int, int | None, str, str]]) -> TierTable:
    return TierTable(
        tiers=tuple(
            RateTier(
                minimum=Decimal(minimum),
                maximum=Decimal(maximum) if maximum is not None else None,
                card_rate=Decimal(card),
                wire_rate=Decimal(wire),
            )
            for minimum, maximum, card, wire in rows
        )
    )


INVERTER_BATTERY_TIERS = _table(
    [
        (0, 5000, "0.0399", "0.0519"),
        (5000, 10000, "0.0365", "0.0474"),
        (10000, 25000, "0.0314", "0.0393"),
        (25000, 80000, "0.0261", "0.0326"),
        (80000, 150000, "0.0179", "0.0206"),
        (150000, None, "0.0103", "0.0118"),
    ]
)

SOLAR_PANEL_TIERS = _table(
    [
        (0, 5000, "0.0299", "0.0389"),
        (5000, 10000, "0.0276", "0.0359"),
        (10000, 25000, "0.0226", "0.0282"),
        (25000, 80000, "0.0181", "0.0226"),
        (80000, 150000, "0.0131", "0.0151"),
        (150000, None, "0.0084", "0.0097"),
    ]
)

ACCESSORY_TIERS = _table(
    [
        (0, 5000, "0.0488", "0.0634"),
        (5000, 10000, "0.0421", "0.0547"),
        (10000, 25000, "0.0363", "0.0454"),
        (25000, 80000, "0.0301", "0.0376"),
        (80000, 100000, "0.0206", "0.0237"),
        (100000, None, "0.0119", "0.0137"),
    ]
)


@dataclass(frozen=True)
class CommissionSchedule:
    """Every constant the commission calculation depends on."""

    tier_tables: dict[Category, TierTable] = field(
        default_factory=lambda: {
            Category.INVERTERS: INVERTER_BATTERY_TIERS,
            Category.BATTERIES: INVERTER_BATTERY_TIERS,
            Category.SOLAR_PANELS: SOLAR_PANEL_TIERS,
            Category.ACCESSORIES: ACCESSORY_TIERS,
        }
    )
    card_processor_fee: Decimal = Decimal("5.00")
    flat_rate: Decimal = Decimal("0.05")
    per_watt_rate: Decimal = Decimal("0.015")
    high_volume_per_watt_rate: Decimal = Decimal("0.01")
    high_volume_watt_threshold: Decimal = Decimal("1000000")

    def table_for(self, category: Category) -> TierTable:
        return self.tier_tables.get(category, self.tier_tables[Category.INVERTERS])


DEFAULT_SCHEDULE = CommissionSchedule()
