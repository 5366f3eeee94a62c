"""
Commission / Margin Calculator.

Pure mapping from one sale line's inputs to its derived money fields:

    sell_total_ht      = round2(quantity × unit sell price HT)
    transaction_value  = round2(sell_total_ht + shipping charged)
    commission, fee    = channel schedule (see ``compute_commission``)
    net_received       = round2(transaction_value − commission − fee)
    total_cost         = round2(quantity × unit cost + real shipping)
    gross_margin       = round2(transaction_value − total_cost)
    net_margin         = round2(net_received − total_cost)
    net_margin_pct     = round2(net_margin / transaction_value × 100), 0 if tv ≤ 0

Validation is the caller's job (``validate_sale_inputs``); the calculator
itself treats a missing power rating as zero watts.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any

from engine.errors import SaleValidationError
from engine.money import ZERO, round2, round_up2, to_decimal
from engine.rates import DEFAULT_SCHEDULE, CommissionSchedule
from engine.types import Category, Channel, PaymentMethod


@dataclass(frozen=True)
class SaleInputs:
    quantity: Decimal
    sell_price_unit_ht: Decimal
    buy_price_unit: Decimal
    shipping_charged: Decimal
    shipping_real: Decimal
    channel: Channel
    category: Category
    payment_method: PaymentMethod
    power_wp: Decimal | None = None

    @classmethod
    def of(cls, **values: Any) -> "SaleInputs":
        """Build from loosely-typed values (floats, strings, enum values)."""
        power = values.get("power_wp")
        return cls(
            quantity=to_decimal(values.get("quantity")),
            sell_price_unit_ht=to_decimal(values.get("sell_price_unit_ht")),
            buy_price_unit=to_decimal(values.get("buy_price_unit")),
            shipping_charged=to_decimal(values.get("shipping_charged")),
            shipping_real=to_decimal(values.get("shipping_real")),
            channel=Channel(values.get("channel") or Channel.OTHER),
            category=Category(values.get("category") or Category.ACCESSORIES),
            payment_method=PaymentMethod(values.get("payment_method") or PaymentMethod.WIRE),
            power_wp=to_decimal(power) if power is not None else None,
        )


@dataclass(frozen=True)
class Commission:
    rate_display: str
    amount: Decimal
    payment_fee: Decimal


@dataclass(frozen=True)
class SaleComputed:
    sell_total_ht: Decimal
    transaction_value: Decimal
    commission_rate_display: str
    commission_eur: Decimal
    payment_fee: Decimal
    net_received: Decimal
    total_cost: Decimal
    gross_margin: Decimal
    net_margin: Decimal
    net_margin_pct: Decimal

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def format_rate(rate: Decimal) -> str:
    """``Decimal("0.0399")`` -> ``"3.99%"``; whole percentages drop the decimals."""
    percent = round2(rate * 100).normalize()
    return f"{percent:f}%"


def compute_commission(
    channel: Channel,
    category: Category,
    payment_method: PaymentMethod,
    transaction_value: Any,
    power_wp: Any = None,
    schedule: CommissionSchedule = DEFAULT_SCHEDULE,
) -> Commission:
    value = to_decimal(transaction_value)

    if channel == Channel.SUN_STORE:
        tier = schedule.table_for(category).pick(value)
        rate = tier.rate_for(payment_method)
        raw = value * rate
        if payment_method == PaymentMethod.STRIPE:
            return Commission(format_rate(rate), round_up2(raw), round2(schedule.card_processor_fee))
        return Commission(format_rate(rate), round2(raw), round2(ZERO))

    if channel == Channel.SOLARTRADERS:
        if category != Category.SOLAR_PANELS:
            return Commission(format_rate(schedule.flat_rate), round2(value * schedule.flat_rate), round2(ZERO))
        watts = to_decimal(power_wp)
        if watts >= schedule.high_volume_watt_threshold:
            per_watt = schedule.high_volume_per_watt_rate
        else:
            per_watt = schedule.per_watt_rate
        display = f"{(per_watt * 100).normalize():f} cent/Wp"
        return Commission(display, round2(watts * per_watt), round2(ZERO))

    return Commission("0%", round2(ZERO), round2(ZERO))


def compute_sale(inputs: SaleInputs, schedule: CommissionSchedule = DEFAULT_SCHEDULE) -> SaleComputed:
    sell_total = round2(inputs.quantity * inputs.sell_price_unit_ht)
    transaction_value = round2(sell_total + inputs.shipping_charged)
    commission = compute_commission(
        inputs.channel,
        inputs.category,
        inputs.payment_method,
        transaction_value,
        inputs.power_wp,
        schedule,
    )
    net_received = round2(transaction_value - commission.amount - commission.payment_fee)
    total_cost = round2(inputs.quantity * inputs.buy_price_unit + inputs.shipping_real)
    gross_margin = round2(transaction_value - total_cost)
    net_margin = round2(net_received - total_cost)
    net_margin_pct = ZERO if transaction_value <= 0 else net_margin / transaction_value * 100

    return SaleComputed(
        sell_total_ht=sell_total,
        transaction_value=transaction_value,
        commission_rate_display=commission.rate_display,
        commission_eur=commission.amount,
        payment_fee=commission.payment_fee,
        net_received=net_received,
        total_cost=total_cost,
        gross_margin=gross_margin,
        net_margin=net_margin,
        net_margin_pct=round2(net_margin_pct),
    )


def line_inputs(line: Any) -> SaleInputs:
    """SaleInputs from a persisted sale line (ORM row or any object with the same attributes)."""
    return SaleInputs.of(
        quantity=line.quantity,
        sell_price_unit_ht=line.sell_price_unit_ht,
        buy_price_unit=line.buy_price_unit,
        shipping_charged=line.shipping_charged_ht,
        shipping_real=line.shipping_real_ht,
        channel=line.channel,
        category=line.category,
        payment_method=line.payment_method,
        power_wp=line.power_wp,
    )


def recompute(line: Any, schedule: CommissionSchedule = DEFAULT_SCHEDULE) -> SaleComputed:
    """Re-derive and write back every derived field of ``line``."""
    computed = compute_sale(line_inputs(line), schedule)
    for name, value in computed.as_dict().items():
        setattr(line, name, value)
    return computed


def requires_power_rating(channel: Channel, category: Category) -> bool:
    return channel == Channel.SOLARTRADERS and category == Category.SOLAR_PANELS


def validate_sale_inputs(inputs: SaleInputs) -> None:
    """Reject inputs the calculator must never see. Raises SaleValidationError."""
    errors = []
    if inputs.quantity <= 0:
        errors.append("quantity must be positive")
    for name in ("sell_price_unit_ht", "buy_price_unit", "shipping_charged", "shipping_real"):
        if getattr(inputs, name) < 0:
            errors.append(f"{name} must not be negative")
    if requires_power_rating(inputs.channel, inputs.category):
        if inputs.power_wp is None or inputs.power_wp <= 0:
            errors.append("power_wp is required for Solartraders solar panels")
    if errors:
        raise SaleValidationError(errors)
