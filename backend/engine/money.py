"""
Money & Rounding — fixed-point currency helpers.

All amounts are Decimal. Floats are converted through ``str`` so that
``0.1`` becomes ``Decimal("0.1")`` rather than its binary expansion.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_decimal(value: Any) -> Decimal:
    """Coerce a number-like value to Decimal; None and non-finite become 0."""
    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError):
            return ZERO
    if not result.is_finite():
        return ZERO
    return result


def round2(value: Any) -> Decimal:
    """Round half-up to cents."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def round_up2(value: Any) -> Decimal:
    """Ceiling to the next cent for positive values, ``round2`` otherwise."""
    amount = to_decimal(value)
    if amount <= 0:
        return round2(amount)
    return amount.quantize(CENT, rounding=ROUND_CEILING)


def to_cents(value: Any) -> int:
    return int(round2(value) * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def allocate_by_weight(total: Any, weights: Sequence[Any]) -> list[Decimal]:
    """
    Split ``total`` across ``len(weights)`` parts proportionally to weight.

    Works in integer cents: every part but the last gets
    ``floor(total_cents * w / sum_w)`` and the last part takes the
    remainder, so the parts always sum to ``round2(total)`` exactly.
    The rounding slack always lands on the last part in iteration order;
    downstream reconciliation relies on that tie-break.

    Non-finite or non-positive weights count as zero. When every weight is
    zero the split falls back to equal weights.
    """
    if not weights:
        return []
    total_cents = to_cents(total)
    if total_cents == 0:
        return [ZERO.quantize(CENT) for _ in weights]

    safe = [w if w > 0 else ZERO for w in (to_decimal(raw) for raw in weights)]
    weight_sum = sum(safe, ZERO)
    if weight_sum == 0:
        safe = [Decimal(1)] * len(weights)
        weight_sum = Decimal(len(weights))

    shares: list[int] = []
    for weight in safe[:-1]:
        share = (Decimal(total_cents) * weight / weight_sum).to_integral_value(rounding=ROUND_FLOOR)
        shares.append(int(share))
    shares.append(total_cents - sum(shares))
    return [from_cents(cents) for cents in shares]


def line_weights(lines: Iterable[Any]) -> list[Decimal]:
    """Allocation weight per line: its sell total if positive, else its quantity."""
    weights = []
    for line in lines:
        sell_total = to_decimal(getattr(line, "sell_total_ht", None))
        weights.append(sell_total if sell_total > 0 else to_decimal(getattr(line, "quantity", None)))
    return weights
