"""
Catalog matching — resolve an accounting SKU / product name to a catalog ref.

Implemented as an ordered chain of pure strategies. Each strategy either
returns a confident match or None; the first hit wins:

    alias → exact → stripped vendor prefix → "(Model: X)" in name
          → last "/" segment → substring → multi-segment

Example: ``HUA/SUN2000-8K-LC0`` resolves through the stripped-prefix
strategy to the catalog ref ``SUN2000-8K-LC0``.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from engine.money import to_decimal

LOW_STOCK_THRESHOLD = 5

VENDOR_PREFIX_REGEX = re.compile(r"^(HUA/|HW-|HUAWEI-)", re.IGNORECASE)
MODEL_IN_NAME_REGEX = re.compile(r"\(Model:\s*([^)]+)\)", re.IGNORECASE)
FAMILY_PREFIX_REGEX = re.compile(r"^(BAT-DC-|BAT-|OPT-|ACC-|GRID-)", re.IGNORECASE)


def normalize_product_ref(value: str | None) -> str:
    return re.sub(r"[^A-Z0-9]", "", (value or "").upper())


@dataclass(frozen=True)
class CatalogEntry:
    ref: str
    buy_price_unit: Decimal = Decimal("0")
    category: str | None = None
    initial_stock: Decimal = Decimal("0")


@dataclass
class CatalogIndex:
    """Catalog entries plus the lookups the strategies share."""

    entries: list[CatalogEntry]
    aliases: dict[str, str] = field(default_factory=dict)  # normalized alias -> normalized ref
    by_normalized: dict[str, CatalogEntry] = field(init=False)

    def __post_init__(self):
        self.by_normalized = {}
        for entry in self.entries:
            key = normalize_product_ref(entry.ref)
            if key and key not in self.by_normalized:
                self.by_normalized[key] = entry

    @classmethod
    def build(cls, entries: Iterable[CatalogEntry], alias_pairs: Iterable[tuple[str, str]] = ()) -> "CatalogIndex":
        aliases = {}
        for alias_sku, product_ref in alias_pairs:
            alias, ref = normalize_product_ref(alias_sku), normalize_product_ref(product_ref)
            if alias and ref:
                aliases[alias] = ref
        return cls(entries=[e for e in entries if e.ref.strip()], aliases=aliases)


Strategy = Callable[[CatalogIndex, str, str], "CatalogEntry | None"]


def match_alias(index: CatalogIndex, sku: str, name: str) -> CatalogEntry | None:
    target = index.aliases.get(normalize_product_ref(sku))
    return index.by_normalized.get(target) if target else None


def match_exact(index: CatalogIndex, sku: str, name: str) -> CatalogEntry | None:
    return index.by_normalized.get(normalize_product_ref(sku))


def match_stripped_prefix(index: CatalogIndex, sku: str, name: str) -> CatalogEntry | None:
    stripped = VENDOR_PREFIX_REGEX.sub("", sku).lower()
    if not stripped or stripped == sku.lower():
        return None
    return index.by_normalized.get(normalize_product_ref(stripped))


def match_model_in_name(index: CatalogIndex, sku: str, name: str) -> CatalogEntry | None:
    match = MODEL_IN_NAME_REGEX.search(name)
    if not match:
        return None
    model = match.group(1).strip().lower()
    for entry in index.entries:
        ref = entry.ref.lower()
        if model in ref or ref in model:
            return entry
    return None


def match_last_segment(index: CatalogIndex, sku: str, name: str) -> CatalogEntry | None:
    segment = sku.split("/")[-1].lower()
    if not segment or segment == sku.lower():
        return None
    found = index.by_normalized.get(normalize_product_ref(segment))
    if found:
        return found
    for entry in index.entries:
        ref = entry.ref.lower()
        if ref == segment or segment in ref or ref in segment:
            return entry
    return None


def match_substring(index: CatalogIndex, sku: str, name: str) -> CatalogEntry | None:
    sku_lower, name_lower = sku.lower(), name.lower()
    for entry in index.entries:
        ref = entry.ref.lower()
        # short refs produce false positives
        if len(ref) >= 4 and (ref in name_lower or ref in sku_lower):
            return entry
    return None


def match_multi_segment(index: CatalogIndex, sku: str, name: str) -> CatalogEntry | None:
    key = re.sub(r"^HUA/", "", sku, flags=re.IGNORECASE)
    key = FAMILY_PREFIX_REGEX.sub("", key).lower()
    segments = [s for s in key.split("-") if len(s) >= 2]
    if len(segments) < 2:
        return None
    for entry in index.entries:
        ref = entry.ref.lower()
        if all(segment in ref for segment in segments):
            return entry
    return None


DEFAULT_STRATEGIES: tuple[Strategy, ...] = (
    match_alias,
    match_exact,
    match_stripped_prefix,
    match_model_in_name,
    match_last_segment,
    match_substring,
    match_multi_segment,
)


def find_catalog_entry(
    index: CatalogIndex,
    sku: str,
    name: str = "",
    strategies: tuple[Strategy, ...] = DEFAULT_STRATEGIES,
) -> CatalogEntry | None:
    sku, name = (sku or "").strip(), (name or "").strip()
    for strategy in strategies:
        found = strategy(index, sku, name)
        if found is not None:
            return found
    return None


def compute_stock_map(catalog: Iterable[CatalogEntry], lines: Iterable[Any]) -> dict[str, Decimal]:
    """Remaining stock per catalog ref: initial stock minus quantities sold."""
    stock = {entry.ref: to_decimal(entry.initial_stock) for entry in catalog}
    for line in lines:
        ref = getattr(line, "product_ref", None)
        if ref in stock:
            stock[ref] -= to_decimal(getattr(line, "quantity", None))
    return stock


def low_stock_refs(stock: dict[str, Decimal], threshold: int = LOW_STOCK_THRESHOLD) -> list[str]:
    return sorted(ref for ref, remaining in stock.items() if remaining <= threshold)
