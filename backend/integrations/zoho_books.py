"""
Zoho Books sales order / invoice webhooks.

Zoho is the authoritative source for priced lines: every sync re-derives
the full line set of the order (ids ``zoho-{order_number}-{line_id}``) and
the reconciler replaces the previous set wholesale.

Mapping rules:
  - Shipping lines (SKU ``TRANSP*`` or a shipping-ish name) are not sales;
    their amounts plus the header ``shipping_charge`` form the order's
    charged shipping, split across product lines by line amount.
  - Only Huawei products are synced, even on mixed orders.
  - Channel and payment method come from custom fields first, then from
    the reference number ("Transaction #kj8OZ3Fi" -> Sun.store / Stripe).
  - French customers get TTC amounts at the configured VAT rate.
"""

from __future__ import annotations

import hashlib
import json
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from engine.catalog import find_catalog_entry
from engine.errors import PayloadError
from engine.extraction import normalize_key, parse_number, safe_url
from engine.money import ZERO, allocate_by_weight, round2, to_decimal
from engine.types import Category, Channel, IngestSource, OrderStatus, PaymentMethod, ShippingCostSource
from integrations.base import EventNormalizer, LineFact, OrderFact, register_normalizer

ZOHO_SYNCED = "zoho_synced"

COUNTRY_CODES = {
    "france": "FR",
    "italy": "IT",
    "italie": "IT",
    "germany": "DE",
    "allemagne": "DE",
    "spain": "ES",
    "espagne": "ES",
    "belgium": "BE",
    "belgique": "BE",
    "netherlands": "NL",
    "pays-bas": "NL",
    "portugal": "PT",
    "switzerland": "CH",
    "suisse": "CH",
    "austria": "AT",
    "autriche": "AT",
    "poland": "PL",
    "pologne": "PL",
}

CHANNEL_FIELD_ALIASES = ["canal", "channel", "canal de vente"]
PAYMENT_FIELD_ALIASES = ["moyen de paiement", "payment method", "paiement"]
SHIPPING_REAL_HT_ALIASES = [
    "cout transport commande ht",
    "coût transport commande ht",
    "cost transport commande ht",
    "shipping real ht",
    "frais port reels ht",
    "frais de port reels ht",
    "cout frais de port ht",
]
SHIPPING_REAL_TTC_ALIASES = [
    "cout transport commande ttc",
    "coût transport commande ttc",
    "cost transport commande ttc",
    "shipping real ttc",
    "frais port reels ttc",
    "frais de port reels ttc",
    "cout frais de port ttc",
]
INVOICE_URL_ALIASES = ["invoice_url", "invoice_link", "facture_url", "facture_link", "pdf_facture"]

SUNSTORE_REFERENCE_REGEX = re.compile(r"transaction\s*#\s*[a-z0-9]{6,}", re.IGNORECASE)
POWER_IN_NAME_REGEX = re.compile(r"(\d+(?:[.,]\d+)?)\s*(k?)wp\b", re.IGNORECASE)


# ── Custom fields ─────────────────────────────────────────────────────────


def find_custom_field(fields: list[dict], aliases: list[str]) -> dict | None:
    wanted = {normalize_key(alias) for alias in aliases}
    for field in fields or []:
        if not isinstance(field, dict):
            continue
        label = normalize_key(field["label"]) if isinstance(field.get("label"), str) else ""
        api_name = normalize_key(field["api_name"]) if isinstance(field.get("api_name"), str) else ""
        if label in wanted or api_name in wanted:
            return field
    return None


def custom_field_text(fields: list[dict], aliases: list[str]) -> str:
    field = find_custom_field(fields, aliases)
    if field is None:
        return ""
    value = field.get("value")
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return ""


def custom_field_number(fields: list[dict], aliases: list[str]) -> Decimal | None:
    field = find_custom_field(fields, aliases)
    return parse_number(field.get("value")) if field is not None else None


# ── Inference ─────────────────────────────────────────────────────────────


def infer_channel(reference_number: str, custom_fields: list[dict]) -> Channel:
    """Custom field first, then the reference number shape."""
    value = custom_field_text(custom_fields, CHANNEL_FIELD_ALIASES)
    if value:
        key = normalize_key(value)
        if "sunstore" in key:
            return Channel.SUN_STORE
        if "solartraders" in key:
            return Channel.SOLARTRADERS
        if "direct" in key:
            return Channel.DIRECT
        if "other" in key or "autre" in key:
            return Channel.OTHER

    ref = (reference_number or "").strip()
    if SUNSTORE_REFERENCE_REGEX.search(ref):
        return Channel.SUN_STORE
    if re.search(r"solartraders", ref, re.IGNORECASE):
        return Channel.SOLARTRADERS
    if re.match(r"^dc-", ref, re.IGNORECASE):
        return Channel.DIRECT
    return Channel.OTHER


def infer_payment_method(reference_number: str, custom_fields: list[dict], channel: Channel) -> PaymentMethod:
    value = custom_field_text(custom_fields, PAYMENT_FIELD_ALIASES)
    if value:
        key = normalize_key(value)
        if "stripe" in key or "carte" in key:
            return PaymentMethod.STRIPE
        if "paypal" in key:
            return PaymentMethod.PAYPAL
        if "wire" in key or "virement" in key or "bank" in key:
            return PaymentMethod.WIRE
        if "cash" in key or "especes" in key:
            return PaymentMethod.CASH

    if re.search(r"transaction\s*#", reference_number or "", re.IGNORECASE):
        return PaymentMethod.STRIPE
    if channel == Channel.SUN_STORE:
        return PaymentMethod.STRIPE
    return PaymentMethod.WIRE


def extract_country(billing_address: dict | None) -> str:
    """ISO code when Zoho has one, else mapped from the country name. Defaults to FR."""
    if not isinstance(billing_address, dict):
        return "FR"
    code = billing_address.get("country_code")
    if isinstance(code, str) and len(code) == 2:
        return code.upper()
    name = billing_address.get("country")
    if not isinstance(name, str) or not name.strip():
        return "FR"
    return COUNTRY_CODES.get(name.strip().lower(), name.strip().upper()[:2])


def is_shipping_line(sku: str, name: str) -> bool:
    sku_upper = (sku or "").upper()
    name_lower = (name or "").lower()
    return sku_upper.startswith("TRANSP") or any(
        marker in name_lower for marker in ("frais de port", "shipping", "livraison", "transport")
    )


def is_huawei_product(sku: str, name: str) -> bool:
    sku_upper = (sku or "").upper()
    text = f"{name} {sku}".lower()
    if sku_upper.startswith("HUA/") or sku_upper.startswith("HUAWEI"):
        return True
    if any(
        model in text
        for model in ("sun2000", "sdongle", "smart dongle", "smartlogger", "smart logger", "luna2000", "emma")
    ):
        return True
    return "huawei" in text and ("optimiseur" in text or "optimizer" in text)


def infer_category(name: str, sku: str) -> Category:
    text = f"{name} {sku}".lower()
    if any(marker in text for marker in ("panel", "panneau", "bifacial", "wp")):
        return Category.SOLAR_PANELS
    if any(marker in text for marker in ("battery", "batterie", "luna", "byd")):
        return Category.BATTERIES
    if any(
        marker in text
        for marker in (
            "onduleur",
            "inverter",
            "hybrid",
            "sun2000",
            "solis",
            "deye",
            "-lc",
            "-mb",
            "monophasé",
            "triphasé",
        )
    ):
        return Category.INVERTERS
    return Category.ACCESSORIES


def catalog_category(value: str | None, name: str, sku: str) -> Category:
    try:
        return Category(value)
    except ValueError:
        return infer_category(name, sku)


def power_rating_from_name(name: str, quantity: Decimal) -> Decimal | None:
    """Total line power in Wp from a "... 425 Wp" style product name."""
    match = POWER_IN_NAME_REGEX.search(name or "")
    if not match:
        return None
    unit = parse_number(match.group(1))
    if unit is None:
        return None
    if match.group(2):
        unit *= 1000
    return unit * quantity


def discount_percent(value: Any) -> Decimal:
    """Zoho sends either a number or a string like ``"20.00%"``; clamped to [0, 100]."""
    parsed = parse_number(value) if value is not None else None
    if parsed is None:
        return ZERO
    return min(max(parsed, ZERO), Decimal("100"))


def line_amount(item: dict) -> Decimal:
    """Billed line total HT: ``amount`` when present, else discounted rate x quantity."""
    if item.get("amount") is not None:
        return to_decimal(item.get("amount"))
    quantity = max(to_decimal(item.get("quantity", 1)), Decimal("0.001"))
    rate_after_discount = round2(to_decimal(item.get("rate")) * (1 - discount_percent(item.get("discount")) / 100))
    return round2(rate_after_discount * quantity)


def _order_date(value: Any) -> date:
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            pass
    return datetime.utcnow().date()


# ── Normalizer ────────────────────────────────────────────────────────────


@register_normalizer
class ZohoBooksNormalizer(EventNormalizer):
    """Zoho sales order -> authoritative priced lines for one accounting order."""

    @property
    def source(self) -> IngestSource:
        return IngestSource.ZOHO

    @staticmethod
    def sales_order(payload: Any) -> dict:
        order = None
        if isinstance(payload, dict):
            order = payload.get("salesorder") or payload.get("invoice")
        if not isinstance(order, dict):
            raise PayloadError("No salesorder/invoice in payload")
        return order

    @staticmethod
    def order_number(order: dict) -> str:
        return str(order.get("salesorder_number") or order.get("salesorder_id") or "ZOHO-?")

    def event_id(self, payload: Any) -> str:
        order = self.sales_order(payload)
        canonical = json.dumps(order, sort_keys=True, separators=(",", ":"), default=str)
        digest = hashlib.sha1(canonical.encode()).hexdigest()[:16]
        return f"{self.order_number(order)}:{digest}"

    def normalize(self, payload: Any) -> OrderFact:
        order = self.sales_order(payload)
        event_id = self.event_id(payload)
        order_number = self.order_number(order)
        raw_ref = str(order.get("reference_number") or "")
        custom_fields = order.get("custom_fields") if isinstance(order.get("custom_fields"), list) else []

        channel = infer_channel(raw_ref, custom_fields)
        payment_method = infer_payment_method(raw_ref, custom_fields, channel)
        # Direct orders are tracked by the accounting number, which reads better than DC-xxxx
        transaction_ref = raw_ref if channel != Channel.DIRECT and raw_ref else order_number
        country = extract_country(order.get("billing_address"))
        is_french = country.upper() == "FR"
        vat = Decimal(str(self.settings.french_vat_rate))

        fact = OrderFact(
            source=self.source,
            source_event_id=event_id,
            source_event_type="salesorder" if "salesorder" in payload else "invoice",
            channel=channel,
            external_order_id=order_number,
            order_date=_order_date(order.get("date")),
            event_at=datetime.utcnow(),
            transaction_ref=transaction_ref,
            customer_name=str(order.get("customer_name") or "Unknown"),
            customer_country=country,
            payment_method=payment_method,
            currency=str(order.get("currency_code") or "EUR").upper(),
            target_status=OrderStatus.ENRICHED,
            source_status=ZOHO_SYNCED,
            line_prefix=f"zoho-{order_number}-",
            raw_payload=payload,
        )

        items = [item for item in order.get("line_items") or [] if isinstance(item, dict)]
        if not items:
            return self._ignored(fact, "no_line_items")

        shipping_from_lines = ZERO
        product_items = []
        for item in items:
            sku, name = str(item.get("sku") or "").strip(), str(item.get("name") or "").strip()
            if is_shipping_line(sku, name):
                if item.get("amount") is not None:
                    shipping_from_lines += to_decimal(item.get("amount"))
                else:
                    shipping_from_lines += to_decimal(item.get("rate")) * to_decimal(item.get("quantity", 1))
            else:
                product_items.append(item)

        total_shipping = round2(shipping_from_lines + to_decimal(order.get("shipping_charge")))
        if not product_items:
            return self._ignored(fact, "only_shipping_lines")

        huawei_items = [
            item for item in product_items if is_huawei_product(str(item.get("sku") or ""), str(item.get("name") or ""))
        ]
        skipped = len(product_items) - len(huawei_items)
        if not huawei_items:
            return self._ignored(fact, "no_huawei_products")

        real_ht_field = custom_field_number(custom_fields, SHIPPING_REAL_HT_ALIASES)
        real_ttc_field = custom_field_number(custom_fields, SHIPPING_REAL_TTC_ALIASES)
        has_order_real = real_ht_field is not None or real_ttc_field is not None
        total_real_ht = round2(real_ht_field or 0)
        if real_ttc_field is not None:
            total_real_ttc = round2(real_ttc_field)
        else:
            total_real_ttc = round2(total_real_ht * (1 + vat)) if is_french else ZERO
        total_shipping_ttc = round2(total_shipping * (1 + vat)) if is_french else ZERO

        invoice_url = safe_url(custom_field_text(custom_fields, INVOICE_URL_ALIASES)) or safe_url(
            order.get("invoice_url")
        )

        amounts = [line_amount(item) for item in huawei_items]
        charged_ht = allocate_by_weight(total_shipping, amounts)
        charged_ttc = allocate_by_weight(total_shipping_ttc, amounts) if is_french else None
        real_ht = allocate_by_weight(total_real_ht, amounts) if has_order_real else None
        real_ttc = allocate_by_weight(total_real_ttc, amounts) if has_order_real and is_french else None

        for index, (item, amount) in enumerate(zip(huawei_items, amounts)):
            sku = str(item.get("sku") or "").strip()
            name = (str(item.get("name") or sku) or "Unknown").strip()
            quantity = max(to_decimal(item.get("quantity", 1)), Decimal("0.001"))
            unit_price = round2(amount / quantity)
            line_id = item.get("line_item_id") or item.get("item_id") or f"{sku}-{amount}-{index + 1}"

            entry = find_catalog_entry(self.catalog, sku, name) if self.catalog else None
            category = catalog_category(entry.category if entry else None, name, sku)

            if has_order_real:
                cost_source = ShippingCostSource.MANUAL
            elif charged_ht[index] > 0:
                cost_source = ShippingCostSource.ESTIMATED_FROM_CHARGED
            else:
                cost_source = ShippingCostSource.MANUAL

            fact.lines.append(
                LineFact(
                    line_id=str(line_id),
                    product_ref=sku or name,
                    product_label=name,
                    quantity=round2(quantity),
                    sell_price_unit_ht=unit_price,
                    sell_price_unit_ttc=round2(unit_price * (1 + vat)) if is_french else None,
                    buy_price_unit=entry.buy_price_unit if entry else ZERO,
                    category=category,
                    power_wp=power_rating_from_name(name, quantity),
                    shipping_charged_ht=charged_ht[index],
                    shipping_charged_ttc=charged_ttc[index] if charged_ttc else None,
                    shipping_real_ht=real_ht[index] if real_ht else None,
                    shipping_real_ttc=real_ttc[index] if real_ttc else None,
                    shipping_cost_source=cost_source,
                    invoice_url=invoice_url,
                    amount=amount,
                )
            )

        fact.product_refs = [line.product_ref for line in fact.lines]
        fact.shipping_charged_ht = total_shipping
        fact.shipping_charged_ttc = total_shipping_ttc if is_french else None
        fact.shipping_real_ht = total_real_ht if has_order_real else None
        fact.shipping_real_ttc = total_real_ttc if has_order_real and is_french else None
        fact.source_payload = {
            "salesorder_id": order.get("salesorder_id"),
            "order_number": order_number,
            "reference_number": raw_ref,
            "shipping_total": str(total_shipping),
            "line_amounts": [str(amount) for amount in fact.line_amounts],
            "shipping_real_order_ht": str(total_real_ht),
            "non_huawei_lines_skipped": skipped,
            "invoice_url": invoice_url,
        }

        self.logger.info(
            "zoho.parsed",
            order_number=order_number,
            channel=channel.value,
            lines=len(fact.lines),
            non_huawei_lines_skipped=skipped,
        )
        return fact

    def _ignored(self, fact: OrderFact, reason: str) -> OrderFact:
        fact.applies_to_order = False
        fact.ignore_reason = reason
        fact.source_payload = {"order_number": fact.external_order_id, "reason": reason}
        self.logger.info("zoho.skipped", order_number=fact.external_order_id, reason=reason)
        return fact
