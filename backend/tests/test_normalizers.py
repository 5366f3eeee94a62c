"""
Event normalizer tests — each feed mapped to an OrderFact without touching the DB.
"""

from decimal import Decimal

import pytest
from structlog.testing import capture_logs

from engine.catalog import CatalogEntry, CatalogIndex
from engine.errors import PayloadError
from engine.types import Category, Channel, IngestSource, OrderStatus, PaymentMethod, ShippingCostSource
from integrations import get_normalizer
from integrations.envia import parse_payload_list
from integrations.zoho_books import (
    discount_percent,
    extract_country,
    infer_channel,
    infer_payment_method,
    is_huawei_product,
    is_shipping_line,
    line_amount,
    power_rating_from_name,
)

CATALOG = CatalogIndex.build(
    [
        CatalogEntry(ref="SUN2000-5KTL-M1", buy_price_unit=Decimal("700.00"), category="Inverters"),
        CatalogEntry(ref="LUNA2000-5-E0", buy_price_unit=Decimal("1500.00"), category="Batteries"),
    ]
)


def _normalizer(source, settings, catalog=None):
    return get_normalizer(source, store_id=settings.store_id, settings=settings, catalog=catalog)


class TestRegistry:
    def test_every_feed_is_registered(self, test_settings):
        for source in (
            IngestSource.EMAIL,
            IngestSource.STRIPE,
            IngestSource.SCRAPE,
            IngestSource.ZOHO,
            IngestSource.ENVIA,
        ):
            assert _normalizer(source, test_settings).source == source

    def test_manual_has_no_normalizer(self, test_settings):
        with pytest.raises(ValueError, match="No normalizer registered"):
            _normalizer(IngestSource.MANUAL, test_settings)


class TestEmailNormalizer:
    def test_notification_creates_provisional_order(self, test_settings):
        normalizer = _normalizer(IngestSource.EMAIL, test_settings)
        payload = {
            "message_id": "<abc@sun.store>",
            "from_email": "no-reply@sun.store",
            "subject": "New offer in negotiations [#wpT5sgv0] awaits you!",
            "text": "Product: SUN2000-5KTL-M1\nThe goods are ready for sending in 3 day(s).",
            "received_at": "2026-02-17T10:00:00Z",
        }
        fact = normalizer.normalize(payload)

        assert fact.source_event_id == "<abc@sun.store>"
        assert fact.channel == Channel.SUN_STORE
        assert fact.external_order_id == "wpT5sgv0"
        assert fact.target_status == OrderStatus.PROVISIONAL
        assert fact.order_date.isoformat() == "2026-02-17"
        assert [line.product_ref for line in fact.lines] == ["SUN2000-5KTL-M1"]
        assert fact.lines[0].sell_price_unit_ht is None
        assert fact.applies_to_order
        assert fact.source_payload["ready_in_days"] == 3

    def test_uid_fallback_for_event_id(self, test_settings):
        normalizer = _normalizer(IngestSource.EMAIL, test_settings)
        assert normalizer.event_id({"message_id": "", "uid": 42}) == "uid-42"

    def test_missing_ids_raise(self, test_settings):
        normalizer = _normalizer(IngestSource.EMAIL, test_settings)
        with pytest.raises(PayloadError):
            normalizer.event_id({"subject": "no id"})
        with pytest.raises(PayloadError):
            normalizer.event_id(["not", "an", "object"])

    def test_unparseable_email_does_not_apply(self, test_settings):
        normalizer = _normalizer(IngestSource.EMAIL, test_settings)
        fact = normalizer.normalize({"message_id": "m-1", "from_email": "x@sun.store", "subject": "Weekly digest"})
        assert not fact.applies_to_order
        assert fact.ignore_reason == "negotiation_id_not_detected"


class TestStripeNormalizer:
    def test_checkout_session(self, test_settings, stripe_checkout_event):
        fact = _normalizer(IngestSource.STRIPE, test_settings).normalize(stripe_checkout_event)

        assert fact.source_event_id == "evt_checkout_1"
        assert fact.channel == Channel.SUN_STORE
        assert fact.external_order_id == "wpT5sgv0"
        assert fact.transaction_ref == "pi_123"
        assert fact.shipping_charged_ht == Decimal("30.00")
        assert fact.net_received == Decimal("1070.00")
        assert fact.payment_method == PaymentMethod.STRIPE
        assert fact.currency == "EUR"
        assert fact.customer_name == "Solar Dupont SARL"
        assert fact.customer_country == "FR"
        assert fact.target_status == OrderStatus.ENRICHED
        assert fact.source_payload["checkout_session_id"] == "cs_test_1"
        assert fact.applies_to_order

    def test_charge_with_balance_transaction(self, test_settings, stripe_charge_event):
        fact = _normalizer(IngestSource.STRIPE, test_settings).normalize(stripe_charge_event)

        assert fact.external_order_id == "ORD-0001"
        assert fact.transaction_ref == "pi_456"
        assert fact.fees_platform == Decimal("5.00")
        assert fact.fees_processor == Decimal("42.70")
        assert fact.net_received == Decimal("1022.30")
        assert fact.customer_country == "BE"
        assert fact.source_payload["charge_id"] == "ch_1"

    def test_net_is_derived_without_balance_transaction(self, test_settings, stripe_charge_event):
        del stripe_charge_event["data"]["object"]["balance_transaction"]
        fact = _normalizer(IngestSource.STRIPE, test_settings).normalize(stripe_charge_event)
        assert fact.fees_processor is None
        assert fact.net_received == Decimal("1065.00")

    def test_payout_is_ignored(self, test_settings):
        event = {
            "id": "evt_payout_1",
            "type": "payout.paid",
            "created": 1771322400,
            "data": {"object": {"id": "po_1", "amount": 250000, "currency": "eur", "status": "paid"}},
        }
        fact = _normalizer(IngestSource.STRIPE, test_settings).normalize(event)
        assert not fact.applies_to_order
        assert fact.ignore_reason == "payout_event"
        assert fact.source_payload["amount"] == "2500.00"

    def test_unapplied_event_type(self, test_settings, stripe_charge_event):
        stripe_charge_event["type"] = "charge.refunded"
        fact = _normalizer(IngestSource.STRIPE, test_settings).normalize(stripe_charge_event)
        assert not fact.applies_to_order
        assert fact.ignore_reason == "event_type_not_applied:charge.refunded"

    def test_invalid_events_raise(self, test_settings):
        normalizer = _normalizer(IngestSource.STRIPE, test_settings)
        with pytest.raises(PayloadError):
            normalizer.event_id({"type": "charge.succeeded"})
        with pytest.raises(PayloadError):
            normalizer.normalize({"id": "evt_1", "type": "charge.succeeded", "data": {}})


class TestScrapeNormalizer:
    def test_structured_result(self, test_settings):
        payload = {
            "channel": "Sun.store",
            "negotiation_id": "wpT5sgv0",
            "product_refs": ["SUN2000-5KTL-M1", " "],
            "detected_amounts_eur": ["1 070,00 €", "bad"],
            "transaction_ref": "pi_123",
            "client_name": "Solar Dupont SARL",
            "scraped_at": "2026-02-17T10:05:00Z",
        }
        normalizer = _normalizer(IngestSource.SCRAPE, test_settings)
        fact = normalizer.normalize(payload)

        assert fact.source_event_id == "Sun.store:wpT5sgv0:2026-02-17T10:05:00Z"
        assert fact.product_refs == ["SUN2000-5KTL-M1"]
        assert fact.target_status == OrderStatus.ENRICHED
        assert fact.source_payload["detected_amounts_eur"] == ["1070.00"]
        assert fact.source_payload["url"] == "https://sun.store/en/seller/negotiations/wpT5sgv0"

    def test_body_text_without_refs_needs_completion(self, test_settings):
        payload = {
            "negotiation_id": "wpT5sgv0",
            "scraped_at": "2026-02-17T10:05:00Z",
            "body_text": "Client: Solar Dupont SARL\nPayment pi_3abc confirmed\nTotal 1 070,00 €",
        }
        fact = _normalizer(IngestSource.SCRAPE, test_settings).normalize(payload)

        assert fact.lines == []
        assert fact.target_status == OrderStatus.NEEDS_COMPLETION
        assert fact.transaction_ref == "pi_3abc"
        assert fact.customer_name == "Solar Dupont SARL"

    def test_unknown_channel_and_missing_keys_raise(self, test_settings):
        normalizer = _normalizer(IngestSource.SCRAPE, test_settings)
        with pytest.raises(PayloadError):
            normalizer.event_id({"channel": "eBay", "negotiation_id": "x", "scraped_at": "t"})
        with pytest.raises(PayloadError):
            normalizer.event_id({"negotiation_id": "wpT5sgv0"})


class TestZohoNormalizer:
    def test_sales_order_lines_and_shipping_split(self, test_settings, zoho_salesorder):
        fact = _normalizer(IngestSource.ZOHO, test_settings, catalog=CATALOG).normalize(zoho_salesorder)

        assert fact.channel == Channel.SUN_STORE
        assert fact.payment_method == PaymentMethod.STRIPE
        assert fact.external_order_id == "CC-00123"
        assert fact.transaction_ref == "Transaction #wpT5sgv0"
        assert fact.customer_country == "FR"
        assert fact.line_prefix == "zoho-CC-00123-"
        assert fact.shipping_charged_ht == Decimal("60.00")
        assert fact.shipping_charged_ttc == Decimal("72.00")
        assert fact.source_payload["non_huawei_lines_skipped"] == 1

        inverter, battery = fact.lines
        assert inverter.line_id == "L1"
        assert inverter.amount == Decimal("1800.00")
        assert inverter.sell_price_unit_ht == Decimal("900.00")
        assert inverter.sell_price_unit_ttc == Decimal("1080.00")
        assert inverter.buy_price_unit == Decimal("700.00")
        assert inverter.category == Category.INVERTERS
        assert inverter.shipping_charged_ht == Decimal("36.00")
        assert inverter.shipping_charged_ttc == Decimal("43.20")
        assert inverter.shipping_cost_source == ShippingCostSource.ESTIMATED_FROM_CHARGED

        assert battery.buy_price_unit == Decimal("1500.00")
        assert battery.category == Category.BATTERIES
        assert battery.shipping_charged_ht == Decimal("24.00")
        assert battery.shipping_charged_ttc == Decimal("28.80")

    def test_line_amounts_are_kept_in_source_payload(self, test_settings, zoho_salesorder):
        fact = _normalizer(IngestSource.ZOHO, test_settings).normalize(zoho_salesorder)

        assert fact.line_amounts == [Decimal("1800.00"), Decimal("1200")]
        assert [Decimal(amount) for amount in fact.source_payload["line_amounts"]] == fact.line_amounts

    def test_identical_lines_without_ids_get_distinct_ids(self, test_settings, zoho_salesorder):
        battery = {"sku": "LUNA2000-5-E0", "name": "Huawei LUNA2000 battery", "quantity": 1, "amount": 1200}
        zoho_salesorder["salesorder"]["line_items"] = [dict(battery), dict(battery)]

        fact = _normalizer(IngestSource.ZOHO, test_settings).normalize(zoho_salesorder)
        first, second = (line.line_id for line in fact.lines)
        assert first != second
        assert first.endswith("-1") and second.endswith("-2")

    def test_event_id_changes_with_content(self, test_settings, zoho_salesorder):
        normalizer = _normalizer(IngestSource.ZOHO, test_settings)
        first = normalizer.event_id(zoho_salesorder)
        assert first.startswith("CC-00123:")
        assert normalizer.event_id(zoho_salesorder) == first

        zoho_salesorder["salesorder"]["shipping_charge"] = 80
        assert normalizer.event_id(zoho_salesorder) != first

    def test_real_shipping_custom_field_marks_manual(self, test_settings, zoho_salesorder):
        zoho_salesorder["salesorder"]["custom_fields"] = [{"label": "Coût transport commande HT", "value": "100,00"}]
        fact = _normalizer(IngestSource.ZOHO, test_settings, catalog=CATALOG).normalize(zoho_salesorder)

        assert fact.shipping_real_ht == Decimal("100.00")
        assert fact.shipping_real_ttc == Decimal("120.00")
        assert [line.shipping_real_ht for line in fact.lines] == [Decimal("60.00"), Decimal("40.00")]
        assert all(line.shipping_cost_source == ShippingCostSource.MANUAL for line in fact.lines)

    def test_unmatched_sku_gets_zero_buy_price(self, test_settings, zoho_salesorder):
        fact = _normalizer(IngestSource.ZOHO, test_settings, catalog=CatalogIndex.build([])).normalize(zoho_salesorder)
        assert all(line.buy_price_unit == Decimal("0") for line in fact.lines)

    @pytest.mark.parametrize(
        "line_items,reason",
        [
            ([], "no_line_items"),
            ([{"sku": "TRANSPORT", "name": "Frais de port", "amount": 10}], "only_shipping_lines"),
            ([{"sku": "CABLE-10M", "name": "Cable", "amount": 20}], "no_huawei_products"),
        ],
    )
    def test_ignored_orders(self, test_settings, zoho_salesorder, line_items, reason):
        zoho_salesorder["salesorder"]["line_items"] = line_items
        fact = _normalizer(IngestSource.ZOHO, test_settings).normalize(zoho_salesorder)
        assert not fact.applies_to_order
        assert fact.ignore_reason == reason

    def test_missing_order_raises(self, test_settings):
        with pytest.raises(PayloadError):
            _normalizer(IngestSource.ZOHO, test_settings).event_id({"foo": "bar"})


class TestZohoMappingRules:
    def test_channel_inference(self):
        assert infer_channel("Transaction #kj8OZ3Fi", []) == Channel.SUN_STORE
        assert infer_channel("Solartraders 1234", []) == Channel.SOLARTRADERS
        assert infer_channel("DC-0042", []) == Channel.DIRECT
        assert infer_channel("whatever", []) == Channel.OTHER
        assert infer_channel("Transaction #kj8OZ3Fi", [{"label": "Canal", "value": "Direct"}]) == Channel.DIRECT

    def test_payment_method_inference(self):
        assert infer_payment_method("", [{"label": "Moyen de paiement", "value": "Virement"}], Channel.DIRECT) == (
            PaymentMethod.WIRE
        )
        assert infer_payment_method("Transaction #kj8OZ3Fi", [], Channel.OTHER) == PaymentMethod.STRIPE
        assert infer_payment_method("", [], Channel.SUN_STORE) == PaymentMethod.STRIPE
        assert infer_payment_method("DC-1", [], Channel.DIRECT) == PaymentMethod.WIRE

    def test_country_extraction(self):
        assert extract_country({"country_code": "de"}) == "DE"
        assert extract_country({"country": "Belgique"}) == "BE"
        assert extract_country({"country": "Luxembourg"}) == "LU"
        assert extract_country(None) == "FR"

    def test_line_classification(self):
        assert is_shipping_line("TRANSP-01", "")
        assert is_shipping_line("", "Livraison express")
        assert not is_shipping_line("SUN2000-5KTL-M1", "Onduleur")
        assert is_huawei_product("HUA/ANY", "")
        assert is_huawei_product("", "Smart Dongle WLAN")
        assert is_huawei_product("", "Huawei optimizer 600W")
        assert not is_huawei_product("JA-SOLAR-425", "JA Solar panel")

    def test_amounts_and_discounts(self):
        assert discount_percent("20.00%") == Decimal("20.00")
        assert discount_percent(150) == Decimal("100")
        assert discount_percent(None) == Decimal("0")
        assert line_amount({"amount": "99.90"}) == Decimal("99.90")
        assert line_amount({"rate": 250, "quantity": 3, "discount": 10}) == Decimal("675.00")

    def test_power_rating(self):
        assert power_rating_from_name("Panneau 425 Wp bifacial", Decimal("10")) == Decimal("4250")
        assert power_rating_from_name("Module 0,5 kWp", Decimal("2")) == Decimal("1000.0")
        assert power_rating_from_name("Onduleur", Decimal("1")) is None


class TestEnviaNormalizer:
    def test_single_shipment(self, test_settings, envia_shipment):
        normalizer = _normalizer(IngestSource.ENVIA, test_settings)
        items = normalizer.split(envia_shipment)
        assert items == [envia_shipment]

        fact = normalizer.normalize(items[0])
        shipment = fact.shipment
        assert fact.source_event_id == "env_evt_1"
        assert shipment.transaction_ref == "CC-00123"
        assert shipment.order_code == "CC-00123"
        assert shipment.tracking_numbers == ["JD014600006281234567"]
        assert shipment.carrier == "DHL"
        assert shipment.shipping_cost_ttc == Decimal("84.00")
        assert shipment.label_url == "https://envia.com/labels/1.pdf"
        assert shipment.effective_status == "in_transit"

    def test_batch_split(self, test_settings):
        body = {"shipments": [{"reference": "CC-001"}, {"reference": "CC-002"}]}
        assert len(_normalizer(IngestSource.ENVIA, test_settings).split(body)) == 2
        assert parse_payload_list({"shipments": []}) == [{"shipments": []}]

    def test_non_object_body_raises(self, test_settings):
        with pytest.raises(PayloadError):
            _normalizer(IngestSource.ENVIA, test_settings).split(["a", "b"])

    def test_content_hash_when_no_event_id(self, test_settings):
        normalizer = _normalizer(IngestSource.ENVIA, test_settings)
        item = {"reference": "CC-00123", "tracking_number": "JD014600006281234567"}
        event_id = normalizer.event_id(item)
        assert event_id.startswith("sha1:")
        assert normalizer.event_id(dict(item)) == event_id

    def test_proof_of_delivery_means_delivered(self, test_settings, envia_shipment):
        envia_shipment["data"]["proof_of_delivery"] = {"url": "https://envia.com/pod/1.pdf"}
        fact = _normalizer(IngestSource.ENVIA, test_settings).normalize(envia_shipment)
        assert fact.shipment.proof_url == "https://envia.com/pod/1.pdf"
        assert fact.shipment.effective_status == "delivered"

    def test_normalize_logs_parsed_shipment(self, test_settings):
        with capture_logs() as logs:
            normalizer = _normalizer(IngestSource.ENVIA, test_settings)
            fact = normalizer.normalize({"event_id": "e1", "reference": "CC-00123", "status": "in_transit"})

        assert fact.source_event_id == "e1"
        assert fact.shipment.status == "in_transit"
        parsed = [entry for entry in logs if entry["event"] == "envia.parsed"]
        assert parsed[0]["shipment_event"] == "e1"
        assert parsed[0]["transaction_ref"] == "CC-00123"

    def test_shipment_object_id_is_not_the_event_key(self, test_settings):
        normalizer = _normalizer(IngestSource.ENVIA, test_settings)
        in_transit = {"id": 555, "reference": "CC-00123", "status": "in_transit"}
        delivered = {"id": 555, "reference": "CC-00123", "status": "delivered"}

        assert normalizer.event_id(in_transit) != normalizer.event_id(delivered)
        assert normalizer.event_id({"webhook_id": "wh_9", "id": 555}) == "wh_9"
