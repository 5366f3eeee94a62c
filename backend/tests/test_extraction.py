"""
Reference extractor tests — emails, scraped pages, shipments, loose payloads.
"""

from datetime import datetime
from decimal import Decimal

from engine.extraction import (
    extract_amounts,
    extract_client_name,
    extract_order_code,
    extract_scrape_product_refs,
    extract_transaction_ref,
    find_first_by_aliases,
    find_url_by_parent_aliases,
    normalize_key,
    normalize_message_id,
    order_code_from_sale_id,
    parse_number,
    parse_platform_email,
    parse_timestamp,
    sender_allowed,
    tracking_numbers,
)
from engine.types import Channel


class TestPlatformEmail:
    def test_full_sunstore_notification(self):
        parsed = parse_platform_email(
            from_email="no-reply@sun.store",
            subject="New offer in negotiations [#wpT5sgv0] awaits you!",
            text="Product: SUN2000-12K-MAP0\nThe goods are ready for sending in 3 day(s).",
        )
        assert parsed.negotiation_id == "wpT5sgv0"
        assert parsed.product_refs == ["SUN2000-12K-MAP0"]
        assert parsed.channel == Channel.SUN_STORE
        assert parsed.confidence == 1.0
        assert parsed.ready_in_days == 3
        assert parsed.errors == []

    def test_missing_negotiation_id(self):
        parsed = parse_platform_email(
            from_email="no-reply@sun.store",
            subject="Your weekly summary",
            text="Nothing new today.",
        )
        assert parsed.negotiation_id is None
        assert "negotiation_id_not_detected" in parsed.errors
        assert parsed.confidence == 0.35

    def test_unknown_sender_reports_both_gaps(self):
        parsed = parse_platform_email(from_email="someone@example.com", subject="Hello", text="")
        assert parsed.channel is None
        assert parsed.errors == ["channel_not_detected", "negotiation_id_not_detected"]
        assert parsed.confidence == 0.0

    def test_product_refs_skip_boilerplate_and_dedupe(self):
        parsed = parse_platform_email(
            from_email="hello@solartraders.com",
            subject="Offer #abc12345",
            text="LUNA2000-5-E0, LUNA2000-5-E0, OFF-12345 and REPLY-ABOVE-THIS-LINE",
        )
        assert parsed.channel == Channel.SOLARTRADERS
        assert parsed.product_refs == ["LUNA2000-5-E0"]


class TestSenderAndMessageId:
    def test_sender_allowed_matches_domain_and_subdomains(self):
        domains = ["sun.store"]
        assert sender_allowed("a@sun.store", domains)
        assert sender_allowed("a@mail.sun.store", domains)
        assert not sender_allowed("a@notsun.store", domains)
        assert not sender_allowed("no-at-sign", domains)
        assert sender_allowed("anyone@example.com", [])

    def test_message_id_falls_back_to_uid(self):
        assert normalize_message_id(" <abc@sun.store> ", 7) == "<abc@sun.store>"
        assert normalize_message_id("", 42) == "uid-42"


class TestNumbers:
    def test_parse_number_locales(self):
        assert parse_number("1.234,56 €") == Decimal("1234.56")
        assert parse_number("1,234.56") == Decimal("1234.56")
        assert parse_number("12,5") == Decimal("12.5")
        assert parse_number(" 30 ") == Decimal("30")
        assert parse_number(42) == Decimal("42")

    def test_parse_number_rejects_garbage(self):
        assert parse_number("") is None
        assert parse_number("n/a") is None
        assert parse_number(None) is None
        assert parse_number(True) is None
        assert parse_number(float("nan")) is None

    def test_extract_amounts_in_order(self):
        assert extract_amounts("Total 1 234,50 € incl. shipping 30 €") == [Decimal("1234.50"), Decimal("30")]
        assert extract_amounts("no money here") == []


class TestScrapeText:
    def test_transaction_and_client(self):
        text = "Payment pi_3Nabc_123 confirmed\nClient: Solar Dupont SARL\nOther: x"
        assert extract_transaction_ref(text) == "pi_3Nabc_123"
        assert extract_client_name(text) == "Solar Dupont SARL"
        assert extract_client_name("nothing") is None

    def test_scrape_refs_need_a_digit(self):
        assert extract_scrape_product_refs("SUN2000-5KTL-M1 and SMART-GUARD") == ["SUN2000-5KTL-M1"]


class TestShipments:
    def test_tracking_numbers_drop_placeholders(self):
        raw = ["1z999aa10123456784; TEST12345678", "XXXXXXXX", "ABC", "1Z999AA10123456784"]
        assert tracking_numbers(raw) == ["1Z999AA10123456784"]
        assert tracking_numbers(None) == []

    def test_order_codes(self):
        assert extract_order_code("ref cc-00123 shipped") == "CC-00123"
        assert extract_order_code("") is None
        assert order_code_from_sale_id("zoho-CC-00123-1") == "CC-00123"
        assert order_code_from_sale_id("order-abc-1") is None


class TestLoosePayloads:
    def test_normalize_key_folds_accents(self):
        assert normalize_key("Coût_Total") == "couttotal"

    def test_find_first_prefers_shallow_and_skips_blank(self):
        payload = {"reference": "", "data": {"order_number": "CC-1"}, "meta": {"reference": "DEEP"}}
        assert find_first_by_aliases(payload, ["reference", "order_number"]) == "CC-1"

    def test_find_url_under_parent(self):
        payload = {"shipment": {"label": {"url": "https://envia.com/l.pdf"}, "proof": "not-a-url"}}
        assert find_url_by_parent_aliases(payload, ["label"]) == "https://envia.com/l.pdf"
        assert find_url_by_parent_aliases(payload, ["proof"]) is None

    def test_parse_timestamp_is_naive_utc(self):
        assert parse_timestamp("2026-02-17T10:00:00+01:00") == datetime(2026, 2, 17, 9, 0)
        assert parse_timestamp(0) == datetime(1970, 1, 1)
        assert parse_timestamp("yesterday") is None
