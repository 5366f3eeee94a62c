"""
Reference Extractor — pure parsing of free text and loosely-typed payloads.

Nothing in this module raises on bad input: callers get None / empty
collections and, for email parsing, a list of named gaps
(``channel_not_detected``, ``negotiation_id_not_detected``).
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from engine.types import Channel

NEGOTIATION_REGEX = re.compile(r"#([A-Za-z0-9]{6,40})\b")
PRODUCT_REF_REGEX = re.compile(r"\b[A-Z0-9]{2,}(?:-[A-Z0-9]+)+\b")
READY_IN_DAYS_REGEX = re.compile(r"ready\s+for\s+sending\s+in\s+(\d{1,3})\s+day\(s\)", re.IGNORECASE)
CURRENCY_REGEX = re.compile(r"(\d{1,3}(?:[ .]\d{3})*(?:,\d{2})?|\d+(?:[.,]\d{2})?)\s*€")
TRANSACTION_REF_REGEX = re.compile(r"\b(?:pi|ch|cs)_[A-Za-z0-9_]+\b")
CLIENT_NAME_REGEXES = (
    re.compile(r"Client\s*:\s*(.+)", re.IGNORECASE),
    re.compile(r"Buyer\s*:\s*(.+)", re.IGNORECASE),
    re.compile(r"Customer\s*:\s*(.+)", re.IGNORECASE),
)
ORDER_CODE_REGEX = re.compile(r"\bCC-\d{3,10}\b")
SALE_ID_ORDER_CODE_REGEX = re.compile(r"^zoho-(CC-\d+)-", re.IGNORECASE)
URL_REGEX = re.compile(r"^https?://", re.IGNORECASE)

# Ship-notice boilerplate that matches the product-ref shape
TOKEN_BLACKLIST = frozenset(
    {
        "DAY-S",
        "DAYS",
        "NO-REPLY",
        "REPLY-ABOVE-THIS-LINE",
        "SUN-STORE",
        "SOLARTRADERS",
        "TRANSACTION",
    }
)

CONFIDENCE_WEIGHTS = {"channel": 0.35, "negotiation_id": 0.40, "product_refs": 0.25}


# ── Email ─────────────────────────────────────────────────────────────────


@dataclass
class EmailExtraction:
    channel: Channel | None
    negotiation_id: str | None
    product_refs: list[str]
    ready_in_days: int | None
    confidence: float
    errors: list[str] = field(default_factory=list)


def extract_channel(subject: str, body: str, from_email: str = "") -> Channel | None:
    haystack = f"{from_email}\n{subject}\n{body}".lower()
    if "sun.store" in haystack:
        return Channel.SUN_STORE
    if "solartraders" in haystack:
        return Channel.SOLARTRADERS
    return None


def extract_negotiation_id(subject: str, body: str) -> str | None:
    match = NEGOTIATION_REGEX.search(f"{subject}\n{body}")
    return match.group(1) if match else None


def _dedupe(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


def _is_product_ref(token: str) -> bool:
    return (
        6 <= len(token) <= 40
        and any(ch.isdigit() for ch in token)
        and "-" in token
        and not token.startswith("OFF-")
        and "-2F" not in token
        and "-3D" not in token
        and token not in TOKEN_BLACKLIST
    )


def extract_product_refs(subject: str, body: str) -> list[str]:
    """Hyphenated uppercase model codes, in first-seen order."""
    joined = f"{subject}\n{body}".upper()
    candidates = [match.group(0).rstrip(".").strip() for match in PRODUCT_REF_REGEX.finditer(joined)]
    return _dedupe([token for token in candidates if _is_product_ref(token)])


def extract_ready_in_days(body: str) -> int | None:
    match = READY_IN_DAYS_REGEX.search(body or "")
    return int(match.group(1)) if match else None


def confidence_score(channel: Channel | None, negotiation_id: str | None, product_refs: list[str]) -> float:
    score = 0.0
    if channel:
        score += CONFIDENCE_WEIGHTS["channel"]
    if negotiation_id:
        score += CONFIDENCE_WEIGHTS["negotiation_id"]
    if product_refs:
        score += CONFIDENCE_WEIGHTS["product_refs"]
    return round(score, 3)


def parse_platform_email(from_email: str = "", subject: str = "", text: str = "") -> EmailExtraction:
    subject = subject or ""
    text = text or ""
    channel = extract_channel(subject, text, from_email or "")
    negotiation_id = extract_negotiation_id(subject, text)
    product_refs = extract_product_refs(subject, text)

    errors = []
    if not channel:
        errors.append("channel_not_detected")
    if not negotiation_id:
        errors.append("negotiation_id_not_detected")

    return EmailExtraction(
        channel=channel,
        negotiation_id=negotiation_id,
        product_refs=product_refs,
        ready_in_days=extract_ready_in_days(text),
        confidence=confidence_score(channel, negotiation_id, product_refs),
        errors=errors,
    )


def sender_allowed(address: str | None, allowed_domains: list[str]) -> bool:
    """Sender domain check used by the mailbox poller; empty allow-list accepts all."""
    domains = [d.strip().lower() for d in allowed_domains if d and d.strip()]
    if not domains:
        return True
    value = (address or "").strip().lower()
    if "@" not in value:
        return False
    domain = value.rsplit("@", 1)[1]
    return any(domain == d or domain.endswith(f".{d}") for d in domains)


def normalize_message_id(raw_message_id: str | None, uid: Any = None) -> str:
    value = (raw_message_id or "").strip()
    if value:
        return value
    return f"uid-{uid}"


# ── Numbers & money ───────────────────────────────────────────────────────


def parse_number(value: Any) -> Decimal | None:
    """
    Parse a locale-formatted number.

    When both ``,`` and ``.`` appear, the right-most one is the decimal
    separator; a lone ``,`` is a decimal comma. ``€`` and spaces are ignored.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        try:
            parsed = Decimal(str(value))
        except InvalidOperation:
            return None
        return parsed if parsed.is_finite() else None
    if not isinstance(value, str):
        return None

    raw = re.sub(r"\s", "", value.strip()).replace("€", "")
    if not raw:
        return None
    if "," in raw and "." in raw:
        if raw.rfind(",") > raw.rfind("."):
            raw = raw.replace(".", "").replace(",", ".", 1)
        else:
            raw = raw.replace(",", "")
    elif "," in raw:
        raw = raw.replace(",", ".", 1)

    raw = re.sub(r"[^0-9.\-]", "", raw)
    try:
        parsed = Decimal(raw)
    except InvalidOperation:
        return None
    return parsed if parsed.is_finite() else None


def _normalize_scraped_money(token: str) -> Decimal | None:
    cleaned = re.sub(r"[ .]", "", token).replace(",", ".", 1)
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def extract_amounts(text: str) -> list[Decimal]:
    """Every ``€``-suffixed amount in the text, in order of appearance."""
    amounts = []
    for match in CURRENCY_REGEX.finditer(text or ""):
        amount = _normalize_scraped_money(match.group(1))
        if amount is not None:
            amounts.append(amount)
    return amounts


def extract_transaction_ref(text: str) -> str | None:
    match = TRANSACTION_REF_REGEX.search(text or "")
    return match.group(0) if match else None


def extract_client_name(text: str) -> str | None:
    for pattern in CLIENT_NAME_REGEXES:
        match = pattern.search(text or "")
        if match and match.group(1):
            name = match.group(1).split("\n")[0].strip()
            if name:
                return name
    return None


def extract_scrape_product_refs(text: str) -> list[str]:
    """Model codes on a scraped negotiation page (case-sensitive, digit required)."""
    tokens = [match.group(0) for match in PRODUCT_REF_REGEX.finditer(text or "")]
    return _dedupe([token for token in tokens if any(ch.isdigit() for ch in token)])


# ── Shipments ─────────────────────────────────────────────────────────────


def _sanitize_tracking(raw: Any) -> str:
    if raw is None:
        return ""
    value = re.sub(r"\s+", "", str(raw).strip()).upper()
    if not value or "TEST" in value:
        return ""
    if re.fullmatch(r"X{6,}", value) or re.fullmatch(r"1ZX{6,}", value):
        return ""
    if len(value) < 8:
        return ""
    if not re.search(r"[0-9]", value) or not re.search(r"[A-Z]", value):
        return ""
    return value


def tracking_numbers(value: Any) -> list[str]:
    """Split, sanitise and de-duplicate carrier tracking numbers; placeholders are dropped."""
    if not value:
        return []
    items = value if isinstance(value, list) else [value]
    out: list[str] = []
    for item in items:
        if item is None:
            continue
        for part in re.split(r"[;,\n]", str(item)):
            cleaned = _sanitize_tracking(part)
            if cleaned:
                out.append(cleaned)
    return _dedupe(out)


def extract_order_code(value: str | None) -> str | None:
    text = (value or "").strip().upper()
    if not text:
        return None
    match = ORDER_CODE_REGEX.search(text)
    return match.group(0) if match else None


def order_code_from_sale_id(sale_id: str | None) -> str | None:
    match = SALE_ID_ORDER_CODE_REGEX.match(sale_id or "")
    return match.group(1).upper() if match else None


def normalize_ref(value: str | None) -> str:
    return (value or "").strip().lower()


# ── Loose payload navigation ──────────────────────────────────────────────


def normalize_key(value: str) -> str:
    """Accent-folded, lower-case, alphanumerics only: ``"Coût_Total"`` -> ``"couttotal"``."""
    decomposed = unicodedata.normalize("NFD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.category(ch).startswith("M"))
    return re.sub(r"[^a-z0-9]", "", stripped.lower())


def _is_blank(value: Any) -> bool:
    return value is None or str(value).strip() == ""


def find_first_by_aliases(payload: Any, aliases: list[str]) -> Any:
    """
    Depth-first search for the first non-blank value whose key matches an alias.

    Keys on the current object win over nested ones; lists are searched in
    order. Aliases are compared after ``normalize_key``.
    """
    wanted = {normalize_key(alias) for alias in aliases}
    visited: set[int] = set()

    def visit(value: Any) -> Any:
        if isinstance(value, list):
            for item in value:
                found = visit(item)
                if found is not None:
                    return found
            return None
        if not isinstance(value, dict) or id(value) in visited:
            return None
        visited.add(id(value))

        for key, nested in value.items():
            if normalize_key(str(key)) in wanted and not _is_blank(nested):
                return nested
        for nested in value.values():
            found = visit(nested)
            if found is not None:
                return found
        return None

    return visit(payload)


URL_KEYS = frozenset(normalize_key(k) for k in ("url", "link", "href", "download_url", "pdf_url"))


def safe_url(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed if URL_REGEX.match(trimmed) else None


def find_url_by_parent_aliases(payload: Any, parent_aliases: list[str]) -> str | None:
    """URL stored under (or directly as) a key matching one of ``parent_aliases``."""
    wanted = {normalize_key(alias) for alias in parent_aliases}
    visited: set[int] = set()

    def url_from(value: Any) -> str | None:
        direct = safe_url(value)
        if direct:
            return direct
        if not isinstance(value, dict):
            return None
        for key, nested in value.items():
            if normalize_key(str(key)) in URL_KEYS:
                url = safe_url(nested)
                if url:
                    return url
        return None

    def visit(value: Any) -> str | None:
        if not isinstance(value, dict) or id(value) in visited:
            return None
        visited.add(id(value))
        for key, nested in value.items():
            if normalize_key(str(key)) in wanted:
                url = url_from(nested)
                if url:
                    return url
        for nested in value.values():
            found = visit(nested)
            if found:
                return found
        return None

    return visit(payload)


def first_text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    return None


def parse_timestamp(value: Any) -> datetime | None:
    """ISO-8601 string or epoch seconds -> naive UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    text = first_text(value)
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
