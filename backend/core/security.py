"""
MarginSync Security Utilities

Webhook authentication: Stripe signature verification and shared-token
checks for the accounting, shipment and internal ingest endpoints.
"""

import hashlib
import hmac
import time


def compute_stripe_signature(secret: str, timestamp: str, payload: bytes) -> str:
    """HMAC-SHA256 of ``"{timestamp}.{payload}"`` as Stripe signs it."""
    signed_payload = timestamp.encode() + b"." + payload
    return hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()


def parse_stripe_signature_header(header: str) -> tuple[str | None, list[str]]:
    """Split ``t=...,v1=...,v1=...`` into the timestamp and the v1 signatures."""
    timestamp = None
    signatures: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t" and value:
            timestamp = value
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def verify_stripe_signature(
    payload: bytes,
    header: str,
    secret: str,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> bool:
    """
    Verify a Stripe-Signature header against the raw request body.

    Any v1 signature may match. A timestamp outside the tolerance window
    is rejected to block replays; tolerance 0 disables the window check.
    """
    timestamp, signatures = parse_stripe_signature_header(header or "")
    if not timestamp or not signatures or not secret:
        return False
    if tolerance_seconds > 0:
        try:
            age = abs((now if now is not None else time.time()) - int(timestamp))
        except ValueError:
            return False
        if age > tolerance_seconds:
            return False

    expected = compute_stripe_signature(secret, timestamp, payload)
    return any(hmac.compare_digest(signature, expected) for signature in signatures)


def token_matches(expected: str, candidates: list[str | None]) -> bool:
    """True when any non-empty candidate equals the configured token."""
    if not expected:
        return True
    return any(
        candidate is not None and candidate.strip() and hmac.compare_digest(candidate.strip(), expected)
        for candidate in candidates
    )


def bearer_token(authorization: str | None) -> str:
    value = (authorization or "").strip()
    if value.lower().startswith("bearer "):
        return value[7:].strip()
    return ""
