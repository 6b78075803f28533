"""HMAC utilities for verifying Stripe webhook signatures."""
from __future__ import annotations

import hmac
import hashlib
import time


def compute_stripe_signature(secret: str, timestamp: int, body: bytes) -> str:
    signed = f"{timestamp}.".encode() + body
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def parse_signature_header(sig_header: str) -> tuple[int | None, list[str]]:
    """Split ``t=...,v1=...,v1=...`` into timestamp and v1 signatures."""
    timestamp: int | None = None
    signatures: list[str] = []
    for part in sig_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def verify_stripe_signature(
    sig_header: str,
    body: bytes,
    secret: str,
    tolerance: int = 300,
    now: float | None = None,
) -> bool:
    """Return ``True`` if any v1 signature matches and the timestamp is fresh."""
    if not sig_header:
        return False
    timestamp, signatures = parse_signature_header(sig_header)
    if timestamp is None or not signatures:
        return False
    current = time.time() if now is None else now
    if tolerance and abs(current - timestamp) > tolerance:
        return False
    expected = compute_stripe_signature(secret, timestamp, body)
    return any(hmac.compare_digest(expected, sig) for sig in signatures)
