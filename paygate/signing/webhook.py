"""
Timestamped webhook signatures.

Airwallex signs ``"<timestamp>.<raw body>"`` with HMAC-SHA256 (hex) and
sends ``x-airwallex-signature: t=<unix seconds>,v1=<hex digest>``.
Deliveries whose timestamp is outside the tolerance window are rejected so a
captured request cannot be replayed later.
"""

import time
from typing import Optional

from paygate.signing.digest import digests_match, hmac_digest


def parse_signature_header(header: str) -> tuple[str, str]:
    """Return ``(timestamp, signature)``; either may be empty if absent."""
    timestamp = ""
    signature = ""
    for element in header.split(","):
        key, _, value = element.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signature = value
    return timestamp, signature


def signed_payload(timestamp: str, body: str) -> str:
    return f"{timestamp}.{body}"


def sign_webhook(secret: str, body: str, timestamp: int) -> str:
    """Build a header value the way the provider would. Used by tests and tooling."""
    digest = hmac_digest(secret, signed_payload(str(timestamp), body), "sha256", "hex")
    return f"t={timestamp},v1={digest}"


def verify_webhook(
    secret: str,
    body: str,
    header: Optional[str],
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> bool:
    if not header:
        return False
    timestamp, declared = parse_signature_header(header)
    if not timestamp or not declared:
        return False
    try:
        sent_at = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    if abs(current - sent_at) > tolerance_seconds:
        return False
    expected = hmac_digest(secret, signed_payload(timestamp, body), "sha256", "hex")
    return digests_match(expected, declared, case_insensitive=True)
