"""Digest primitives shared by the signing schemes."""

import base64
import hashlib
import hmac

ALGORITHMS = {"sha256": hashlib.sha256, "sha512": hashlib.sha512}


def _encode(raw: bytes, encoding: str) -> str:
    if encoding == "base64":
        return base64.b64encode(raw).decode("ascii")
    if encoding == "hex":
        return raw.hex()
    raise ValueError(f"Unknown digest encoding: {encoding}")


def hmac_digest(secret: str, message: str, algorithm: str = "sha256", encoding: str = "base64") -> str:
    mac = hmac.new(secret.encode("utf-8"), message.encode("utf-8"), ALGORITHMS[algorithm])
    return _encode(mac.digest(), encoding)


def plain_digest(message: str, algorithm: str = "sha512", encoding: str = "hex") -> str:
    return _encode(ALGORITHMS[algorithm](message.encode("utf-8")).digest(), encoding)


def digests_match(expected: str, declared: str | None, *, case_insensitive: bool = False) -> bool:
    """Constant-time comparison. A missing declared value never matches."""
    if not declared:
        return False
    if case_insensitive:
        expected, declared = expected.lower(), declared.lower()
    return hmac.compare_digest(expected.encode("utf-8"), declared.strip().encode("utf-8"))
