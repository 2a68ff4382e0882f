"""
Shared-secret HMAC over an ordered, delimiter-joined field list.

Used by redirect-form gateways. The provider publishes which fields are
signed and in what order; the canonical string must match theirs
byte-for-byte, so it is built here on its own and can be inspected and
tested without the HMAC step.

eSewa ePay v2, for example, signs::

    total_amount=100,transaction_uuid=T1,product_code=EPAYTEST

with HMAC-SHA256 and sends the digest base64-encoded.
"""

from dataclasses import dataclass
from typing import Mapping

from paygate.signing.digest import digests_match, hmac_digest


@dataclass(frozen=True)
class FieldLayout:
    """Which fields are signed, how they are joined, and how the digest is encoded."""

    fields: tuple[str, ...]
    delimiter: str = ","
    pair_format: str = "{name}={value}"
    algorithm: str = "sha256"
    encoding: str = "base64"

    @property
    def signed_field_names(self) -> str:
        return ",".join(self.fields)


ESEWA_REQUEST = FieldLayout(fields=("total_amount", "transaction_uuid", "product_code"))
ESEWA_RESPONSE = FieldLayout(
    fields=(
        "transaction_code",
        "status",
        "total_amount",
        "transaction_uuid",
        "product_code",
        "signed_field_names",
    )
)

FIELD_LAYOUTS: dict[str, dict[str, FieldLayout]] = {
    "esewa": {"request": ESEWA_REQUEST, "response": ESEWA_RESPONSE},
}


def get_layout(gateway: str, direction: str = "request") -> FieldLayout:
    try:
        return FIELD_LAYOUTS[gateway][direction]
    except KeyError:
        raise KeyError(f"No signed field layout for {gateway}/{direction}") from None


def canonical_string(layout: FieldLayout, fields: Mapping[str, object]) -> str:
    """
    Join the signed fields in layout order.

    A signed field missing from ``fields`` is a hard error: silently signing
    an empty value would produce a digest the provider never computed.
    """
    parts = []
    for name in layout.fields:
        if name not in fields or fields[name] is None:
            raise KeyError(f"Signed field missing: {name}")
        parts.append(layout.pair_format.format(name=name, value=fields[name]))
    return layout.delimiter.join(parts)


def sign(layout: FieldLayout, fields: Mapping[str, object], secret: str) -> str:
    return hmac_digest(secret, canonical_string(layout, fields), layout.algorithm, layout.encoding)


def verify(layout: FieldLayout, fields: Mapping[str, object], secret: str, declared: str | None) -> bool:
    """
    Recompute and compare in constant time.

    When the payload names its own signed fields they must be exactly the
    layout's, so a sender cannot shrink the signed set.
    """
    declared_names = fields.get("signed_field_names")
    if declared_names is not None and str(declared_names) != layout.signed_field_names:
        return False
    try:
        expected = sign(layout, fields, secret)
    except KeyError:
        return False
    return digests_match(expected, declared)


def gateway_canonical_string(gateway: str, fields: Mapping[str, object], direction: str = "request") -> str:
    return canonical_string(get_layout(gateway, direction), fields)
