"""
PayU salted SHA-512 hash chains.

Outbound (payment request)::

    key|txnid|amount|productinfo|firstname|email|udf1|udf2|udf3|udf4|udf5||||||SALT

Inbound (response / webhook) is the mirror image with the status added
and the salt in front::

    SALT|status||||||udf5|udf4|udf3|udf2|udf1|email|firstname|productinfo|amount|txnid|key

The five empty positions in each chain are reserved slots and must be
present as empty strings, not dropped. Each direction has its own builder
so either can be read line by line against PayU's documentation.
"""

from typing import Mapping, Optional

from paygate.signing.digest import digests_match, plain_digest

UDF_FIELDS = ("udf1", "udf2", "udf3", "udf4", "udf5")
RESERVED_SLOTS = 5


def _value(fields: Mapping[str, object], name: str) -> str:
    value = fields.get(name)
    return "" if value is None else str(value)


def request_hash_string(fields: Mapping[str, object], salt: str) -> str:
    parts = [
        _value(fields, "key"),
        _value(fields, "txnid"),
        _value(fields, "amount"),
        _value(fields, "productinfo"),
        _value(fields, "firstname"),
        _value(fields, "email"),
    ]
    parts.extend(_value(fields, name) for name in UDF_FIELDS)
    parts.extend([""] * RESERVED_SLOTS)
    parts.append(salt)
    return "|".join(parts)


def response_hash_string(fields: Mapping[str, object], salt: str) -> str:
    parts = [salt, _value(fields, "status")]
    parts.extend([""] * RESERVED_SLOTS)
    parts.extend(_value(fields, name) for name in reversed(UDF_FIELDS))
    parts.extend(
        [
            _value(fields, "email"),
            _value(fields, "firstname"),
            _value(fields, "productinfo"),
            _value(fields, "amount"),
            _value(fields, "txnid"),
            _value(fields, "key"),
        ]
    )
    additional_charges: Optional[str] = _value(fields, "additionalCharges") or None
    if additional_charges:
        parts.insert(0, additional_charges)
    return "|".join(parts)


def request_hash(fields: Mapping[str, object], salt: str) -> str:
    return plain_digest(request_hash_string(fields, salt), "sha512", "hex")


def verify_response(fields: Mapping[str, object], salt: str) -> bool:
    expected = plain_digest(response_hash_string(fields, salt), "sha512", "hex")
    declared = fields.get("hash")
    return digests_match(expected, str(declared) if declared else None, case_insensitive=True)
