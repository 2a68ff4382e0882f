from paygate.signing.field_hmac import (
    ESEWA_REQUEST,
    ESEWA_RESPONSE,
    FIELD_LAYOUTS,
    FieldLayout,
    canonical_string,
    gateway_canonical_string,
    get_layout,
)
from paygate.signing.hash_chain import request_hash, request_hash_string, response_hash_string, verify_response
from paygate.signing.webhook import parse_signature_header, sign_webhook, verify_webhook

__all__ = [
    "FieldLayout",
    "FIELD_LAYOUTS",
    "ESEWA_REQUEST",
    "ESEWA_RESPONSE",
    "canonical_string",
    "gateway_canonical_string",
    "get_layout",
    "request_hash",
    "request_hash_string",
    "response_hash_string",
    "verify_response",
    "parse_signature_header",
    "sign_webhook",
    "verify_webhook",
]
