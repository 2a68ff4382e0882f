"""
eSewa ePay v2 adapter (Nepal, NPR only).

Redirect-form flow: we hand the browser a signed form to POST to eSewa.
eSewa redirects back to ``success_url`` with a base64 JSON blob in the
``data`` query parameter, signed with the same HMAC-SHA256 scheme over its
own field list. ``failure_url`` is hit with no signed data at all, so a
failure redirect is never enough to mark a payment failed; those attempts
expire through the sweeper instead.
"""

import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional
from urllib.parse import urlencode

from paygate.gateways.base import (
    CallbackPayload,
    GatewayIdentity,
    GatewayOrder,
    GatewayPayment,
    InboundCallback,
    PaymentGateway,
    VerificationResult,
    decode_base64_json,
)
from paygate.models.enums import GatewayMode, TransactionStatus
from paygate.money import format_amount
from paygate.signing.field_hmac import ESEWA_REQUEST, ESEWA_RESPONSE, sign, verify

logger = logging.getLogger("paygate.gateways.esewa")

FORM_PATH = "/api/epay/main/v2/form"

STATUS_MAP = {
    "COMPLETE": TransactionStatus.CAPTURED,
    "PENDING": TransactionStatus.PROCESSING,
    "AMBIGUOUS": TransactionStatus.PROCESSING,
    "CANCELED": TransactionStatus.FAILED,
    "NOT_FOUND": TransactionStatus.EXPIRED,
}


def _parse_amount(value: object) -> Optional[Decimal]:
    # eSewa echoes amounts with thousands separators, e.g. "1,000.0"
    try:
        return Decimal(str(value).replace(",", ""))
    except (InvalidOperation, ValueError):
        return None


class EsewaGateway(PaymentGateway):
    code = "esewa"
    display_name = "eSewa"
    supported_currencies = frozenset({"NPR"})
    settlement_currency = "NPR"
    required_credentials = ("merchant_code", "secret_key")
    base_urls = {
        GatewayMode.TEST: "https://rc-epay.esewa.com.np",
        GatewayMode.LIVE: "https://epay.esewa.com.np",
    }
    validity_window = timedelta(hours=24)
    acknowledges_with_redirect = True

    async def create_payment(self, identity: GatewayIdentity, order: GatewayOrder) -> GatewayPayment:
        # eSewa accepts only alphanumerics and hyphens in transaction_uuid
        transaction_uuid = order.transaction_id.replace("_", "-")
        total = format_amount(order.amount, self.settlement_currency)
        fields = {
            "amount": total,
            "tax_amount": "0",
            "total_amount": total,
            "transaction_uuid": transaction_uuid,
            "product_code": identity.credential("merchant_code"),
            "product_service_charge": "0",
            "product_delivery_charge": "0",
            "success_url": order.callback_url,
            "failure_url": f"{order.callback_url}?{urlencode({'outcome': 'failure', 'ref': order.transaction_id})}",
            "signed_field_names": ESEWA_REQUEST.signed_field_names,
        }
        fields["signature"] = sign(ESEWA_REQUEST, fields, identity.credential("secret_key"))

        logger.info("eSewa form prepared for %s (%s NPR)", transaction_uuid, total)
        return GatewayPayment(
            provider_txn_id=transaction_uuid,
            redirect_url=identity.base_url + FORM_PATH,
            form_fields=fields,
            method="POST",
            raw_response={"transaction_uuid": transaction_uuid, "total_amount": total},
        )

    def parse_callback(self, inbound: InboundCallback) -> CallbackPayload:
        merged = dict(inbound.query)
        merged.update(inbound.form())
        decoded = decode_base64_json(merged.get("data", ""))
        if decoded is None:
            return CallbackPayload(fields=merged, raw_body=inbound.body, headers=inbound.headers)
        return CallbackPayload(
            fields={k: v for k, v in decoded.items() if k != "signature"},
            signature=decoded.get("signature"),
            raw_body=inbound.body,
            headers=inbound.headers,
        )

    async def verify_callback(self, identity: GatewayIdentity, payload: CallbackPayload) -> VerificationResult:
        fields = payload.fields
        if payload.signature is None:
            if fields.get("outcome") == "failure":
                # Unsigned: nothing to act on, but the customer should land on the cancel page.
                return VerificationResult(
                    valid=True,
                    transaction_ref=fields.get("ref"),
                    cancelled=True,
                    reason="customer returned through failure_url",
                )
            return VerificationResult(valid=False, reason="signature absent")

        if not verify(ESEWA_RESPONSE, fields, identity.credential("secret_key"), payload.signature):
            return VerificationResult(valid=False, provider_ref=fields.get("transaction_uuid"), reason="signature mismatch")

        if fields.get("product_code") != identity.credential("merchant_code"):
            return VerificationResult(valid=False, reason="product_code does not match merchant")

        status = str(fields.get("status", "")).upper()
        return VerificationResult(
            valid=True,
            provider_ref=fields.get("transaction_uuid"),
            declared_status=STATUS_MAP.get(status),
            amount=_parse_amount(fields.get("total_amount")),
            currency=self.settlement_currency,
            evidence={"status": status, "transaction_code": fields.get("transaction_code")},
        )
