"""
PayU India hosted checkout adapter (INR only).

The browser POSTs a form carrying a salted SHA-512 hash to PayU; PayU sends
the customer back to ``surl``/``furl`` with the result and a reverse-chain
hash. Depending on the integration PayU comes back with a form POST or a
plain GET, so both are accepted and their fields merged.
"""

import logging
import secrets
import time
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional

from paygate.gateways.base import (
    CallbackPayload,
    GatewayIdentity,
    GatewayOrder,
    GatewayPayment,
    PaymentGateway,
    VerificationResult,
)
from paygate.models.enums import GatewayMode, TransactionStatus
from paygate.money import format_amount
from paygate.signing.hash_chain import UDF_FIELDS, request_hash, verify_response

logger = logging.getLogger("paygate.gateways.payu")

PAYMENT_PATH = "/_payment"
PRODUCTINFO_MAX = 100

STATUS_MAP = {
    "success": TransactionStatus.CAPTURED,
    "pending": TransactionStatus.PROCESSING,
    "failure": TransactionStatus.FAILED,
    "cancel": TransactionStatus.FAILED,
}


def new_txnid() -> str:
    return f"PAYU_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


class PayUGateway(PaymentGateway):
    code = "payu"
    display_name = "PayU"
    supported_currencies = frozenset({"INR"})
    settlement_currency = "INR"
    required_credentials = ("merchant_key", "salt_key")
    base_urls = {
        GatewayMode.TEST: "https://test.payu.in",
        GatewayMode.LIVE: "https://secure.payu.in",
    }
    validity_window = timedelta(hours=24)
    acknowledges_with_redirect = True

    async def create_payment(self, identity: GatewayIdentity, order: GatewayOrder) -> GatewayPayment:
        txnid = new_txnid()
        amount = format_amount(order.amount, self.settlement_currency)
        fields = {
            "key": identity.credential("merchant_key"),
            "txnid": txnid,
            "amount": amount,
            "productinfo": f"Order ({','.join(order.quote_ids)})"[:PRODUCTINFO_MAX],
            "firstname": order.customer.name,
            "email": order.customer.email,
            "phone": order.customer.phone,
            "surl": order.callback_url,
            "furl": order.callback_url,
        }
        # udf1 echoes our transaction id back on the callback
        fields.update({name: "" for name in UDF_FIELDS})
        fields["udf1"] = order.transaction_id
        fields["hash"] = request_hash(fields, identity.credential("salt_key"))

        logger.info("PayU form prepared for %s (%s INR)", txnid, amount)
        return GatewayPayment(
            provider_txn_id=txnid,
            redirect_url=identity.base_url + PAYMENT_PATH,
            form_fields=fields,
            method="POST",
            raw_response={"txnid": txnid, "amount": amount},
        )

    async def verify_callback(self, identity: GatewayIdentity, payload: CallbackPayload) -> VerificationResult:
        fields = payload.fields
        if not fields.get("hash"):
            return VerificationResult(valid=False, reason="hash absent")
        if fields.get("key") != identity.credential("merchant_key"):
            return VerificationResult(valid=False, reason="merchant key mismatch")
        if not verify_response(fields, identity.credential("salt_key")):
            return VerificationResult(valid=False, provider_ref=fields.get("txnid"), reason="hash mismatch")

        status = str(fields.get("status", "")).lower()
        amount: Optional[Decimal]
        try:
            amount = Decimal(str(fields.get("amount")))
        except (InvalidOperation, ValueError):
            amount = None

        declared = STATUS_MAP.get(status)
        return VerificationResult(
            valid=True,
            transaction_ref=fields.get("udf1") or None,
            provider_ref=fields.get("txnid"),
            declared_status=declared,
            amount=amount,
            currency=self.settlement_currency,
            cancelled=declared == TransactionStatus.FAILED,
            evidence={
                "status": status,
                "mihpayid": fields.get("mihpayid"),
                "unmappedstatus": fields.get("unmappedstatus"),
                "error_Message": fields.get("error_Message"),
            },
        )
