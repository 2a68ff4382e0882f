"""
PayU payment links (invoicing) adapter.

Creates a shareable payment link through PayU's OneAPI. Auth is a
client-credentials token scoped to ``create_payment_links``. PayU's link
notifications are not trusted on their own: every callback is confirmed by
reading the link back with our token.
"""

import logging
import secrets
import time
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from paygate.engine.retry import with_retry
from paygate.errors import UpstreamError
from paygate.gateways.base import (
    CallbackPayload,
    GatewayIdentity,
    GatewayOrder,
    GatewayPayment,
    PaymentGateway,
    VerificationResult,
)
from paygate.models.enums import GatewayMode, TransactionStatus
from paygate.money import quantize
from paygate.oauth.token_cache import ClientCredentials, TokenStyle

logger = logging.getLogger("paygate.gateways.payu_link")

SCOPE = "create_payment_links"
TOKEN_URLS = {
    GatewayMode.TEST: "https://uat-accounts.payu.in/oauth/token",
    GatewayMode.LIVE: "https://accounts.payu.in/oauth/token",
}

LINK_STATUS_MAP = {
    "paid": TransactionStatus.CAPTURED,
    "completed": TransactionStatus.CAPTURED,
    "success": TransactionStatus.CAPTURED,
    "partially_paid": TransactionStatus.PROCESSING,
    "active": TransactionStatus.PENDING,
    "unpaid": TransactionStatus.PENDING,
    "expired": TransactionStatus.EXPIRED,
    "cancelled": TransactionStatus.FAILED,
    "deactivated": TransactionStatus.FAILED,
}

REFERENCE_FIELDS = ("invoiceNumber", "invoice_number", "paymentLinkId")


def new_invoice_number() -> str:
    # PayU wants alphanumerics only
    return f"PLV2{int(time.time() * 1000)}{secrets.token_hex(5).upper()}"


def _decimal(value: Any) -> Optional[Decimal]:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


class PayULinkGateway(PaymentGateway):
    code = "payu_link"
    display_name = "PayU Payment Link"
    supported_currencies = frozenset({"INR"})
    settlement_currency = "INR"
    required_credentials = ("client_id", "client_secret", "merchant_id")
    base_urls = {
        GatewayMode.TEST: "https://uatoneapi.payu.in",
        GatewayMode.LIVE: "https://oneapi.payu.in",
    }
    validity_window = timedelta(days=7)

    def _credentials(self, identity: GatewayIdentity) -> ClientCredentials:
        return ClientCredentials(
            token_url=identity.credential("token_url") or TOKEN_URLS[identity.mode],
            client_id=identity.credential("client_id"),
            client_secret=identity.credential("client_secret"),
            scope=SCOPE,
            style=TokenStyle.FORM_POST,
            gateway=self.code,
        )

    def _headers(self, identity: GatewayIdentity) -> dict[str, str]:
        return {"merchantId": str(identity.credential("merchant_id"))}

    async def create_payment(self, identity: GatewayIdentity, order: GatewayOrder) -> GatewayPayment:
        invoice_number = new_invoice_number()
        body = {
            "subAmount": float(quantize(order.amount, order.currency)),  # wire format only
            "isPartialPaymentAllowed": False,
            "description": f"Payment for Order {', '.join(order.quote_ids)}",
            "source": "API",
            "invoiceNumber": invoice_number,
            "customerName": order.customer.name,
            "customerEmail": order.customer.email,
            "customerPhone": order.customer.phone,
            "udf1": order.transaction_id,
        }
        resp = await self._send_authorized(
            self._credentials(identity),
            "POST",
            f"{identity.base_url}/payment-links",
            headers=self._headers(identity),
            json=body,
        )
        data = self._json_or_raise(resp, "payment link create")
        if data.get("status") != 0:
            raise UpstreamError(
                f"payu_link create rejected: {data.get('message') or data.get('status')}",
                gateway=self.code,
            )
        result = data.get("result") or {}
        link = result.get("paymentLink")
        if not link:
            raise UpstreamError("payu_link create returned no link", gateway=self.code)

        logger.info("PayU payment link %s created for %s", invoice_number, order.transaction_id)
        return GatewayPayment(
            provider_txn_id=invoice_number,
            redirect_url=link,
            raw_response={"invoiceNumber": invoice_number, "paymentLinkId": result.get("paymentLinkId")},
        )

    async def get_link(self, identity: GatewayIdentity, invoice_number: str) -> dict[str, Any]:
        async def _read() -> dict[str, Any]:
            resp = await self._send_authorized(
                self._credentials(identity),
                "GET",
                f"{identity.base_url}/payment-links/{invoice_number}",
                headers=self._headers(identity),
            )
            return self._json_or_raise(resp, "payment link lookup")

        return await with_retry(_read)

    async def verify_callback(self, identity: GatewayIdentity, payload: CallbackPayload) -> VerificationResult:
        reference = next((payload.fields[name] for name in REFERENCE_FIELDS if payload.fields.get(name)), None)
        if not reference:
            return VerificationResult(valid=False, reason="no payment link reference in callback")

        data = await self.get_link(identity, str(reference))
        if data.get("status") != 0:
            return VerificationResult(valid=False, provider_ref=str(reference), reason="payment link not found upstream")

        result = data.get("result") or {}
        link_status = str(result.get("status", "")).lower()
        return VerificationResult(
            valid=True,
            transaction_ref=result.get("udf1") or None,
            provider_ref=str(reference),
            declared_status=LINK_STATUS_MAP.get(link_status),
            amount=_decimal(result.get("amountCollected") or result.get("subAmount")),
            currency=self.settlement_currency,
            evidence={"link_status": link_status},
        )
