"""
Airwallex payment intents adapter.

Auth is a login call with ``x-client-id``/``x-api-key`` that returns a
short-lived bearer token. Intents are created server-side and confirmed in
the browser with the returned ``client_secret``; the outcome arrives as a
signed webhook (``x-airwallex-signature: t=<unix>,v1=<hex>``).
"""

import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from paygate.config import settings
from paygate.gateways.base import (
    CallbackPayload,
    CaptureResult,
    GatewayIdentity,
    GatewayOrder,
    GatewayPayment,
    InboundCallback,
    PaymentGateway,
    VerificationResult,
)
from paygate.models.enums import GatewayMode, TransactionStatus
from paygate.money import quantize
from paygate.oauth.token_cache import ClientCredentials, TokenStyle
from paygate.signing.webhook import verify_webhook

logger = logging.getLogger("paygate.gateways.airwallex")

API_VERSION = "2024-06-14"
SIGNATURE_HEADER = "x-airwallex-signature"

INTENT_STATUS_MAP = {
    "REQUIRES_PAYMENT_METHOD": TransactionStatus.PENDING,
    "REQUIRES_CUSTOMER_ACTION": TransactionStatus.PENDING,
    "PENDING": TransactionStatus.PROCESSING,
    "REQUIRES_CAPTURE": TransactionStatus.PROCESSING,
    "SUCCEEDED": TransactionStatus.CAPTURED,
    "CANCELLED": TransactionStatus.FAILED,
}

EVENT_STATUS_MAP = {
    "payment_intent.succeeded": TransactionStatus.CAPTURED,
    "payment_attempt.settled": TransactionStatus.CAPTURED,
    "payment_intent.requires_capture": TransactionStatus.PROCESSING,
    "payment_intent.failed": TransactionStatus.FAILED,
    "payment_intent.cancelled": TransactionStatus.FAILED,
}


def _decimal(value: Any) -> Optional[Decimal]:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


class AirwallexGateway(PaymentGateway):
    code = "airwallex"
    display_name = "Airwallex"
    supported_currencies = frozenset(
        {"USD", "EUR", "GBP", "AUD", "CAD", "HKD", "SGD", "NZD", "JPY", "CHF", "CNY"}
    )
    settlement_currency = "USD"
    required_credentials = ("client_id", "api_key", "webhook_secret")
    base_urls = {
        GatewayMode.TEST: "https://api-demo.airwallex.com",
        GatewayMode.LIVE: "https://api.airwallex.com",
    }
    validity_window = timedelta(hours=24)

    def _credentials(self, identity: GatewayIdentity) -> ClientCredentials:
        return ClientCredentials(
            token_url=f"{identity.base_url}/api/v1/authentication/login",
            client_id=identity.credential("client_id"),
            client_secret=identity.credential("api_key"),
            style=TokenStyle.API_KEY_HEADERS,
            gateway=self.code,
        )

    def _headers(self) -> dict[str, str]:
        return {"x-api-version": API_VERSION}

    async def create_payment(self, identity: GatewayIdentity, order: GatewayOrder) -> GatewayPayment:
        body = {
            # request_id makes a resend of this create return the same intent
            "request_id": order.transaction_id,
            "amount": float(quantize(order.amount, order.currency)),  # wire format only
            "currency": order.currency,
            "merchant_order_id": order.transaction_id,
            "descriptor": "Order payment",
            "metadata": {
                "quote_ids": ",".join(order.quote_ids),
                "transaction_id": order.transaction_id,
                "user_id": order.user_id or "guest",
            },
            "return_url": order.success_url or order.callback_url,
        }
        resp = await self._send_authorized(
            self._credentials(identity),
            "POST",
            f"{identity.base_url}/api/v1/pa/payment_intents/create",
            headers=self._headers(),
            json=body,
        )
        data = self._json_or_raise(resp, "payment intent create")
        logger.info("Airwallex intent %s created for %s", data.get("id"), order.transaction_id)
        return GatewayPayment(
            provider_txn_id=data["id"],
            status=INTENT_STATUS_MAP.get(str(data.get("status", "")).upper(), TransactionStatus.PENDING),
            client_secret=data.get("client_secret"),
            raw_response={"id": data.get("id"), "status": data.get("status")},
        )

    async def capture_payment(
        self, identity: GatewayIdentity, provider_txn_id: str, transaction_id: str
    ) -> CaptureResult:
        resp = await self._send_authorized(
            self._credentials(identity),
            "POST",
            f"{identity.base_url}/api/v1/pa/payment_intents/{provider_txn_id}/capture",
            headers=self._headers(),
            json={"request_id": f"capture-{transaction_id}"},
        )
        data = self._json_or_raise(resp, "payment intent capture")
        status = INTENT_STATUS_MAP.get(str(data.get("status", "")).upper(), TransactionStatus.PROCESSING)
        return CaptureResult(
            status=status,
            captured_amount=_decimal(data.get("captured_amount") or data.get("amount"))
            if status == TransactionStatus.CAPTURED
            else None,
            currency=data.get("currency"),
            raw_response={"id": data.get("id"), "status": data.get("status")},
        )

    def parse_callback(self, inbound: InboundCallback) -> CallbackPayload:
        return CallbackPayload(
            fields=inbound.json() or {},
            signature=inbound.headers.get(SIGNATURE_HEADER),
            raw_body=inbound.body,
            headers=inbound.headers,
            event_type=(inbound.json() or {}).get("name"),
        )

    async def verify_callback(self, identity: GatewayIdentity, payload: CallbackPayload) -> VerificationResult:
        if not verify_webhook(
            identity.credential("webhook_secret"),
            payload.raw_body,
            payload.signature,
            tolerance_seconds=settings.webhook_tolerance_seconds,
        ):
            return VerificationResult(valid=False, reason="webhook signature invalid or stale")

        obj = (payload.fields.get("data") or {}).get("object") or {}
        if payload.event_type not in EVENT_STATUS_MAP:
            return VerificationResult(valid=True, reason=f"unhandled event {payload.event_type}")

        if payload.event_type.startswith("payment_attempt."):
            intent_id = obj.get("payment_intent_id")
        else:
            intent_id = obj.get("id")
        metadata = obj.get("metadata") or {}
        return VerificationResult(
            valid=True,
            transaction_ref=metadata.get("transaction_id") or obj.get("merchant_order_id"),
            provider_ref=intent_id,
            declared_status=EVENT_STATUS_MAP[payload.event_type],
            amount=_decimal(obj.get("amount")),
            currency=obj.get("currency"),
            evidence={"event_id": payload.fields.get("id"), "event_type": payload.event_type, "intent_status": obj.get("status")},
        )
