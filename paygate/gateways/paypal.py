"""
PayPal Orders v2 adapter.

REST-order flow: create an order, send the customer to the ``approve``
link, capture once approved. Nothing PayPal sends us is taken at face
value: the return redirect and every webhook are confirmed by reading the
order back with our own bearer token, and webhooks are additionally checked
with ``verify-webhook-signature`` when a webhook id is configured.
"""

import json
import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
from urllib.parse import urlencode

from paygate.engine.retry import with_retry
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
from paygate.money import format_amount
from paygate.oauth.token_cache import ClientCredentials, TokenStyle

logger = logging.getLogger("paygate.gateways.paypal")

CUSTOM_ID_MAX = 127

ORDER_STATUS_MAP = {
    "CREATED": TransactionStatus.PENDING,
    "SAVED": TransactionStatus.PENDING,
    "PAYER_ACTION_REQUIRED": TransactionStatus.PENDING,
    "APPROVED": TransactionStatus.PROCESSING,
    "COMPLETED": TransactionStatus.CAPTURED,
    "VOIDED": TransactionStatus.FAILED,
}

CAPTURE_STATUS_MAP = {
    "COMPLETED": TransactionStatus.CAPTURED,
    "PENDING": TransactionStatus.PROCESSING,
    "DECLINED": TransactionStatus.FAILED,
    "FAILED": TransactionStatus.FAILED,
}

HANDLED_EVENTS = {
    "CHECKOUT.ORDER.APPROVED",
    "CHECKOUT.ORDER.COMPLETED",
    "PAYMENT.CAPTURE.COMPLETED",
    "PAYMENT.CAPTURE.PENDING",
    "PAYMENT.CAPTURE.DENIED",
}

SIGNATURE_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


def _custom_id(order: GatewayOrder) -> str:
    custom = json.dumps({"txn": order.transaction_id, "quoteIds": order.quote_ids}, separators=(",", ":"))
    if len(custom) > CUSTOM_ID_MAX:
        custom = json.dumps({"txn": order.transaction_id}, separators=(",", ":"))
    return custom


def _transaction_ref(purchase_unit: dict[str, Any]) -> Optional[str]:
    custom = purchase_unit.get("custom_id")
    if custom:
        try:
            return json.loads(custom).get("txn")
        except (ValueError, AttributeError):
            logger.warning("Unreadable PayPal custom_id: %r", custom)
    return purchase_unit.get("reference_id")


def _amount(block: Optional[dict[str, Any]]) -> tuple[Optional[Decimal], Optional[str]]:
    if not block:
        return None, None
    try:
        return Decimal(str(block.get("value"))), block.get("currency_code")
    except (InvalidOperation, ValueError):
        return None, block.get("currency_code")


def _webhook_order_id(event_type: str, resource: Any) -> Optional[str]:
    """Order id a webhook refers to, or None when the event body is not shaped like PayPal's."""
    if not isinstance(resource, dict):
        return None
    if event_type.startswith("PAYMENT.CAPTURE."):
        supplementary = resource.get("supplementary_data")
        if not isinstance(supplementary, dict):
            return None
        related = supplementary.get("related_ids")
        if not isinstance(related, dict):
            return None
        order_id = related.get("order_id")
    else:
        order_id = resource.get("id")
    return order_id if isinstance(order_id, str) and order_id else None


def order_outcome(data: dict[str, Any]) -> tuple[Optional[TransactionStatus], Optional[Decimal], Optional[str]]:
    """Status and amount of an order, preferring its latest capture when one exists."""
    units = data.get("purchase_units") or [{}]
    captures = (units[0].get("payments") or {}).get("captures") or []
    if captures:
        latest = captures[-1]
        amount, currency = _amount(latest.get("amount"))
        return CAPTURE_STATUS_MAP.get(str(latest.get("status", "")).upper()), amount, currency
    amount, currency = _amount(units[0].get("amount"))
    return ORDER_STATUS_MAP.get(str(data.get("status", "")).upper()), amount, currency


class PayPalGateway(PaymentGateway):
    code = "paypal"
    display_name = "PayPal"
    supported_currencies = frozenset(
        {"USD", "EUR", "GBP", "CAD", "AUD", "JPY", "SGD", "HKD", "CHF", "NZD", "SEK", "NOK", "DKK", "PLN"}
    )
    settlement_currency = "USD"
    required_credentials = ("client_id", "client_secret")
    base_urls = {
        GatewayMode.TEST: "https://api-m.sandbox.paypal.com",
        GatewayMode.LIVE: "https://api-m.paypal.com",
    }
    validity_window = timedelta(hours=72)
    captures_on_approval = True

    def redirects_browser(self, inbound: InboundCallback) -> bool:
        # Webhooks arrive as JSON POSTs; the buyer's return is a GET
        return inbound.method.upper() == "GET"

    def _credentials(self, identity: GatewayIdentity) -> ClientCredentials:
        return ClientCredentials(
            token_url=f"{identity.base_url}/v1/oauth2/token",
            client_id=identity.credential("client_id"),
            client_secret=identity.credential("client_secret"),
            style=TokenStyle.BASIC_AUTH,
            gateway=self.code,
        )

    async def create_payment(self, identity: GatewayIdentity, order: GatewayOrder) -> GatewayPayment:
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": order.transaction_id,
                    "custom_id": _custom_id(order),
                    "description": f"Payment for quotes: {', '.join(order.quote_ids)}"[:127],
                    "amount": {
                        "currency_code": order.currency,
                        "value": format_amount(order.amount, order.currency),
                    },
                }
            ],
            "application_context": {
                "return_url": order.callback_url,
                "cancel_url": f"{order.callback_url}?{urlencode({'outcome': 'cancel'})}",
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
            },
        }
        resp = await self._send_authorized(
            self._credentials(identity),
            "POST",
            f"{identity.base_url}/v2/checkout/orders",
            # Same request id on resend returns the same order
            headers={"PayPal-Request-Id": order.transaction_id, "Prefer": "return=representation"},
            json=body,
        )
        data = self._json_or_raise(resp, "order create")
        approve = next(
            (link["href"] for link in data.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        status, _, _ = order_outcome(data)
        logger.info("PayPal order %s created for %s (status=%s)", data.get("id"), order.transaction_id, data.get("status"))
        return GatewayPayment(
            provider_txn_id=data["id"],
            status=status or TransactionStatus.PENDING,
            redirect_url=approve,
            raw_response={"id": data.get("id"), "status": data.get("status")},
        )

    async def get_order(self, identity: GatewayIdentity, order_id: str) -> dict[str, Any]:
        async def _read() -> dict[str, Any]:
            resp = await self._send_authorized(
                self._credentials(identity), "GET", f"{identity.base_url}/v2/checkout/orders/{order_id}"
            )
            return self._json_or_raise(resp, "order lookup")

        return await with_retry(_read)

    async def capture_payment(
        self, identity: GatewayIdentity, provider_txn_id: str, transaction_id: str
    ) -> CaptureResult:
        resp = await self._send_authorized(
            self._credentials(identity),
            "POST",
            f"{identity.base_url}/v2/checkout/orders/{provider_txn_id}/capture",
            headers={"PayPal-Request-Id": f"capture-{transaction_id}", "Prefer": "return=representation"},
            json={},
        )
        if resp.status_code == 422:
            # ORDER_ALREADY_CAPTURED and friends: the order itself is the answer
            logger.info("PayPal refused capture of %s (422), reading order", provider_txn_id)
            data = await self.get_order(identity, provider_txn_id)
        else:
            data = self._json_or_raise(resp, "order capture")
        status, amount, currency = order_outcome(data)
        return CaptureResult(
            status=status or TransactionStatus.PROCESSING,
            captured_amount=amount if status == TransactionStatus.CAPTURED else None,
            currency=currency,
            raw_response={"id": data.get("id"), "status": data.get("status")},
        )

    def parse_callback(self, inbound: InboundCallback) -> CallbackPayload:
        payload = super().parse_callback(inbound)
        payload.event_type = payload.fields.get("event_type")
        return payload

    async def _webhook_signature_ok(self, identity: GatewayIdentity, payload: CallbackPayload) -> bool:
        body = {name: payload.headers.get(header) for name, header in SIGNATURE_HEADERS.items()}
        if not all(body.values()):
            return False
        body["webhook_id"] = identity.credential("webhook_id")
        body["webhook_event"] = payload.fields
        resp = await self._send_authorized(
            self._credentials(identity),
            "POST",
            f"{identity.base_url}/v1/notifications/verify-webhook-signature",
            json=body,
        )
        data = self._json_or_raise(resp, "webhook signature check")
        return data.get("verification_status") == "SUCCESS"

    async def verify_callback(self, identity: GatewayIdentity, payload: CallbackPayload) -> VerificationResult:
        fields = payload.fields
        cancelled = fields.get("outcome") == "cancel"

        if payload.event_type:
            if identity.credential("webhook_id") and not await self._webhook_signature_ok(identity, payload):
                return VerificationResult(valid=False, reason="webhook signature rejected")
            if payload.event_type not in HANDLED_EVENTS:
                return VerificationResult(valid=True, reason=f"unhandled event {payload.event_type}")
            order_id = _webhook_order_id(payload.event_type, fields.get("resource"))
            if order_id is None:
                return VerificationResult(valid=False, reason="malformed webhook")
        else:
            # Buyer returning from PayPal: ?token=<order id>&PayerID=...
            order_id = fields.get("token")

        if not order_id:
            return VerificationResult(valid=False, reason="no order id in callback")

        order = await self.get_order(identity, order_id)
        status, amount, currency = order_outcome(order)
        units = order.get("purchase_units") or [{}]
        return VerificationResult(
            valid=True,
            transaction_ref=_transaction_ref(units[0]),
            provider_ref=order_id,
            declared_status=status,
            amount=amount,
            currency=currency,
            cancelled=cancelled,
            evidence={"event_type": payload.event_type, "order_status": order.get("status")},
        )
