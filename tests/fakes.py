"""Fakes for provider APIs and collaborators."""

import base64
import json
from typing import Any, Callable, Optional, Union

import httpx

from paygate.gateways.base import GatewayIdentity
from paygate.models.enums import GatewayMode
from paygate.services.collaborators import PaymentCaptured
from paygate.signing.digest import plain_digest
from paygate.signing.field_hmac import ESEWA_RESPONSE, sign
from paygate.signing.hash_chain import response_hash_string

ESEWA_SECRET = "8gBm/:&EnhH.1/q"
PAYU_SALT = "eCwWELxi"
AIRWALLEX_WEBHOOK_SECRET = "whsec_test"

GATEWAY_CONFIGS = {
    "esewa": {"merchant_code": "EPAYTEST", "secret_key": ESEWA_SECRET, "base_url": "https://esewa.test"},
    "payu": {"merchant_key": "gtKFFx", "salt_key": PAYU_SALT, "base_url": "https://payu.test"},
    "paypal": {"client_id": "pp-client", "client_secret": "pp-secret", "base_url": "https://paypal.test"},
    "airwallex": {
        "client_id": "awx-client",
        "api_key": "awx-key",
        "webhook_secret": AIRWALLEX_WEBHOOK_SECRET,
        "base_url": "https://airwallex.test",
    },
    "payu_link": {
        "client_id": "pl-client",
        "client_secret": "pl-secret",
        "merchant_id": "8847461",
        "base_url": "https://payulink.test",
        "token_url": "https://payulink.test/oauth/token",
    },
}

Responder = Union[dict, Callable[[httpx.Request], httpx.Response]]


class FakeProvider:
    """Routes requests by (method, path) to canned JSON or a handler, and records them."""

    def __init__(self):
        self.routes: dict[tuple[str, str], Responder] = {}
        self.requests: list[httpx.Request] = []

    def on(self, method: str, path: str, response: Responder, status: int = 200) -> None:
        if isinstance(response, dict):
            body = response
            self.routes[(method, path)] = lambda request: httpx.Response(status, json=body)
        else:
            self.routes[(method, path)] = response

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": f"no route for {request.method} {request.url.path}"})
        return route(request)


def request_json(request: httpx.Request) -> dict[str, Any]:
    return json.loads(request.content)


class RecordingEmail:
    def __init__(self, fail: bool = False):
        self.sent: list[tuple[str, str, dict]] = []
        self.fail = fail

    async def send(self, template: str, recipient: str, context: dict) -> None:
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append((template, recipient, context))


class RecordingNotifier:
    def __init__(self):
        self.events: list[PaymentCaptured] = []

    async def payment_captured(self, event: PaymentCaptured) -> None:
        self.events.append(event)



def identity_for(code: str) -> GatewayIdentity:
    config = GATEWAY_CONFIGS[code]
    return GatewayIdentity(code=code, mode=GatewayMode.TEST, base_url=config["base_url"], credentials=config)


def esewa_success_query(transaction_uuid: str, total_amount: str, status: str = "COMPLETE", secret: str = ESEWA_SECRET) -> dict[str, str]:
    """The ``?data=`` eSewa appends to success_url, signed the way eSewa signs it."""
    fields = {
        "transaction_code": "000AWEO",
        "status": status,
        "total_amount": total_amount,
        "transaction_uuid": transaction_uuid,
        "product_code": "EPAYTEST",
        "signed_field_names": ESEWA_RESPONSE.signed_field_names,
    }
    fields["signature"] = sign(ESEWA_RESPONSE, fields, secret)
    return {"data": base64.b64encode(json.dumps(fields).encode()).decode()}


def payu_response_form(txnid: str, transaction_id: str, amount: str, status: str = "success") -> dict[str, str]:
    """Fields PayU posts back to surl/furl, hashed with the response chain."""
    fields = {
        "key": GATEWAY_CONFIGS["payu"]["merchant_key"],
        "txnid": txnid,
        "amount": amount,
        "productinfo": "Order (Q-1)",
        "firstname": "Customer",
        "email": "customer@example.com",
        "udf1": transaction_id,
        "udf2": "",
        "udf3": "",
        "udf4": "",
        "udf5": "",
        "status": status,
        "mihpayid": "403993715531077182",
    }
    fields["hash"] = plain_digest(response_hash_string(fields, PAYU_SALT), "sha512", "hex")
    return fields


def paypal_order(order_id: str, status: str, transaction_id: str, value: str = "0.75", capture_status: Optional[str] = None) -> dict:
    unit = {
        "reference_id": transaction_id,
        "custom_id": json.dumps({"txn": transaction_id}),
        "amount": {"currency_code": "USD", "value": value},
    }
    if capture_status:
        unit["payments"] = {
            "captures": [{"id": "CAP-1", "status": capture_status, "amount": {"currency_code": "USD", "value": value}}]
        }
    return {
        "id": order_id,
        "status": status,
        "purchase_units": [unit],
        "links": [{"rel": "approve", "href": f"https://paypal.test/checkoutnow?token={order_id}"}],
    }


def route_paypal_token(provider: FakeProvider) -> None:
    provider.on("POST", "/v1/oauth2/token", {"access_token": "pp-token", "expires_in": 32400})


def route_airwallex_token(provider: FakeProvider) -> None:
    provider.on("POST", "/api/v1/authentication/login", {"token": "awx-token", "expires_at": "2099-01-01T00:00:00+00:00"})


def route_payu_link_token(provider: FakeProvider) -> None:
    provider.on("POST", "/oauth/token", {"access_token": "pl-token", "expires_in": 7200})
