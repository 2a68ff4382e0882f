"""Tests for the gateway adapters against faked provider APIs."""

import json
import time
from decimal import Decimal
from urllib.parse import urlencode

import httpx
import pytest

from fakes import (
    AIRWALLEX_WEBHOOK_SECRET,
    ESEWA_SECRET,
    PAYU_SALT,
    esewa_success_query,
    identity_for,
    payu_response_form,
    paypal_order,
    request_json,
    route_airwallex_token,
    route_payu_link_token,
    route_paypal_token,
)
from paygate.errors import CaptureNotSupported, UpstreamError
from paygate.gateways.base import CustomerInfo, GatewayOrder, InboundCallback
from paygate.models.enums import TransactionStatus
from paygate.signing.field_hmac import ESEWA_REQUEST, verify
from paygate.signing.hash_chain import request_hash
from paygate.signing.webhook import sign_webhook


def make_order(amount: str = "100.00", currency: str = "NPR", txn: str = "txn_abc123") -> GatewayOrder:
    return GatewayOrder(
        transaction_id=txn,
        quote_ids=["Q-1", "Q-2"],
        amount=Decimal(amount),
        currency=currency,
        customer=CustomerInfo(name="Asha", email="asha@example.com", phone="9800000000"),
        success_url="https://shop.test/ok",
        cancel_url="https://shop.test/cancel",
        callback_url="https://pay.test/api/callbacks/x",
        user_id="user-7",
    )


class TestEsewa:
    @pytest.mark.asyncio
    async def test_create_builds_signed_form(self, registry):
        gateway = registry.get("esewa")
        payment = await gateway.create_payment(identity_for("esewa"), make_order())

        fields = payment.form_fields
        assert payment.method == "POST"
        assert payment.redirect_url == "https://esewa.test/api/epay/main/v2/form"
        assert payment.provider_txn_id == "txn-abc123"
        assert fields["total_amount"] == "100.00"
        assert fields["signed_field_names"] == "total_amount,transaction_uuid,product_code"
        assert verify(ESEWA_REQUEST, fields, ESEWA_SECRET, fields["signature"])
        assert "outcome=failure" in fields["failure_url"]

    @pytest.mark.asyncio
    async def test_signed_success_callback(self, registry):
        gateway = registry.get("esewa")
        inbound = InboundCallback(method="GET", query=esewa_success_query("txn-abc123", "1,000.0"))

        result = await gateway.verify_callback(identity_for("esewa"), gateway.parse_callback(inbound))

        assert result.valid
        assert result.provider_ref == "txn-abc123"
        assert result.declared_status == TransactionStatus.CAPTURED
        assert result.amount == Decimal("1000.0")

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, registry):
        gateway = registry.get("esewa")
        inbound = InboundCallback(method="GET", query=esewa_success_query("txn-abc123", "100.0", secret="forged"))

        result = await gateway.verify_callback(identity_for("esewa"), gateway.parse_callback(inbound))

        assert not result.valid

    @pytest.mark.asyncio
    async def test_unsigned_failure_redirect_changes_nothing(self, registry):
        gateway = registry.get("esewa")
        inbound = InboundCallback(method="GET", query={"outcome": "failure", "ref": "txn_abc123"})

        result = await gateway.verify_callback(identity_for("esewa"), gateway.parse_callback(inbound))

        assert result.valid
        assert result.cancelled
        assert result.declared_status is None
        assert result.transaction_ref == "txn_abc123"

    @pytest.mark.asyncio
    async def test_cannot_capture(self, registry):
        with pytest.raises(CaptureNotSupported):
            await registry.get("esewa").capture_payment(identity_for("esewa"), "txn-abc123", "txn_abc123")


class TestPayU:
    @pytest.mark.asyncio
    async def test_create_hashes_form(self, registry):
        payment = await registry.get("payu").create_payment(identity_for("payu"), make_order("499.5", "INR"))

        fields = payment.form_fields
        assert payment.redirect_url == "https://payu.test/_payment"
        assert fields["txnid"].startswith("PAYU_")
        assert fields["amount"] == "499.50"
        assert fields["udf1"] == "txn_abc123"
        assert fields["productinfo"] == "Order (Q-1,Q-2)"
        assert fields["surl"] == fields["furl"] == "https://pay.test/api/callbacks/x"
        assert fields["hash"] == request_hash(fields, PAYU_SALT)

    @pytest.mark.asyncio
    async def test_posted_success_verifies(self, registry):
        gateway = registry.get("payu")
        form = payu_response_form("PAYU_1", "txn_abc123", "499.50")
        inbound = InboundCallback(
            method="POST",
            body=urlencode(form),
            headers={"content-type": "application/x-www-form-urlencoded"},
        )

        result = await gateway.verify_callback(identity_for("payu"), gateway.parse_callback(inbound))

        assert result.valid
        assert result.transaction_ref == "txn_abc123"
        assert result.provider_ref == "PAYU_1"
        assert result.declared_status == TransactionStatus.CAPTURED
        assert result.evidence["mihpayid"] == "403993715531077182"

    @pytest.mark.asyncio
    async def test_get_redirect_accepted_too(self, registry):
        gateway = registry.get("payu")
        inbound = InboundCallback(method="GET", query=payu_response_form("PAYU_1", "txn_abc123", "499.50", status="failure"))

        result = await gateway.verify_callback(identity_for("payu"), gateway.parse_callback(inbound))

        assert result.valid
        assert result.declared_status == TransactionStatus.FAILED
        assert result.cancelled

    @pytest.mark.asyncio
    async def test_tampered_amount_rejected(self, registry):
        gateway = registry.get("payu")
        form = payu_response_form("PAYU_1", "txn_abc123", "499.50")
        form["amount"] = "4.99"
        inbound = InboundCallback(method="GET", query=form)

        result = await gateway.verify_callback(identity_for("payu"), gateway.parse_callback(inbound))

        assert not result.valid


class TestPayPal:
    @pytest.mark.asyncio
    async def test_create_order(self, registry, provider):
        route_paypal_token(provider)
        provider.on("POST", "/v2/checkout/orders", paypal_order("ORDER-1", "CREATED", "txn_abc123"), status=201)

        payment = await registry.get("paypal").create_payment(identity_for("paypal"), make_order("0.75", "USD"))

        assert payment.provider_txn_id == "ORDER-1"
        assert payment.redirect_url == "https://paypal.test/checkoutnow?token=ORDER-1"
        assert payment.status == TransactionStatus.PENDING

        create = provider.calls("POST", "/v2/checkout/orders")[0]
        body = request_json(create)
        assert create.headers["paypal-request-id"] == "txn_abc123"
        assert create.headers["authorization"] == "Bearer pp-token"
        assert body["purchase_units"][0]["amount"] == {"currency_code": "USD", "value": "0.75"}
        assert json.loads(body["purchase_units"][0]["custom_id"]) == {"txn": "txn_abc123", "quoteIds": ["Q-1", "Q-2"]}
        assert body["application_context"]["return_url"] == "https://pay.test/api/callbacks/x"

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_once(self, registry, provider):
        tokens = iter(["stale", "fresh"])
        provider.on(
            "POST",
            "/v1/oauth2/token",
            lambda r: httpx.Response(200, json={"access_token": next(tokens), "expires_in": 32400}),
        )

        def orders(request):
            if request.headers["authorization"] == "Bearer stale":
                return httpx.Response(401, json={"error": "invalid_token"})
            return httpx.Response(201, json=paypal_order("ORDER-2", "CREATED", "txn_abc123"))

        provider.on("POST", "/v2/checkout/orders", orders)

        payment = await registry.get("paypal").create_payment(identity_for("paypal"), make_order("5.00", "USD"))

        assert payment.provider_txn_id == "ORDER-2"
        assert len(provider.calls("POST", "/v1/oauth2/token")) == 2
        assert len(provider.calls("POST", "/v2/checkout/orders")) == 2

    @pytest.mark.asyncio
    async def test_capture(self, registry, provider):
        route_paypal_token(provider)
        provider.on(
            "POST",
            "/v2/checkout/orders/ORDER-1/capture",
            paypal_order("ORDER-1", "COMPLETED", "txn_abc123", capture_status="COMPLETED"),
            status=201,
        )

        result = await registry.get("paypal").capture_payment(identity_for("paypal"), "ORDER-1", "txn_abc123")

        assert result.status == TransactionStatus.CAPTURED
        assert result.captured_amount == Decimal("0.75")
        capture = provider.calls("POST", "/v2/checkout/orders/ORDER-1/capture")[0]
        assert capture.headers["paypal-request-id"] == "capture-txn_abc123"

    @pytest.mark.asyncio
    async def test_already_captured_reads_order(self, registry, provider):
        route_paypal_token(provider)
        provider.on("POST", "/v2/checkout/orders/ORDER-1/capture", {"name": "UNPROCESSABLE_ENTITY"}, status=422)
        provider.on("GET", "/v2/checkout/orders/ORDER-1", paypal_order("ORDER-1", "COMPLETED", "txn_abc123", capture_status="COMPLETED"))

        result = await registry.get("paypal").capture_payment(identity_for("paypal"), "ORDER-1", "txn_abc123")

        assert result.status == TransactionStatus.CAPTURED

    @pytest.mark.asyncio
    async def test_return_redirect_confirmed_by_order_lookup(self, registry, provider):
        route_paypal_token(provider)
        provider.on("GET", "/v2/checkout/orders/ORDER-1", paypal_order("ORDER-1", "APPROVED", "txn_abc123"))
        gateway = registry.get("paypal")
        inbound = InboundCallback(method="GET", query={"token": "ORDER-1", "PayerID": "P1"})

        result = await gateway.verify_callback(identity_for("paypal"), gateway.parse_callback(inbound))

        assert result.valid
        assert result.provider_ref == "ORDER-1"
        assert result.transaction_ref == "txn_abc123"
        assert result.declared_status == TransactionStatus.PROCESSING
        assert gateway.redirects_browser(inbound)

    @pytest.mark.asyncio
    async def test_capture_webhook_uses_related_order(self, registry, provider):
        route_paypal_token(provider)
        provider.on("GET", "/v2/checkout/orders/ORDER-9", paypal_order("ORDER-9", "COMPLETED", "txn_abc123", capture_status="COMPLETED"))
        gateway = registry.get("paypal")
        event = {
            "event_type": "PAYMENT.CAPTURE.COMPLETED",
            "resource": {"id": "CAP-1", "supplementary_data": {"related_ids": {"order_id": "ORDER-9"}}},
        }
        inbound = InboundCallback(method="POST", body=json.dumps(event), headers={"content-type": "application/json"})

        result = await gateway.verify_callback(identity_for("paypal"), gateway.parse_callback(inbound))

        assert result.provider_ref == "ORDER-9"
        assert result.declared_status == TransactionStatus.CAPTURED
        assert not gateway.redirects_browser(inbound)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "event",
        [
            {"event_type": "CHECKOUT.ORDER.APPROVED", "resource": "x"},
            {"event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": {"supplementary_data": "x"}},
            {"event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": {"supplementary_data": {"related_ids": []}}},
            {"event_type": "CHECKOUT.ORDER.APPROVED", "resource": {"id": 42}},
        ],
    )
    async def test_malformed_webhook_rejected(self, registry, provider, event):
        gateway = registry.get("paypal")
        inbound = InboundCallback(method="POST", body=json.dumps(event), headers={"content-type": "application/json"})

        result = await gateway.verify_callback(identity_for("paypal"), gateway.parse_callback(inbound))

        assert not result.valid
        assert result.reason == "malformed webhook"
        assert provider.requests == []


class TestAirwallex:
    @pytest.mark.asyncio
    async def test_create_intent(self, registry, provider):
        route_airwallex_token(provider)
        provider.on(
            "POST",
            "/api/v1/pa/payment_intents/create",
            {"id": "int_1", "status": "REQUIRES_PAYMENT_METHOD", "client_secret": "cs_1"},
            status=201,
        )

        payment = await registry.get("airwallex").create_payment(identity_for("airwallex"), make_order("12.34", "USD"))

        assert payment.provider_txn_id == "int_1"
        assert payment.client_secret == "cs_1"
        create = provider.calls("POST", "/api/v1/pa/payment_intents/create")[0]
        body = request_json(create)
        assert create.headers["x-api-version"] == "2024-06-14"
        assert body["request_id"] == "txn_abc123"
        assert body["amount"] == 12.34
        assert body["metadata"]["quote_ids"] == "Q-1,Q-2"

    @pytest.mark.asyncio
    async def test_webhook_signature(self, registry):
        gateway = registry.get("airwallex")
        event = {
            "id": "evt_1",
            "name": "payment_intent.succeeded",
            "data": {"object": {"id": "int_1", "amount": 12.34, "currency": "USD", "metadata": {"transaction_id": "txn_abc123"}}},
        }
        body = json.dumps(event)
        header = sign_webhook(AIRWALLEX_WEBHOOK_SECRET, body, int(time.time()))
        inbound = InboundCallback(method="POST", body=body, headers={"x-airwallex-signature": header})

        result = await gateway.verify_callback(identity_for("airwallex"), gateway.parse_callback(inbound))
        assert result.valid
        assert result.provider_ref == "int_1"
        assert result.declared_status == TransactionStatus.CAPTURED

        forged = InboundCallback(method="POST", body=body.replace("12.34", "1.00"), headers={"x-airwallex-signature": header})
        assert not (await gateway.verify_callback(identity_for("airwallex"), gateway.parse_callback(forged))).valid


class TestPayULink:
    @pytest.mark.asyncio
    async def test_create_link(self, registry, provider):
        route_payu_link_token(provider)
        provider.on(
            "POST",
            "/payment-links",
            {"status": 0, "result": {"paymentLink": "https://pl.test/abc", "paymentLinkId": 42}},
        )

        payment = await registry.get("payu_link").create_payment(identity_for("payu_link"), make_order("250", "INR"))

        assert payment.redirect_url == "https://pl.test/abc"
        assert payment.provider_txn_id.startswith("PLV2")
        create = provider.calls("POST", "/payment-links")[0]
        assert create.headers["merchantid"] == "8847461"
        assert request_json(create)["subAmount"] == 250.0
        token = provider.calls("POST", "/oauth/token")[0]
        assert b"scope=create_payment_links" in token.content

    @pytest.mark.asyncio
    async def test_rejected_create_is_upstream_error(self, registry, provider):
        route_payu_link_token(provider)
        provider.on("POST", "/payment-links", {"status": -1, "message": "invalid merchant"})

        with pytest.raises(UpstreamError):
            await registry.get("payu_link").create_payment(identity_for("payu_link"), make_order("250", "INR"))

    @pytest.mark.asyncio
    async def test_callback_confirmed_by_lookup(self, registry, provider):
        route_payu_link_token(provider)
        provider.on("GET", "/payment-links/PLV2ABC", {"status": 0, "result": {"status": "PAID", "udf1": "txn_abc123", "subAmount": 250}})
        gateway = registry.get("payu_link")
        inbound = InboundCallback(method="POST", body=json.dumps({"invoiceNumber": "PLV2ABC"}), headers={"content-type": "application/json"})

        result = await gateway.verify_callback(identity_for("payu_link"), gateway.parse_callback(inbound))

        assert result.valid
        assert result.transaction_ref == "txn_abc123"
        assert result.declared_status == TransactionStatus.CAPTURED
        assert result.amount == Decimal("250")
