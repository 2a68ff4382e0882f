"""
Abstract payment gateway interface.

Every external provider (eSewa, PayU, PayPal, Airwallex, PayU payment
links) implements this interface. Adapters talk to the provider and return
plain values; they never touch the ledger. The creation orchestrator and the
callback processor own persistence, so adapters can be exercised with a fake
HTTP transport and no database.
"""

import base64
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any, Mapping, Optional
from urllib.parse import parse_qsl

import httpx

from paygate.engine.retry import RETRIABLE_STATUS_CODES
from paygate.errors import CaptureNotSupported, GatewayMisconfigured, UpstreamError
from paygate.models.enums import GatewayMode, TransactionStatus
from paygate.oauth.token_cache import ClientCredentials, OAuthTokenCache

logger = logging.getLogger("paygate.gateways")


@dataclass(frozen=True)
class GatewayIdentity:
    """Resolved configuration for one gateway, loaded per request."""

    code: str
    mode: GatewayMode
    base_url: str
    credentials: Mapping[str, Any]

    @property
    def is_live(self) -> bool:
        return self.mode == GatewayMode.LIVE

    def credential(self, name: str, default: Any = None) -> Any:
        return self.credentials.get(name, default)


@dataclass
class CustomerInfo:
    name: str = "Customer"
    email: str = "customer@example.com"
    phone: str = "9999999999"


@dataclass
class PaymentIntentRequest:
    """What a caller asks for. ``amount`` may be omitted and read from the quotes."""

    gateway: str
    quote_ids: list[str]
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    customer: CustomerInfo = field(default_factory=CustomerInfo)
    success_url: str = ""
    cancel_url: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None


@dataclass
class GatewayOrder:
    """A payment the adapter should open with the provider, already in the gateway's currency."""

    transaction_id: str
    quote_ids: list[str]
    amount: Decimal
    currency: str
    customer: CustomerInfo
    success_url: str
    cancel_url: str
    callback_url: str
    metadata: dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None


@dataclass
class GatewayPayment:
    """Result of opening a payment with the provider."""

    provider_txn_id: str
    status: TransactionStatus = TransactionStatus.PENDING
    redirect_url: Optional[str] = None  # where to send the customer
    form_fields: Optional[dict[str, str]] = None  # POST these to redirect_url
    method: str = "GET"
    client_secret: Optional[str] = None  # handed to the browser SDK, never persisted
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class CaptureResult:
    status: TransactionStatus
    captured_amount: Optional[Decimal] = None
    currency: Optional[str] = None
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class InboundCallback:
    """The HTTP request a provider (or a redirected browser) sent us, untouched."""

    method: str
    query: dict[str, str] = field(default_factory=dict)
    body: str = ""
    headers: dict[str, str] = field(default_factory=dict)  # lower-cased names

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "").split(";")[0].strip().lower()

    def form(self) -> dict[str, str]:
        if not self.body or self.content_type == "application/json" or self.body.lstrip().startswith("{"):
            return {}
        return dict(parse_qsl(self.body, keep_blank_values=True))

    def json(self) -> Optional[dict[str, Any]]:
        if not self.body:
            return None
        try:
            data = json.loads(self.body)
        except ValueError:
            return None
        return data if isinstance(data, dict) else None


@dataclass
class CallbackPayload:
    """Normalized field map extracted from an inbound callback."""

    fields: dict[str, Any]
    signature: Optional[str] = None
    raw_body: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    event_type: Optional[str] = None


@dataclass
class VerificationResult:
    """
    Outcome of checking a callback against the provider's trust path.

    ``transaction_ref`` is our own transaction id when the provider echoed it
    back; ``provider_ref`` is the provider's id for the payment. Either may be
    used to find the transaction. ``declared_status`` is None when the event
    carries no status change we act on.
    """

    valid: bool
    transaction_ref: Optional[str] = None
    provider_ref: Optional[str] = None
    declared_status: Optional[TransactionStatus] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    reason: Optional[str] = None
    cancelled: bool = False  # customer backed out; send them to the cancel page
    evidence: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(ABC):
    """Abstract base class for payment gateways."""

    code: str = ""
    display_name: str = ""
    supported_currencies: frozenset[str] = frozenset()
    settlement_currency: str = ""
    required_credentials: tuple[str, ...] = ()
    base_urls: dict[GatewayMode, str] = {}
    validity_window: timedelta = timedelta(hours=24)
    acknowledges_with_redirect = False  # browser redirect vs. plain 200
    captures_on_approval = False  # capture as soon as a verified callback says "approved"

    def __init__(self, http: httpx.AsyncClient, tokens: Optional[OAuthTokenCache] = None):
        self._http = http
        self._tokens = tokens

    def supports_currency(self, currency: str) -> bool:
        return currency.upper() in self.supported_currencies

    def redirects_browser(self, inbound: InboundCallback) -> bool:
        """Whether this callback came from a customer's browser and should be answered with a redirect."""
        return self.acknowledges_with_redirect

    @abstractmethod
    async def create_payment(self, identity: GatewayIdentity, order: GatewayOrder) -> GatewayPayment:
        """
        Open a payment with the provider.

        Not retried here: a failure is reported and the caller starts a new
        attempt. Adapters whose provider accepts a client idempotency key send
        the transaction id as that key.

        Raises:
            UpstreamError: Timeout, network failure or non-2xx from the provider.
            GatewayMisconfigured: Credentials rejected.
        """
        ...

    async def capture_payment(
        self, identity: GatewayIdentity, provider_txn_id: str, transaction_id: str
    ) -> CaptureResult:
        """Second step for gateways that authorize first. Redirect-only gateways cannot capture."""
        raise CaptureNotSupported(f"{self.code} completes payments on redirect", gateway=self.code)

    def parse_callback(self, inbound: InboundCallback) -> CallbackPayload:
        """Default: merge query string, form body and JSON body into one field map."""
        fields: dict[str, Any] = dict(inbound.query)
        fields.update(inbound.form())
        fields.update(inbound.json() or {})
        return CallbackPayload(fields=fields, raw_body=inbound.body, headers=inbound.headers)

    @abstractmethod
    async def verify_callback(self, identity: GatewayIdentity, payload: CallbackPayload) -> VerificationResult:
        """Check a callback. Pure with respect to our state; may call the provider."""
        ...

    # --- helpers shared by the HTTP adapters ---

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._http.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise UpstreamError(f"{self.code} request timed out", gateway=self.code, retriable=True) from e
        except httpx.RequestError as e:
            raise UpstreamError(f"{self.code} request failed: {e}", gateway=self.code, retriable=True) from e

    async def _send_authorized(
        self, creds: ClientCredentials, method: str, url: str, headers: Optional[dict[str, str]] = None, **kwargs: Any
    ) -> httpx.Response:
        """Send with a cached bearer token; on 401 refresh the token once and resend."""
        if self._tokens is None:
            raise GatewayMisconfigured(f"{self.code} needs a token cache", gateway=self.code)
        token = await self._tokens.get_token(creds)
        resp = await self._send(method, url, headers={**(headers or {}), "Authorization": f"Bearer {token}"}, **kwargs)
        if resp.status_code == 401:
            logger.warning("%s rejected cached token, refreshing", self.code)
            token = await self._tokens.refresh_token(creds)
            resp = await self._send(method, url, headers={**(headers or {}), "Authorization": f"Bearer {token}"}, **kwargs)
        return resp

    def _json_or_raise(self, resp: httpx.Response, what: str) -> dict[str, Any]:
        if resp.status_code >= 400:
            raise UpstreamError(
                f"{self.code} {what} returned {resp.status_code}",
                gateway=self.code,
                status_code=resp.status_code,
                retriable=resp.status_code in RETRIABLE_STATUS_CODES,
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamError(f"{self.code} {what} returned invalid JSON", gateway=self.code) from e
        if not isinstance(data, dict):
            raise UpstreamError(f"{self.code} {what} returned unexpected payload", gateway=self.code)
        return data


def decode_base64_json(value: str) -> Optional[dict[str, Any]]:
    """Decode a base64 (standard or URL-safe) JSON object, or None if it is not one."""
    if not value:
        return None
    padded = value + "=" * (-len(value) % 4)
    for decoder in (base64.b64decode, base64.urlsafe_b64decode):
        try:
            data = json.loads(decoder(padded).decode("utf-8"))
        except (ValueError, UnicodeDecodeError):
            continue
        if isinstance(data, dict):
            return data
    return None
