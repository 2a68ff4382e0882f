"""Gateway lookup by code."""

from typing import Iterator, Optional

import httpx

from paygate.errors import NotFound
from paygate.gateways.airwallex import AirwallexGateway
from paygate.gateways.base import PaymentGateway
from paygate.gateways.esewa import EsewaGateway
from paygate.gateways.paypal import PayPalGateway
from paygate.gateways.payu import PayUGateway
from paygate.gateways.payu_link import PayULinkGateway
from paygate.oauth.token_cache import OAuthTokenCache

DEFAULT_GATEWAYS: tuple[type[PaymentGateway], ...] = (
    EsewaGateway,
    PayUGateway,
    PayPalGateway,
    AirwallexGateway,
    PayULinkGateway,
)


class GatewayRegistry:
    """Adapters keyed by gateway code. New providers are registered, not branched on."""

    def __init__(self, gateways: Optional[list[PaymentGateway]] = None):
        self._gateways: dict[str, PaymentGateway] = {}
        for gateway in gateways or []:
            self.register(gateway)

    def register(self, gateway: PaymentGateway) -> None:
        if not gateway.code:
            raise ValueError(f"{type(gateway).__name__} has no code")
        self._gateways[gateway.code] = gateway

    def get(self, code: str) -> PaymentGateway:
        try:
            return self._gateways[code]
        except KeyError:
            raise NotFound(f"Unknown gateway: {code}", gateway=code) from None

    def __contains__(self, code: object) -> bool:
        return code in self._gateways

    def __iter__(self) -> Iterator[PaymentGateway]:
        return iter(self._gateways.values())

    def codes(self) -> list[str]:
        return sorted(self._gateways)


def build_default_registry(http: httpx.AsyncClient, tokens: OAuthTokenCache) -> GatewayRegistry:
    return GatewayRegistry([cls(http, tokens) for cls in DEFAULT_GATEWAYS])
