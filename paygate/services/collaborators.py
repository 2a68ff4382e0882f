"""
Services the payment core consumes but does not own.

Exchange rates, quotes, customer profiles, email and order fulfillment
live elsewhere. The core only depends on these protocols; in-process
defaults live in ``paygate.services.defaults``.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional, Protocol


@dataclass
class QuoteSummary:
    id: str
    total: Decimal
    currency: str
    product_name: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None


@dataclass
class PaymentCaptured:
    """Emitted once per transaction when it reaches ``captured``."""

    transaction_id: str
    quote_ids: list[str]
    amount: Decimal
    currency: str
    gateway: str
    provider_txn_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


class ExchangeRateProvider(Protocol):
    async def get_rate(self, source: str, target: str) -> Decimal:
        """Units of ``target`` per one unit of ``source``."""
        ...


class QuoteReader(Protocol):
    async def get_quotes(self, quote_ids: list[str]) -> list[QuoteSummary]:
        ...


class ProfileLookup(Protocol):
    async def get_email(self, user_id: str) -> Optional[str]:
        ...


class EmailDispatcher(Protocol):
    async def send(self, template: str, recipient: str, context: dict[str, Any]) -> None:
        ...


class FulfillmentNotifier(Protocol):
    async def payment_captured(self, event: PaymentCaptured) -> None:
        ...
