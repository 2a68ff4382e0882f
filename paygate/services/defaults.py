"""
In-process stand-ins for the external collaborators.

Good enough to run the service locally and in tests:
  - Exchange rates from a static USD-based table (settings.rates_from_usd)
  - Quotes from an in-memory dict
  - Email and fulfillment events written to the log

In production these are replaced by clients for the real rate service,
quote store, mailer and order pipeline.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping, Optional

from paygate.config import settings
from paygate.errors import UnsupportedCurrency
from paygate.services.collaborators import (
    EmailDispatcher,
    ExchangeRateProvider,
    FulfillmentNotifier,
    PaymentCaptured,
    ProfileLookup,
    QuoteReader,
    QuoteSummary,
)

logger = logging.getLogger("paygate.services")


class UsdRateTable:
    """
    Cross rates derived from a table of "units per 1 USD".

    ``get_rate("NPR", "USD")`` with NPR at 133 returns 1/133, so 100 NPR
    converts to 0.75 USD.
    """

    def __init__(self, rates_from_usd: Optional[Mapping[str, Decimal]] = None):
        table = rates_from_usd if rates_from_usd is not None else settings.rates_from_usd
        self._rates = {code.upper(): Decimal(rate) for code, rate in table.items()}
        self._rates.setdefault("USD", Decimal("1"))

    def _per_usd(self, currency: str) -> Decimal:
        rate = self._rates.get(currency.upper())
        if rate is None or rate <= 0:
            raise UnsupportedCurrency(currency)
        return rate

    async def get_rate(self, source: str, target: str) -> Decimal:
        if source.upper() == target.upper():
            return Decimal("1")
        return self._per_usd(target) / self._per_usd(source)


class InMemoryQuoteReader:
    def __init__(self, quotes: Optional[Mapping[str, QuoteSummary]] = None):
        self._quotes = dict(quotes or {})

    def add(self, quote: QuoteSummary) -> None:
        self._quotes[quote.id] = quote

    async def get_quotes(self, quote_ids: list[str]) -> list[QuoteSummary]:
        return [self._quotes[q] for q in quote_ids if q in self._quotes]


class InMemoryProfileLookup:
    def __init__(self, emails: Optional[Mapping[str, str]] = None):
        self._emails = dict(emails or {})

    async def get_email(self, user_id: str) -> Optional[str]:
        return self._emails.get(user_id)


class LoggingEmailDispatcher:
    async def send(self, template: str, recipient: str, context: dict[str, Any]) -> None:
        logger.info("EMAIL | template=%s to=%s | %s", template, recipient, context)


class LoggingFulfillmentNotifier:
    async def payment_captured(self, event: PaymentCaptured) -> None:
        logger.info(
            "FULFILL | txn=%s gateway=%s quotes=%s amount=%s %s",
            event.transaction_id,
            event.gateway,
            ",".join(event.quote_ids),
            event.amount,
            event.currency,
        )


@dataclass
class Collaborators:
    """Everything external the payment core talks to, bundled for injection."""

    rates: ExchangeRateProvider = field(default_factory=UsdRateTable)
    quotes: QuoteReader = field(default_factory=InMemoryQuoteReader)
    profiles: ProfileLookup = field(default_factory=InMemoryProfileLookup)
    email: EmailDispatcher = field(default_factory=LoggingEmailDispatcher)
    fulfillment: FulfillmentNotifier = field(default_factory=LoggingFulfillmentNotifier)
