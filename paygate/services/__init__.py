from paygate.services.collaborators import (
    EmailDispatcher,
    ExchangeRateProvider,
    FulfillmentNotifier,
    PaymentCaptured,
    ProfileLookup,
    QuoteReader,
    QuoteSummary,
)
from paygate.services.defaults import (
    Collaborators,
    InMemoryProfileLookup,
    InMemoryQuoteReader,
    LoggingEmailDispatcher,
    LoggingFulfillmentNotifier,
    UsdRateTable,
)

__all__ = [
    "Collaborators",
    "EmailDispatcher",
    "ExchangeRateProvider",
    "FulfillmentNotifier",
    "InMemoryProfileLookup",
    "InMemoryQuoteReader",
    "LoggingEmailDispatcher",
    "LoggingFulfillmentNotifier",
    "PaymentCaptured",
    "ProfileLookup",
    "QuoteReader",
    "QuoteSummary",
    "UsdRateTable",
]
