"""Shared test fixtures."""

from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fakes import GATEWAY_CONFIGS, FakeProvider, RecordingEmail, RecordingNotifier
from paygate.gateways.registry import build_default_registry
from paygate.models.transaction import Base, PaymentGatewayConfig
from paygate.oauth.token_cache import OAuthTokenCache
from paygate.services.collaborators import QuoteSummary
from paygate.services.defaults import Collaborators, InMemoryProfileLookup, InMemoryQuoteReader, UsdRateTable


@pytest_asyncio.fixture
async def db_session():
    """Create a fresh in-memory database for each test."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()


@pytest_asyncio.fixture
async def seeded_session(db_session: AsyncSession):
    """Database session with every gateway configured against fake provider hosts."""
    for code, config in GATEWAY_CONFIGS.items():
        db_session.add(PaymentGatewayConfig(code=code, name=code, is_active=True, test_mode=True, config=dict(config)))
    await db_session.commit()
    yield db_session


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest_asyncio.fixture
async def http(provider: FakeProvider):
    async with httpx.AsyncClient(transport=httpx.MockTransport(provider.handler)) as client:
        yield client


@pytest.fixture
def tokens(http: httpx.AsyncClient) -> OAuthTokenCache:
    return OAuthTokenCache(http)


@pytest.fixture
def registry(http: httpx.AsyncClient, tokens: OAuthTokenCache):
    return build_default_registry(http, tokens)


@pytest.fixture
def collaborators() -> Collaborators:
    quotes = InMemoryQuoteReader({
        "Q-1": QuoteSummary(id="Q-1", total=Decimal("100.00"), currency="NPR", product_name="Trek permit"),
        "Q-2": QuoteSummary(id="Q-2", total=Decimal("25.50"), currency="USD", product_name="Guidebook"),
    })
    return Collaborators(
        rates=UsdRateTable({"USD": Decimal("1"), "NPR": Decimal("133.0"), "INR": Decimal("83")}),
        quotes=quotes,
        profiles=InMemoryProfileLookup({"user-7": "traveller@example.org"}),
        email=RecordingEmail(),
        fulfillment=RecordingNotifier(),
    )
