"""
Pytest configuration and fixtures.

WHY: Fixtures provide reusable test setup/teardown logic, reducing
duplication and ensuring consistent test environments.
"""

import pytest
import pytest_asyncio
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from httpx import AsyncClient, ASGITransport

from entitlement_engine.main import app
from entitlement_engine.core.config import settings
from entitlement_engine.models.base import Base
from entitlement_engine.db.session import get_db, get_session_factory
from entitlement_engine.services.stripe_gateway import StripeGateway, get_stripe_gateway
from tests.factories import TEST_PRICE_PRO_MONTHLY, TEST_PRICE_PRO_YEARLY


@pytest.fixture(autouse=True)
def stripe_prices(monkeypatch):
    """
    Configure Stripe price ids for every test.

    WHY: Price resolution reads the ids from settings; tests must never
    depend on the developer's .env.
    """
    monkeypatch.setattr(settings, "STRIPE_PRICE_PRO_MONTHLY", TEST_PRICE_PRO_MONTHLY)
    monkeypatch.setattr(settings, "STRIPE_PRICE_PRO_YEARLY", TEST_PRICE_PRO_YEARLY)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_test")


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    """
    Create a test database engine.

    WHY: A file-backed SQLite database (rather than :memory:) is shared by
    every connection of the engine, which the reconciler needs because it
    opens its own sessions. Function scope gives each test a fresh file.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'entitlements.db'}",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker:
    """Session factory bound to the test database."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """
    Create a test database session.

    Yields:
        AsyncSession: Database session for the test
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def mock_gateway() -> MagicMock:
    """
    Stripe gateway double.

    WHY: Every provider call is async except construct_event, and the
    double mirrors that split.
    """
    gateway = MagicMock(spec=StripeGateway)
    gateway.retrieve_subscription = AsyncMock()
    gateway.list_customer_subscriptions = AsyncMock(return_value=[])
    gateway.retrieve_checkout_session = AsyncMock()
    gateway.preview_invoice = AsyncMock()
    gateway.construct_event = MagicMock()
    return gateway


@pytest_asyncio.fixture
async def client(session_factory, mock_gateway) -> AsyncGenerator[AsyncClient, None]:
    """
    Create a test HTTP client.

    WHY: AsyncClient allows testing FastAPI endpoints without running
    a real server. Database and Stripe dependencies are overridden.

    Yields:
        AsyncClient: HTTP client for making test requests
    """

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_stripe_gateway] = lambda: mock_gateway

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
