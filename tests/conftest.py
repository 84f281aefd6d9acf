"""
Pytest configuration and shared test fixtures.

This module provides pytest configuration, fixtures, and test utilities
for the storefront backend. Every test gets its own file-backed SQLite
database (through aiosqlite) with the full schema created, a background
dispatcher that tests drain to observe audit and notification side effects,
and an in-memory payment gateway.
"""

import os

os.environ.setdefault("APP_ENVIRONMENT", "test")
os.environ.setdefault("APP_DATABASE_URL", "sqlite+aiosqlite:///./storefront-test.db")
os.environ.setdefault("APP_SECRET_KEY", "test-secret-key-for-the-storefront-suite-0123")
os.environ.setdefault("APP_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("APP_BACKGROUND_WORKERS_ENABLED", "false")

from decimal import Decimal
from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from helpers import WEBHOOK_SECRET, FakeGateway, RecordingNotifier
from storefront.core.config import Settings
from storefront.database.base import Base
from storefront.services.background import BackgroundDispatcher
from storefront.services.checkout.catalog import CatalogProduct, StaticPriceCatalog
from storefront.services.notifications.notifier import OrderNotifications
from storefront.services.payments.gateway import GatewayRegistry


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """
    Create a file-backed SQLite engine with the full schema.

    A file database (rather than ``:memory:``) lets concurrent sessions
    share data; the busy timeout serializes their writes.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ============================================================================
# Service Fixtures
# ============================================================================


@pytest.fixture
def settings() -> Settings:
    """Settings with the defaults the tests rely on spelled out."""
    return Settings(
        environment="test",
        database_url="sqlite+aiosqlite:///./storefront-test.db",
        currency="INR",
        tax_rate_percent=Decimal("18"),
        shipping_standard_cost=Decimal("0"),
        shipping_express_cost=Decimal("99"),
        enabled_payment_methods=["razorpay", "cod"],
        guest_checkout_enabled=True,
        refund_window_days=7,
        auto_settle_refunds=True,
        settlement_max_attempts=3,
        settlement_initial_backoff_seconds=30,
        settlement_max_backoff_seconds=900,
        settlement_stale_after_seconds=900,
        pending_order_ttl_minutes=60,
        razorpay_webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture
async def dispatcher(db_engine) -> AsyncGenerator[BackgroundDispatcher, None]:
    """Dispatcher drained before the engine is disposed."""
    dispatcher = BackgroundDispatcher()
    yield dispatcher
    await dispatcher.drain(timeout=5)


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def gateways(fake_gateway: FakeGateway) -> GatewayRegistry:
    return GatewayRegistry({"razorpay": fake_gateway})


@pytest.fixture
def catalog() -> StaticPriceCatalog:
    return StaticPriceCatalog(
        {
            "P1": CatalogProduct("P1", "Steel Water Bottle", Decimal("500.00")),
            "P2": CatalogProduct("P2", "Canvas Tote", Decimal("250.00")),
            "P3": CatalogProduct("P3", "Retired Mug", Decimal("120.00"), active=False),
        }
    )


@pytest.fixture
def recording_notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def notifications(recording_notifier, dispatcher) -> OrderNotifications:
    return OrderNotifications(notifier=recording_notifier, dispatcher=dispatcher)


