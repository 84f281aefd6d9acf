"""
Fixtures for API tests.

The application runs in-process behind ``httpx.ASGITransport`` on the test's
event loop. Database, gateway, catalog and side-effect dependencies are
overridden with the per-test fixtures.
"""

from typing import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

from storefront.api.deps import (
    get_audit_sink,
    get_discount_resolver,
    get_gateway_registry,
    get_notifications,
    get_price_catalog,
)
from storefront.core.config import get_settings
from storefront.database.connection import get_db
from storefront.main import app
from storefront.services.audit.sink import AuditSink
from storefront.services.checkout.discounts import DiscountResolver


@pytest.fixture
async def api_client(
    session_factory,
    gateways,
    catalog,
    settings,
    dispatcher,
    notifications,
) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    audit = AuditSink(session_factory=session_factory, dispatcher=dispatcher)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_gateway_registry] = lambda: gateways
    app.dependency_overrides[get_price_catalog] = lambda: catalog
    app.dependency_overrides[get_discount_resolver] = lambda: DiscountResolver()
    app.dependency_overrides[get_audit_sink] = lambda: audit
    app.dependency_overrides[get_notifications] = lambda: notifications

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
