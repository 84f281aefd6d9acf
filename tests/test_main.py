"""
Tests for the FastAPI application: health endpoints, middleware and
exception handlers.
"""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from storefront.core.errors import NotFoundError
from storefront.main import app


@pytest.fixture
def test_client() -> TestClient:
    return TestClient(app, raise_server_exceptions=False)


# ============================================================================
# UNIT TESTS - Health Endpoints
# ============================================================================


class TestHealthEndpoints:
    """Test suite for health, readiness and liveness endpoints."""

    def test_health_check_returns_200(self, test_client: TestClient):
        response = test_client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "healthy"
        assert data["environment"] == "test"

    def test_liveness(self, test_client: TestClient):
        response = test_client.get("/live")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "alive"

    def test_readiness_when_database_is_up(self, test_client: TestClient):
        with patch("storefront.main.check_database_health", AsyncMock(return_value=True)):
            response = test_client.get("/ready")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["database"] == "healthy"

    def test_readiness_when_database_is_down(self, test_client: TestClient):
        with patch("storefront.main.check_database_health", AsyncMock(return_value=False)):
            response = test_client.get("/ready")

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json()["status"] == "not_ready"


# ============================================================================
# UNIT TESTS - Middleware
# ============================================================================


class TestRequestMiddleware:
    """Test suite for request correlation."""

    def test_generates_request_id(self, test_client: TestClient):
        response = test_client.get("/health")

        assert response.headers["X-Request-ID"]

    def test_propagates_incoming_request_id(self, test_client: TestClient):
        response = test_client.get("/health", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"


# ============================================================================
# UNIT TESTS - Exception Handlers
# ============================================================================


class TestExceptionHandlers:
    """Test suite for validation, domain and unexpected errors."""

    def test_request_body_validation_returns_422(self, test_client: TestClient):
        response = test_client.post("/api/v1/checkout/confirm", json={"order_id": "x"})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        data = response.json()
        assert data["error"] == "Validation Error"
        assert {tuple(error["loc"]) for error in data["details"]} >= {
            ("body", "order_id"),
            ("body", "signature"),
        }

    def test_unmapped_domain_error_uses_its_status(self):
        @app.get("/_test/domain-error")
        async def raise_domain_error():
            raise NotFoundError("Missing thing", code="THING_NOT_FOUND")

        try:
            response = TestClient(app, raise_server_exceptions=False).get("/_test/domain-error")
        finally:
            app.router.routes.pop()

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["detail"]["code"] == "THING_NOT_FOUND"

    def test_unexpected_error_is_hidden(self):
        @app.get("/_test/boom")
        async def boom():
            raise RuntimeError("database password is hunter2")

        try:
            response = TestClient(app, raise_server_exceptions=False).get("/_test/boom")
        finally:
            app.router.routes.pop()

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert "hunter2" not in response.text
        assert response.json()["error"] == "Internal Server Error"


# ============================================================================
# INTEGRATION TESTS - Lifespan
# ============================================================================


class TestLifespan:
    def test_startup_and_shutdown_without_background_loops(self):
        with TestClient(app) as client:
            assert client.get("/live").status_code == status.HTTP_200_OK
