"""Tests for the FastAPI application factory."""

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from src.api.routes import ErrorResponse, create_app
from src.webhooks.errors import (
    InternalError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def app():
    """Create test FastAPI app with routes that raise."""
    application = create_app(title="Test API", version="0.1.0")

    @application.get("/raise/validation")
    async def raise_validation():
        raise ValidationError("URL must be a valid URL", field="url")

    @application.get("/raise/not-found")
    async def raise_not_found():
        raise NotFoundError("wh_missing")

    @application.get("/raise/precondition")
    async def raise_precondition():
        raise PreconditionError("Webhook is not active", code="endpoint_inactive")

    @application.get("/raise/internal")
    async def raise_internal():
        raise InternalError("Store unavailable")

    @application.get("/raise/http")
    async def raise_http():
        raise HTTPException(status_code=418, detail="Teapot")

    @application.get("/raise/unexpected")
    async def raise_unexpected():
        raise RuntimeError("boom")

    @application.get("/typed/{count}")
    async def typed(count: int):
        return {"count": count}

    return application


@pytest.fixture
def client(app):
    """Create test client."""
    return TestClient(app, raise_server_exceptions=False)


# ============================================================================
# Model Tests
# ============================================================================


class TestErrorResponse:
    """Tests for ErrorResponse model."""

    def test_error_response_minimal(self):
        response = ErrorResponse(error="Something went wrong")

        assert response.error == "Something went wrong"
        assert response.code is None
        assert response.detail is None

    def test_error_response_full(self):
        response = ErrorResponse(
            error="Invalid request",
            code="validation_error",
            detail={"field": "url"},
        )

        assert response.code == "validation_error"
        assert response.detail == {"field": "url"}


# ============================================================================
# Application Tests
# ============================================================================


class TestCreateApp:
    """Tests for create_app."""

    def test_metadata(self, app):
        assert app.title == "Test API"
        assert app.version == "0.1.0"

    def test_webhook_routes_registered(self, app):
        paths = {route.path for route in app.routes}

        assert "/webhooks" in paths
        assert "/webhooks/{webhook_id}" in paths
        assert "/webhooks/config" in paths
        assert "/health" in paths


class TestHealthEndpoint:
    """Tests for the health endpoint."""

    def test_health_basic(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert "timestamp" in data


# ============================================================================
# Exception Handler Tests
# ============================================================================


class TestExceptionHandlers:
    """Tests for the error envelope produced by each handler."""

    def test_validation_error(self, client):
        """Test validation errors carry the offending field."""
        response = client.get("/raise/validation")

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "URL must be a valid URL"
        assert body["code"] == "validation_error"
        assert body["detail"]["field"] == "url"

    def test_not_found(self, client):
        response = client.get("/raise/not-found")

        assert response.status_code == 404
        assert response.json()["error"] == "Webhook not found"

    def test_precondition(self, client):
        response = client.get("/raise/precondition")

        assert response.status_code == 400
        assert response.json()["code"] == "endpoint_inactive"

    def test_internal(self, client):
        response = client.get("/raise/internal")

        assert response.status_code == 500

    def test_request_validation_maps_to_400(self, client):
        """Test FastAPI request validation uses the shared envelope."""
        response = client.get("/typed/not-a-number")

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Invalid request"
        assert body["code"] == "validation_error"
        assert body["detail"]["errors"][0]["loc"] == ["path", "count"]

    def test_http_exception(self, client):
        response = client.get("/raise/http")

        assert response.status_code == 418
        assert response.json()["error"] == "Teapot"

    def test_unexpected_exception(self, client):
        """Test unhandled errors return a generic 500."""
        response = client.get("/raise/unexpected")

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "Internal server error"
        assert body["code"] == "internal_error"

    def test_unknown_route(self, client):
        response = client.get("/nowhere")

        assert response.status_code == 404
        assert response.json()["error"] == "Not Found"
