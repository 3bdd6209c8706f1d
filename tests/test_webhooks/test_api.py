"""Tests for webhook API endpoints."""

from unittest.mock import patch

import httpx
import pytest
from fastapi.testclient import TestClient

from src.api.routes import create_app
from src.api.webhooks import AdminPrincipal, get_current_admin
from src.config import settings
from src.resilience.rate_limiter import TenantRateLimiter
from src.webhooks.delivery_log import DeliveryLog
from src.webhooks.dispatcher import WebhookDispatcher, set_webhook_dispatcher
from src.webhooks.registry import EndpointRegistry, set_endpoint_registry
from src.webhooks.store import InMemoryTenantStore

TENANT = "tenant-1"


class Receiver:
    """Mock receiver: unreachable hosts fail to connect, others answer."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.status_code = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "unreachable.test":
            raise httpx.ConnectError("[Errno 111] Connection refused")
        return httpx.Response(self.status_code, json={"received": True})


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def registry():
    """Create and set test endpoint registry."""
    reg = EndpointRegistry(InMemoryTenantStore(), delivery_log=DeliveryLog(retention=50))
    set_endpoint_registry(reg)
    yield reg
    set_endpoint_registry(None)


@pytest.fixture
def receiver():
    return Receiver()


@pytest.fixture
def dispatcher(registry, receiver):
    """Create and set test dispatcher."""
    disp = WebhookDispatcher(
        registry,
        rate_limiter=TenantRateLimiter(),
        transport=httpx.MockTransport(receiver),
        backoff_multiplier=0,
        backoff_max=0,
    )
    set_webhook_dispatcher(disp)
    yield disp
    set_webhook_dispatcher(None)


@pytest.fixture
def app(dispatcher):  # noqa: ARG001
    """Create app with an authenticated admin."""
    application = create_app()
    application.dependency_overrides[get_current_admin] = lambda: AdminPrincipal(
        id=TENANT, email="admin@example.com"
    )
    return application


@pytest.fixture
def client(app):
    """Create test client."""
    return TestClient(app)


@pytest.fixture
def created(client):
    """Create a sample webhook through the API."""
    response = client.post(
        "/webhooks",
        json={
            "name": "Order Hook",
            "url": "https://example.com/hook",
            "events": ["order.created"],
            "method": "POST",
        },
    )
    assert response.status_code == 201
    return response.json()


# ============================================================================
# Authentication Tests
# ============================================================================


class TestAuthentication:
    """Tests for admin resolution."""

    def test_missing_admin_rejected(self, dispatcher):  # noqa: ARG002
        """Test requests without a principal get 401."""
        client = TestClient(create_app())

        response = client.get("/webhooks")

        assert response.status_code == 401
        assert response.json()["error"] == "Authentication required"

    def test_tenant_header_when_trusted(self, dispatcher):  # noqa: ARG002
        """Test X-Tenant-ID is honored only when trusted."""
        client = TestClient(create_app())

        with patch.object(settings, "TRUST_TENANT_HEADER", True):
            response = client.get("/webhooks", headers={"X-Tenant-ID": TENANT})

        assert response.status_code == 200

    def test_tenant_header_ignored_by_default(self, dispatcher):  # noqa: ARG002
        client = TestClient(create_app())

        response = client.get("/webhooks", headers={"X-Tenant-ID": TENANT})

        assert response.status_code == 401


# ============================================================================
# CRUD Tests
# ============================================================================


class TestCreateWebhook:
    """Tests for POST /webhooks endpoint."""

    def test_create_webhook(self, created):
        """Test a created webhook is pending with a secret (scenario A)."""
        assert created["id"].startswith("wh_")
        assert created["name"] == "Order Hook"
        assert created["status"] == "pending"
        assert created["triggerCount"] == 0
        assert created["active"] is True
        assert len(created["secret"]) == 64

    def test_create_with_headers(self, client):
        response = client.post(
            "/webhooks",
            json={
                "name": "n",
                "url": "https://example.com/hook",
                "events": ["cart.abandoned"],
                "headers": {"X-Api-Key": "k"},
            },
        )

        assert response.status_code == 201
        assert response.json()["headers"] == {"X-Api-Key": "k"}

    def test_empty_events_rejected(self, client):
        """Test empty events are rejected and nothing is stored (scenario D)."""
        response = client.post(
            "/webhooks",
            json={"name": "n", "url": "https://example.com/hook", "events": []},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"
        assert client.get("/webhooks").json()["total"] == 0

    def test_unknown_event_rejected(self, client):
        response = client.post(
            "/webhooks",
            json={"name": "n", "url": "https://example.com/hook", "events": ["order.lost"]},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "unknown_event"

    def test_invalid_url_rejected(self, client):
        response = client.post(
            "/webhooks",
            json={"name": "n", "url": "example", "events": ["order.created"]},
        )

        assert response.status_code == 400
        assert response.json()["detail"]["field"] == "url"

    def test_missing_fields_rejected(self, client):
        """Test body validation errors map to 400."""
        response = client.post("/webhooks", json={"name": "n"})

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request"


class TestReadWebhooks:
    """Tests for GET endpoints."""

    def test_list_hides_secret(self, client, created):
        """Test list responses omit secrets."""
        response = client.get("/webhooks")
        data = response.json()

        assert response.status_code == 200
        assert data["total"] == 1
        assert data["totalPages"] == 1
        assert data["limit"] == 10
        assert data["webhooks"][0]["id"] == created["id"]
        assert "secret" not in data["webhooks"][0]

    def test_list_filters(self, client, created):
        client.patch(f"/webhooks/{created['id']}/toggle")

        assert client.get("/webhooks?status=disabled").json()["total"] == 1
        assert client.get("/webhooks?active=true").json()["total"] == 0

    @pytest.mark.parametrize(
        "query",
        ["limit=0", "limit=101", "page=0", "status=broken"],
    )
    def test_list_invalid_query(self, client, query):
        assert client.get(f"/webhooks?{query}").status_code == 400

    def test_get_webhook(self, client, created):
        response = client.get(f"/webhooks/{created['id']}")

        assert response.status_code == 200
        assert response.json()["name"] == "Order Hook"
        assert "secret" not in response.json()

    def test_get_unknown(self, client):
        response = client.get("/webhooks/wh_missing")

        assert response.status_code == 404
        assert response.json()["error"] == "Webhook not found"


class TestUpdateWebhook:
    """Tests for PUT /webhooks/{id}."""

    def test_update_webhook(self, client, created):
        response = client.put(
            f"/webhooks/{created['id']}",
            json={"name": "Renamed", "events": ["order.created", "order.cancelled"]},
        )

        assert response.status_code == 200
        assert response.json()["name"] == "Renamed"
        assert response.json()["events"] == ["order.created", "order.cancelled"]
        assert response.json()["url"] == "https://example.com/hook"

    def test_update_secret_rejected(self, client, created):
        response = client.put(f"/webhooks/{created['id']}", json={"secret": "x"})

        assert response.status_code == 400

    def test_update_unknown(self, client):
        assert client.put("/webhooks/wh_missing", json={"name": "x"}).status_code == 404


class TestDeleteAndToggle:
    """Tests for DELETE and toggle."""

    def test_delete_webhook(self, client, created):
        response = client.delete(f"/webhooks/{created['id']}")

        assert response.status_code == 200
        assert response.json() == {"webhookId": created["id"]}
        assert client.get(f"/webhooks/{created['id']}").status_code == 404

    def test_delete_unknown(self, client):
        assert client.delete("/webhooks/wh_missing").status_code == 404

    def test_toggle(self, client, created):
        response = client.patch(f"/webhooks/{created['id']}/toggle")

        assert response.status_code == 200
        assert response.json()["active"] is False
        assert response.json()["status"] == "disabled"


# ============================================================================
# Test Delivery Tests
# ============================================================================


class TestTestDelivery:
    """Tests for POST /webhooks/{id}/test."""

    def test_failure_then_recovery(self, client, created, receiver):
        """Test an unreachable endpoint errors, then recovers (scenarios B and C)."""
        webhook_id = created["id"]
        client.put(f"/webhooks/{webhook_id}", json={"url": "https://unreachable.test/hook"})
        client.put("/webhooks/config", json={"timeoutSeconds": 5})

        failed = client.post(f"/webhooks/{webhook_id}/test").json()
        after_failure = client.get(f"/webhooks/{webhook_id}").json()

        assert failed["success"] is False
        assert failed["statusCode"] == 0
        assert failed["error"]["code"] == "connection_error"
        assert after_failure["status"] == "error"
        assert after_failure["failureCount"] == 1

        client.put(f"/webhooks/{webhook_id}", json={"url": "https://example.com/hook"})
        succeeded = client.post(f"/webhooks/{webhook_id}/test").json()
        after_success = client.get(f"/webhooks/{webhook_id}").json()

        assert succeeded["success"] is True
        assert succeeded["statusCode"] == 200
        assert after_success["status"] == "healthy"
        assert after_success["triggerCount"] == 2
        assert after_success["successCount"] == 1
        assert after_success["failureCount"] == 1
        assert after_success["lastError"] == failed["error"]["message"]
        assert len(receiver.requests) == 2

    def test_test_data_sent(self, client, created, receiver):
        response = client.post(
            f"/webhooks/{created['id']}/test", json={"testData": {"ping": 1}}
        )

        assert response.status_code == 200
        assert b'"ping":1' in receiver.requests[0].content
        assert b'"test":true' in receiver.requests[0].content

    def test_inactive_rejected(self, client, created, receiver):
        """Test inactive endpoints refuse tests and keep counters (scenario E)."""
        webhook_id = created["id"]
        client.post(f"/webhooks/{webhook_id}/test")
        before = client.get(f"/webhooks/{webhook_id}").json()
        client.patch(f"/webhooks/{webhook_id}/toggle")

        response = client.post(f"/webhooks/{webhook_id}/test")
        after = client.get(f"/webhooks/{webhook_id}").json()

        assert response.status_code == 400
        assert response.json()["code"] == "endpoint_inactive"
        assert after["triggerCount"] == before["triggerCount"]
        assert after["successCount"] == before["successCount"]
        assert len(receiver.requests) == 1

    def test_test_unknown(self, client):
        assert client.post("/webhooks/wh_missing/test").status_code == 404


# ============================================================================
# Stats and Logs Tests
# ============================================================================


class TestStatsAndLogs:
    """Tests for stats and logs endpoints."""

    def test_stats(self, client, created, receiver):
        receiver.status_code = 500
        client.post(f"/webhooks/{created['id']}/test")
        receiver.status_code = 200
        client.post(f"/webhooks/{created['id']}/test")
        client.post(f"/webhooks/{created['id']}/test")

        stats = client.get(f"/webhooks/{created['id']}/stats").json()

        assert stats["totalTriggers"] == 3
        assert stats["successfulTriggers"] == 2
        assert stats["failedTriggers"] == 1
        assert stats["successRate"] == 66.67
        assert stats["currentStatus"] == "healthy"

    def test_logs(self, client, created):
        client.post(f"/webhooks/{created['id']}/test")

        logs = client.get(f"/webhooks/{created['id']}/logs").json()

        assert logs["total"] == 1
        assert logs["limit"] == 20
        assert logs["logs"][0]["status"] == "success"
        assert logs["logs"][0]["test"] is True
        assert logs["webhook"]["id"] == created["id"]

    def test_logs_status_filter(self, client, created):
        client.post(f"/webhooks/{created['id']}/test")

        logs = client.get(f"/webhooks/{created['id']}/logs?status=failed").json()

        assert logs["total"] == 0

    def test_stats_unknown(self, client):
        assert client.get("/webhooks/wh_missing/stats").status_code == 404


# ============================================================================
# Settings and Catalog Tests
# ============================================================================


class TestConfigAndEvents:
    """Tests for tenant settings and the event catalog."""

    def test_get_default_config(self, client):
        config = client.get("/webhooks/config").json()

        assert config["enabled"] is False
        assert config["retryAttempts"] == 3
        assert config["timeoutSeconds"] == 30
        assert "endpoints" not in config

    def test_update_config(self, client, created):  # noqa: ARG002
        response = client.put(
            "/webhooks/config", json={"enabled": True, "retry_attempts": 4}
        )
        config = response.json()

        assert response.status_code == 200
        assert config["enabled"] is True
        assert config["retryAttempts"] == 4
        assert config["updatedBy"] == "admin@example.com"
        assert config["endpointCount"] == 1

    def test_update_config_out_of_range(self, client):
        response = client.put("/webhooks/config", json={"rateLimit": 5000})

        assert response.status_code == 400

    def test_event_catalog(self, client):
        events = client.get("/webhooks/events").json()["events"]
        names = [e["name"] for e in events]

        assert "order.created" in names
        assert "inventory.out_of_stock" in names
        assert "webhook.test" not in names
        assert {"name": "cart.converted", "category": "cart"} in events


class TestHealth:
    """Tests for the health endpoint."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
