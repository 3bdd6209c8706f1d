"""Webhook management API endpoints.

Provides REST API for managing a tenant's webhook endpoints, sending test
deliveries and viewing delivery statistics and logs.
"""

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.config import settings
from src.webhooks.dispatcher import WebhookDispatcher, get_webhook_dispatcher
from src.webhooks.events import SUBSCRIBABLE_EVENTS, WebhookEventType
from src.webhooks.models import (
    DeliveryLogStatus,
    EndpointStatus,
    HttpMethod,
)
from src.webhooks.registry import EndpointRegistry, get_endpoint_registry
from src.webhooks.stats import StatsReporter

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

TENANT_HEADER = "X-Tenant-ID"


class CamelModel(BaseModel):
    """Model exchanged as camelCase JSON, accepting snake_case input too."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ============================================================================
# Authentication
# ============================================================================


class AdminPrincipal(BaseModel):
    """Authenticated admin resolved by the auth middleware."""

    id: str = Field(..., min_length=1, description="Tenant/user identifier")
    email: str | None = Field(default=None, description="Admin email, if known")

    @property
    def actor(self) -> str:
        return self.email or self.id


async def get_current_admin(request: Request) -> AdminPrincipal:
    """Resolve the admin making the request.

    Reads the principal stored on ``request.state`` by the auth middleware.
    When TRUST_TENANT_HEADER is enabled, the X-Tenant-ID header is accepted
    instead.

    Raises:
        HTTPException: 401 if no admin could be resolved.
    """
    principal = getattr(request.state, "principal", None)
    if isinstance(principal, AdminPrincipal):
        return principal
    if isinstance(principal, dict) and principal.get("id"):
        return AdminPrincipal.model_validate(principal)

    if settings.TRUST_TENANT_HEADER:
        tenant_id = request.headers.get(TENANT_HEADER, "").strip()
        if tenant_id:
            return AdminPrincipal(id=tenant_id)

    raise HTTPException(status_code=401, detail="Authentication required")


def get_registry() -> EndpointRegistry:
    return get_endpoint_registry()


def get_dispatcher() -> WebhookDispatcher:
    return get_webhook_dispatcher()


def get_stats_reporter(
    registry: EndpointRegistry = Depends(get_registry),
) -> StatsReporter:
    return StatsReporter(registry)


# ============================================================================
# Request Models
# ============================================================================


class WebhookCreateRequest(CamelModel):
    """Request to create a new webhook."""

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "name": "Order sync",
                    "url": "https://example.com/hooks/orders",
                    "events": ["order.created", "order.shipped"],
                    "method": "POST",
                }
            ]
        }
    )

    name: str = Field(..., description="Display label (1-100 characters)")
    url: str = Field(..., description="Absolute http(s) endpoint URL")
    events: list[str] = Field(..., description="Event types to subscribe to")
    method: str = Field(default=HttpMethod.POST.value, description="POST, PUT or PATCH")
    description: str | None = Field(default="", description="Free-form description")
    active: bool = Field(default=True, description="Start active")
    headers: dict[str, str] | None = Field(
        default=None, description="Static headers sent with every delivery"
    )


class WebhookUpdateRequest(CamelModel):
    """Partial update of a webhook. Only provided fields are changed."""

    name: str | None = None
    url: str | None = None
    events: list[str] | None = None
    method: str | None = None
    description: str | None = None
    active: bool | None = None
    headers: dict[str, str] | None = None
    secret: str | None = Field(default=None, description="Rejected: secrets are immutable")


class WebhookTestRequest(CamelModel):
    """Optional body for a test delivery."""

    test_data: dict[str, Any] | None = Field(
        default=None, description="Data placed in the test envelope"
    )


class WebhookConfigUpdateRequest(CamelModel):
    """Partial update of tenant webhook settings."""

    enabled: bool | None = None
    retry_attempts: int | None = Field(default=None, ge=1, le=10)
    timeout_seconds: int | None = Field(default=None, ge=5, le=120)
    enable_signing: bool | None = None
    log_webhooks: bool | None = None
    enable_rate_limiting: bool | None = None
    rate_limit: int | None = Field(default=None, ge=1, le=1000)


# ============================================================================
# Response Models
# ============================================================================


class WebhookResponse(CamelModel):
    """Webhook details response. The secret is never included."""

    id: str
    name: str
    url: str
    events: list[WebhookEventType]
    method: HttpMethod
    description: str
    active: bool
    headers: dict[str, str]
    status: EndpointStatus
    trigger_count: int
    success_count: int
    failure_count: int
    last_triggered: datetime | None = None
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime


class WebhookCreatedResponse(WebhookResponse):
    """Response to webhook creation, the only one carrying the secret."""

    secret: str


class WebhookListResponse(CamelModel):
    """Page of webhooks."""

    webhooks: list[WebhookResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class WebhookDeletedResponse(CamelModel):
    """Response to webhook deletion."""

    webhook_id: str


class DeliveryErrorResponse(CamelModel):
    message: str
    code: str | None = None


class DeliveryResultResponse(CamelModel):
    """Outcome of a single delivery attempt."""

    success: bool
    status_code: int
    duration_ms: float
    response_body: str | None = None
    response_headers: dict[str, str] = Field(default_factory=dict)
    error: DeliveryErrorResponse | None = None
    timestamp: datetime
    webhook_id: str | None = None
    event: WebhookEventType | None = None


class WebhookStatsResponse(CamelModel):
    """Delivery statistics for a webhook."""

    total_triggers: int
    successful_triggers: int
    failed_triggers: int
    success_rate: float
    last_triggered: datetime | None = None
    current_status: EndpointStatus
    active: bool
    created_at: datetime
    updated_at: datetime


class DeliveryLogEntryResponse(CamelModel):
    id: str
    webhook_id: str
    event: WebhookEventType | None = None
    status: DeliveryLogStatus
    response_code: int
    duration_ms: float
    payload_size: int
    attempt: int
    test: bool
    error: str | None = None
    timestamp: datetime


class DeliveryLogPageResponse(CamelModel):
    """Page of delivery log entries."""

    logs: list[DeliveryLogEntryResponse]
    total: int
    page: int
    limit: int
    total_pages: int
    webhook: dict[str, Any]


class WebhookConfigResponse(CamelModel):
    """Tenant webhook settings (endpoints excluded)."""

    enabled: bool
    retry_attempts: int
    timeout_seconds: int
    enable_signing: bool
    log_webhooks: bool
    enable_rate_limiting: bool
    rate_limit: int
    updated_by: str | None = None
    last_updated: datetime
    endpoint_count: int = 0


class EventTypeInfo(CamelModel):
    name: str
    category: str


class EventCatalogResponse(CamelModel):
    events: list[EventTypeInfo]


# ============================================================================
# Tenant settings and event catalog
# ============================================================================


@router.get("/config", response_model=WebhookConfigResponse)
async def get_webhook_config(
    admin: AdminPrincipal = Depends(get_current_admin),
    registry: EndpointRegistry = Depends(get_registry),
) -> WebhookConfigResponse:
    """Get the tenant's webhook settings."""
    config = await registry.get_config(admin.id)
    response = WebhookConfigResponse.model_validate(config)
    response.endpoint_count = len(config.endpoints)
    return response


@router.put(
    "/config",
    response_model=WebhookConfigResponse,
    responses={400: {"description": "Invalid settings"}},
)
async def update_webhook_config(
    request: WebhookConfigUpdateRequest,
    admin: AdminPrincipal = Depends(get_current_admin),
    registry: EndpointRegistry = Depends(get_registry),
) -> WebhookConfigResponse:
    """Update the tenant's webhook settings."""
    config = await registry.update_config(
        admin.id,
        actor=admin.actor,
        **request.model_dump(exclude_unset=True),
    )
    response = WebhookConfigResponse.model_validate(config)
    response.endpoint_count = len(config.endpoints)
    return response


@router.get("/events", response_model=EventCatalogResponse)
async def list_event_types(
    admin: AdminPrincipal = Depends(get_current_admin),  # noqa: ARG001
) -> EventCatalogResponse:
    """List the event types endpoints can subscribe to."""
    return EventCatalogResponse(
        events=[
            EventTypeInfo(name=event.value, category=event.value.split(".", 1)[0])
            for event in SUBSCRIBABLE_EVENTS
        ]
    )


# ============================================================================
# Endpoints
# ============================================================================


@router.post(
    "",
    response_model=WebhookCreatedResponse,
    responses={
        201: {"description": "Webhook created"},
        400: {"description": "Invalid request"},
    },
    status_code=201,
)
async def create_webhook(
    request: WebhookCreateRequest,
    admin: AdminPrincipal = Depends(get_current_admin),
    registry: EndpointRegistry = Depends(get_registry),
) -> WebhookCreatedResponse:
    """Register a new webhook.

    A secret key is generated for HMAC signature verification and returned
    only in this response.
    """
    endpoint = await registry.create(
        admin.id,
        name=request.name,
        url=request.url,
        events=request.events,
        method=request.method,
        description=request.description,
        active=request.active,
        headers=request.headers,
        actor=admin.actor,
    )
    return WebhookCreatedResponse.model_validate(endpoint)


@router.get(
    "",
    response_model=WebhookListResponse,
)
async def list_webhooks(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    status: EndpointStatus | None = None,
    active: bool | None = None,
    admin: AdminPrincipal = Depends(get_current_admin),
    registry: EndpointRegistry = Depends(get_registry),
) -> WebhookListResponse:
    """List registered webhooks.

    Optionally filter by status or active flag.
    """
    result = await registry.list_endpoints(
        admin.id, status=status, active=active, page=page, limit=limit
    )
    return WebhookListResponse.model_validate(result)


@router.get(
    "/{webhook_id}",
    response_model=WebhookResponse,
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def get_webhook(
    webhook_id: str,
    admin: AdminPrincipal = Depends(get_current_admin),
    registry: EndpointRegistry = Depends(get_registry),
) -> WebhookResponse:
    """Get webhook details by ID."""
    endpoint = await registry.get(admin.id, webhook_id)
    return WebhookResponse.model_validate(endpoint)


@router.put(
    "/{webhook_id}",
    response_model=WebhookResponse,
    responses={
        400: {"description": "Invalid request"},
        404: {"description": "Webhook not found"},
    },
)
async def update_webhook(
    webhook_id: str,
    request: WebhookUpdateRequest,
    admin: AdminPrincipal = Depends(get_current_admin),
    registry: EndpointRegistry = Depends(get_registry),
) -> WebhookResponse:
    """Update a webhook."""
    updated = await registry.update(
        admin.id,
        webhook_id,
        actor=admin.actor,
        **request.model_dump(exclude_unset=True),
    )
    return WebhookResponse.model_validate(updated)


@router.delete(
    "/{webhook_id}",
    response_model=WebhookDeletedResponse,
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def delete_webhook(
    webhook_id: str,
    admin: AdminPrincipal = Depends(get_current_admin),
    registry: EndpointRegistry = Depends(get_registry),
) -> WebhookDeletedResponse:
    """Delete a webhook."""
    deleted_id = await registry.delete(admin.id, webhook_id, actor=admin.actor)
    return WebhookDeletedResponse(webhook_id=deleted_id)


@router.patch(
    "/{webhook_id}/toggle",
    response_model=WebhookResponse,
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def toggle_webhook(
    webhook_id: str,
    admin: AdminPrincipal = Depends(get_current_admin),
    registry: EndpointRegistry = Depends(get_registry),
) -> WebhookResponse:
    """Flip a webhook between active and disabled."""
    endpoint = await registry.toggle_active(admin.id, webhook_id, actor=admin.actor)
    return WebhookResponse.model_validate(endpoint)


@router.post(
    "/{webhook_id}/test",
    response_model=DeliveryResultResponse,
    responses={
        400: {"description": "Webhook is not active"},
        404: {"description": "Webhook not found"},
    },
)
async def test_webhook(
    webhook_id: str,
    request: WebhookTestRequest | None = None,
    admin: AdminPrincipal = Depends(get_current_admin),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
) -> DeliveryResultResponse:
    """Send a test event to a webhook.

    The delivery is made once, without retries, and counts toward the
    webhook's statistics.
    """
    test_data = request.test_data if request else None
    result = await dispatcher.send_test_event(admin.id, webhook_id, test_data)

    logger.info(
        "webhook_tested",
        tenant_id=admin.id,
        webhook_id=webhook_id,
        success=result.success,
    )

    return DeliveryResultResponse.model_validate(result)


@router.get(
    "/{webhook_id}/logs",
    response_model=DeliveryLogPageResponse,
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def list_webhook_logs(
    webhook_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    status: DeliveryLogStatus | None = None,
    admin: AdminPrincipal = Depends(get_current_admin),
    reporter: StatsReporter = Depends(get_stats_reporter),
) -> DeliveryLogPageResponse:
    """List recent delivery attempts for a webhook, newest first."""
    result = await reporter.logs(
        admin.id, webhook_id, page=page, limit=limit, status=status
    )
    return DeliveryLogPageResponse.model_validate(result)


@router.get(
    "/{webhook_id}/stats",
    response_model=WebhookStatsResponse,
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def get_webhook_stats(
    webhook_id: str,
    admin: AdminPrincipal = Depends(get_current_admin),
    reporter: StatsReporter = Depends(get_stats_reporter),
) -> WebhookStatsResponse:
    """Get delivery statistics for a webhook."""
    stats = await reporter.stats(admin.id, webhook_id)
    return WebhookStatsResponse.model_validate(stats)
