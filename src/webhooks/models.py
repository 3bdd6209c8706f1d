"""Data models for webhook endpoints, tenant configuration and deliveries."""

import math
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from src.webhooks.events import WebhookEventType
from src.webhooks.security import generate_secret


class EndpointStatus(str, Enum):
    """Health status of a webhook endpoint."""

    PENDING = "pending"
    HEALTHY = "healthy"
    ERROR = "error"
    DISABLED = "disabled"


class HttpMethod(str, Enum):
    """HTTP methods an endpoint may be called with."""

    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"


class DeliveryLogStatus(str, Enum):
    """Outcome recorded in the delivery log."""

    SUCCESS = "success"
    FAILED = "failed"


def _now() -> datetime:
    return datetime.now(UTC)


class WebhookEndpoint(BaseModel):
    """A registered webhook endpoint."""

    id: str = Field(
        default_factory=lambda: f"wh_{uuid.uuid4().hex[:24]}",
        description="Unique endpoint identifier",
    )
    name: str = Field(..., description="Display label", max_length=100)
    url: str = Field(..., description="Absolute callback URL")
    events: list[WebhookEventType] = Field(
        ..., description="Subscribed event types", min_length=1
    )
    method: HttpMethod = Field(default=HttpMethod.POST, description="HTTP method")
    description: str = Field(default="", description="Free-form description")
    active: bool = Field(default=True, description="Whether deliveries are allowed")
    secret: str = Field(
        default_factory=generate_secret,
        description="Secret key for HMAC signature",
    )
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Static headers merged into every request",
    )
    status: EndpointStatus = Field(
        default=EndpointStatus.PENDING,
        description="Health status",
    )

    # Statistics
    trigger_count: int = Field(default=0, ge=0, description="Total delivery attempts")
    success_count: int = Field(default=0, ge=0, description="Successful attempts")
    failure_count: int = Field(default=0, ge=0, description="Failed attempts")
    last_triggered: datetime | None = Field(
        default=None, description="Most recent attempt"
    )
    last_error: str | None = Field(
        default=None, description="Most recent failure message"
    )
    last_attempt_succeeded: bool | None = Field(
        default=None, description="Outcome of the most recent attempt"
    )

    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def should_receive_event(self, event_type: WebhookEventType) -> bool:
        """Check if this endpoint subscribes to an event type.

        Args:
            event_type: Event type to check.

        Returns:
            True if subscribed.
        """
        return event_type in self.events

    def status_from_history(self) -> EndpointStatus:
        """Status implied by the attempt history alone."""
        if self.last_attempt_succeeded is None:
            return EndpointStatus.PENDING
        if self.last_attempt_succeeded:
            return EndpointStatus.HEALTHY
        return EndpointStatus.ERROR


class TenantWebhookConfig(BaseModel):
    """Per-tenant webhook settings aggregate."""

    enabled: bool = Field(default=False, description="Global delivery switch")
    endpoints: list[WebhookEndpoint] = Field(default_factory=list)
    retry_attempts: int = Field(default=3, ge=1, le=10)
    timeout_seconds: int = Field(default=30, ge=5, le=120)
    enable_signing: bool = Field(default=True)
    log_webhooks: bool = Field(default=True)
    enable_rate_limiting: bool = Field(default=True)
    rate_limit: int = Field(default=100, ge=1, le=1000, description="Requests per minute")
    updated_by: str | None = Field(default=None)
    last_updated: datetime = Field(default_factory=_now)

    def find_endpoint(self, webhook_id: str) -> WebhookEndpoint | None:
        """Find an endpoint by id."""
        for endpoint in self.endpoints:
            if endpoint.id == webhook_id:
                return endpoint
        return None

    def replace_endpoint(self, endpoint: WebhookEndpoint) -> bool:
        """Swap in a new version of an endpoint.

        Returns:
            False if no endpoint with that id exists.
        """
        for index, existing in enumerate(self.endpoints):
            if existing.id == endpoint.id:
                self.endpoints[index] = endpoint
                return True
        return False


class DeliveryError(BaseModel):
    """Classified transport failure."""

    message: str
    code: str | None = None


class DeliveryResult(BaseModel):
    """Outcome of one delivery attempt."""

    success: bool
    status_code: int = Field(default=0, description="HTTP status, 0 when no response")
    duration_ms: float = Field(default=0.0)
    response_body: str | None = Field(default=None, description="Response body (truncated)")
    response_headers: dict[str, str] = Field(default_factory=dict)
    error: DeliveryError | None = None
    timestamp: datetime = Field(default_factory=_now)
    webhook_id: str | None = None
    event: WebhookEventType | None = None
    attempt: int = 1
    test: bool = False
    payload_size: int = 0

    @property
    def failure_message(self) -> str | None:
        """Message recorded as the endpoint's last error."""
        if self.success:
            return None
        if self.error is not None:
            return self.error.message
        return f"Request failed with status code {self.status_code}"


class DeliveryLogEntry(BaseModel):
    """Entry in an endpoint's bounded delivery log."""

    id: str = Field(default_factory=lambda: f"dlv_{uuid.uuid4().hex[:12]}")
    webhook_id: str
    event: WebhookEventType | None = None
    status: DeliveryLogStatus
    response_code: int = 0
    duration_ms: float = 0.0
    payload_size: int = 0
    attempt: int = 1
    test: bool = False
    error: str | None = None
    timestamp: datetime = Field(default_factory=_now)

    @classmethod
    def from_result(cls, result: DeliveryResult) -> "DeliveryLogEntry":
        """Build a log entry from a delivery result."""
        return cls(
            webhook_id=result.webhook_id or "",
            event=result.event,
            status=DeliveryLogStatus.SUCCESS if result.success else DeliveryLogStatus.FAILED,
            response_code=result.status_code,
            duration_ms=result.duration_ms,
            payload_size=result.payload_size,
            attempt=result.attempt,
            test=result.test,
            error=result.failure_message,
            timestamp=result.timestamp,
        )


def total_pages(total: int, limit: int) -> int:
    """Number of pages needed for ``total`` items."""
    return math.ceil(total / limit) if limit > 0 else 0


class EndpointPage(BaseModel):
    """Page of endpoints."""

    webhooks: list[WebhookEndpoint]
    total: int
    page: int
    limit: int
    total_pages: int


class WebhookStats(BaseModel):
    """Delivery statistics for one endpoint."""

    total_triggers: int
    successful_triggers: int
    failed_triggers: int
    success_rate: float
    last_triggered: datetime | None
    current_status: EndpointStatus
    active: bool
    created_at: datetime
    updated_at: datetime


class DeliveryLogPage(BaseModel):
    """Page of delivery log entries."""

    logs: list[DeliveryLogEntry]
    total: int
    page: int
    limit: int
    total_pages: int
    webhook: dict[str, Any]
