"""Webhook subscription and delivery engine.

This module provides:
- WebhookEventType: Closed catalog of deliverable events
- EndpointRegistry: Registration and management of endpoints per tenant
- WebhookDispatcher: Signed delivery with retry, fan-out and test sends
- StatsReporter: Endpoint statistics and delivery logs
- HMAC signing and verification helpers
"""

from src.webhooks.delivery_log import DeliveryLog
from src.webhooks.dispatcher import (
    WebhookDispatcher,
    get_webhook_dispatcher,
    set_webhook_dispatcher,
)
from src.webhooks.errors import (
    ConflictError,
    InternalError,
    NotFoundError,
    PreconditionError,
    TransportError,
    ValidationError,
    WebhookError,
)
from src.webhooks.events import (
    SUBSCRIBABLE_EVENTS,
    WebhookEnvelope,
    WebhookEventType,
    create_envelope,
    parse_event_type,
)
from src.webhooks.models import (
    DeliveryLogEntry,
    DeliveryResult,
    EndpointStatus,
    HttpMethod,
    TenantWebhookConfig,
    WebhookEndpoint,
)
from src.webhooks.registry import (
    EndpointRegistry,
    get_endpoint_registry,
    set_endpoint_registry,
)
from src.webhooks.security import generate_secret, sign_payload, verify_signature
from src.webhooks.stats import StatsReporter
from src.webhooks.store import (
    InMemoryTenantStore,
    SQLiteTenantStore,
    TenantConfigStore,
    create_store,
)
from src.webhooks.tracker import apply_delivery_result

__all__ = [
    # Events
    "SUBSCRIBABLE_EVENTS",
    "WebhookEnvelope",
    "WebhookEventType",
    "create_envelope",
    "parse_event_type",
    # Models
    "DeliveryLogEntry",
    "DeliveryResult",
    "EndpointStatus",
    "HttpMethod",
    "TenantWebhookConfig",
    "WebhookEndpoint",
    # Errors
    "ConflictError",
    "InternalError",
    "NotFoundError",
    "PreconditionError",
    "TransportError",
    "ValidationError",
    "WebhookError",
    # Storage
    "InMemoryTenantStore",
    "SQLiteTenantStore",
    "TenantConfigStore",
    "create_store",
    # Registry
    "DeliveryLog",
    "EndpointRegistry",
    "get_endpoint_registry",
    "set_endpoint_registry",
    # Delivery
    "WebhookDispatcher",
    "apply_delivery_result",
    "get_webhook_dispatcher",
    "set_webhook_dispatcher",
    # Reporting
    "StatsReporter",
    # Security
    "generate_secret",
    "sign_payload",
    "verify_signature",
]
