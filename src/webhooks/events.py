"""Webhook event catalog and envelope models.

This module defines the closed set of domain events a tenant can subscribe
an endpoint to, and the envelope structure every endpoint receives.
"""

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from src.webhooks.errors import ValidationError


class WebhookEventType(str, Enum):
    """Supported webhook event types.

    Events are organized by category:
    - order.*: Order lifecycle events
    - payment.*: Payment processing events
    - product.*: Catalog events
    - inventory.*: Stock level events
    - user.*: Customer account events
    - cart.*: Shopping cart events
    - webhook.test: Reserved for operator-triggered test deliveries
    """

    # Order events
    ORDER_CREATED = "order.created"
    ORDER_UPDATED = "order.updated"
    ORDER_CANCELLED = "order.cancelled"
    ORDER_SHIPPED = "order.shipped"
    ORDER_DELIVERED = "order.delivered"

    # Payment events
    PAYMENT_SUCCESS = "payment.success"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_PENDING = "payment.pending"
    PAYMENT_REFUNDED = "payment.refunded"
    PAYMENT_DISPUTED = "payment.disputed"

    # Product events
    PRODUCT_CREATED = "product.created"
    PRODUCT_UPDATED = "product.updated"
    PRODUCT_DELETED = "product.deleted"

    # Inventory events
    INVENTORY_LOW = "inventory.low"
    INVENTORY_OUT_OF_STOCK = "inventory.out_of_stock"

    # User events
    USER_CREATED = "user.created"
    USER_UPDATED = "user.updated"
    USER_DELETED = "user.deleted"
    USER_LOGIN = "user.login"
    USER_LOGOUT = "user.logout"

    # Cart events
    CART_CREATED = "cart.created"
    CART_UPDATED = "cart.updated"
    CART_ABANDONED = "cart.abandoned"
    CART_CONVERTED = "cart.converted"

    # Test deliveries
    WEBHOOK_TEST = "webhook.test"


SUBSCRIBABLE_EVENTS: tuple[WebhookEventType, ...] = tuple(
    e for e in WebhookEventType if e is not WebhookEventType.WEBHOOK_TEST
)


def parse_event_type(name: str | WebhookEventType) -> WebhookEventType:
    """Resolve an event name to its catalog entry.

    Args:
        name: Event name such as "order.created".

    Returns:
        Matching WebhookEventType.

    Raises:
        ValidationError: If the name is not a subscribable event.
    """
    try:
        event_type = WebhookEventType(name)
    except ValueError as e:
        raise ValidationError(
            f"Unknown event type: {name}", field="events", code="unknown_event"
        ) from e

    if event_type is WebhookEventType.WEBHOOK_TEST:
        raise ValidationError(
            f"{event_type.value} is reserved for test deliveries",
            field="events",
            code="reserved_event",
        )
    return event_type


class WebhookEnvelope(BaseModel):
    """Envelope delivered to every endpoint.

    The wire format is:
        {event, timestamp, webhook_id, test?, data, user_id}
    where ``test`` is only present for test deliveries.
    """

    event: WebhookEventType = Field(..., description="Event type")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the envelope was built",
    )
    webhook_id: str = Field(..., description="Target endpoint identifier")
    user_id: str = Field(..., description="Tenant that owns the endpoint")
    data: dict[str, Any] = Field(
        default_factory=dict,
        description="Event-specific data",
    )
    test: bool = Field(default=False, description="Whether this is a test delivery")

    def to_json_dict(self) -> dict[str, Any]:
        """Convert to the wire dictionary.

        Returns:
            Dictionary with ISO-formatted timestamp.
        """
        body: dict[str, Any] = {
            "event": self.event.value,
            "timestamp": self.timestamp.isoformat(),
            "webhook_id": self.webhook_id,
        }
        if self.test:
            body["test"] = True
        body["data"] = self.data
        body["user_id"] = self.user_id
        return body

    def to_bytes(self) -> bytes:
        """Serialize to the exact bytes sent on the wire (and signed)."""
        return json.dumps(
            self.to_json_dict(), separators=(",", ":"), default=str
        ).encode("utf-8")


def create_envelope(
    event_type: WebhookEventType,
    data: dict[str, Any],
    *,
    webhook_id: str,
    user_id: str,
    test: bool = False,
    timestamp: datetime | None = None,
) -> WebhookEnvelope:
    """Create an envelope for one endpoint.

    Args:
        event_type: Type of event.
        data: Event-specific data.
        webhook_id: Target endpoint identifier.
        user_id: Owning tenant identifier.
        test: Mark the delivery as a test.
        timestamp: Optional custom timestamp.

    Returns:
        WebhookEnvelope ready for delivery.
    """
    envelope = WebhookEnvelope(
        event=event_type,
        data=data,
        webhook_id=webhook_id,
        user_id=user_id,
        test=test,
    )

    if timestamp:
        envelope.timestamp = timestamp

    return envelope

