"""FastAPI routes for the webhook engine.

This module contains:
- Webhook management endpoints
- Health check endpoint
- Request/response models
"""

from src.api.routes import ErrorResponse, app, create_app
from src.api.webhooks import (
    AdminPrincipal,
    WebhookCreateRequest,
    WebhookResponse,
    WebhookUpdateRequest,
    get_current_admin,
    router,
)

__all__ = [
    # Authentication
    "AdminPrincipal",
    "get_current_admin",
    # Request models
    "WebhookCreateRequest",
    "WebhookUpdateRequest",
    # Response models
    "ErrorResponse",
    "WebhookResponse",
    # Router, app factory and instance
    "app",
    "create_app",
    "router",
]
