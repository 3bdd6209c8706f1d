"""FastAPI application for the webhook engine.

This module provides:
- Application factory with lifespan management
- Webhook management routes
- Health check endpoint
- CORS configuration
- Error handling
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException

from src.config import configure_logging, settings
from src.webhooks.dispatcher import get_webhook_dispatcher
from src.webhooks.errors import WebhookError

logger = structlog.get_logger(__name__)


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error message")
    code: str | None = Field(default=None, description="Machine-readable error code")
    detail: dict[str, Any] | None = Field(
        default=None, description="Detailed error information"
    )


# ============================================================================
# Application Setup
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: ARG001
    """Application lifespan handler."""
    # Startup
    configure_logging()
    logger.info("application_starting", store_backend=settings.WEBHOOK_STORE_BACKEND)
    dispatcher = get_webhook_dispatcher()

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await dispatcher.shutdown()
    await dispatcher.registry.store.close()


OPENAPI_TAGS = [
    {
        "name": "Webhooks",
        "description": "Register outbound webhook endpoints, subscribe them to store events, "
        "send test deliveries and inspect delivery statistics and logs.",
    },
    {
        "name": "Health",
        "description": "Liveness check for monitoring service status.",
    },
]

API_DESCRIPTION = """
## Overview

The webhook API lets store admins register HTTP endpoints that receive
order, payment, product, inventory, user and cart events.

Every delivery is a JSON envelope:

```json
{"event": "order.created", "timestamp": "...", "webhook_id": "wh_...",
 "data": {...}, "user_id": "..."}
```

## Signatures

When signing is enabled, each request carries an `X-Yoraa-Signature`
header of the form `sha256=<hex>`: an HMAC-SHA256 of the raw request body
keyed with the endpoint secret. The secret is shown only once, when the
endpoint is created.
"""


def create_app(
    title: str = "Yoraa Webhooks API",
    version: str = "1.0.0",
    description: str | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        title: API title.
        version: API version.
        description: API description (uses default if not provided).
        cors_origins: Allowed CORS origins.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title=title,
        version=version,
        description=description or API_DESCRIPTION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        openapi_tags=OPENAPI_TAGS,
    )

    # Configure CORS
    origins = cors_origins or settings.CORS_ORIGINS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add exception handlers
    @app.exception_handler(WebhookError)
    async def webhook_error_handler(
        request: Request, exc: WebhookError  # noqa: ARG001
    ) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error("webhook_error", **exc.to_dict())
        else:
            logger.info("webhook_request_rejected", **exc.to_dict())
        detail = dict(exc.details)
        field = getattr(exc, "field", None)
        if field:
            detail["field"] = field
        return JSONResponse(
            status_code=exc.http_status,
            content=ErrorResponse(
                error=exc.message,
                code=exc.code,
                detail=detail or None,
            ).model_dump(),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError  # noqa: ARG001
    ) -> JSONResponse:
        errors = [
            {
                "loc": [str(part) for part in error.get("loc", ())],
                "msg": error.get("msg", ""),
                "type": error.get("type", ""),
            }
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(
                error="Invalid request",
                code="validation_error",
                detail={"errors": errors},
            ).model_dump(),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException  # noqa: ARG001
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception  # noqa: ARG001
    ) -> JSONResponse:
        logger.error("unhandled_exception", error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="Internal server error",
                code="internal_error",
            ).model_dump(),
        )

    # Register routes
    register_routes(app)

    return app


def register_routes(app: FastAPI) -> None:
    """Register all routes on the application.

    Args:
        app: FastAPI application.
    """
    from src.api.webhooks import router as webhooks_router

    app.include_router(webhooks_router)

    @app.get("/health", tags=["Health"])
    async def health() -> dict[str, Any]:
        """Basic liveness check.

        Returns simple status to confirm service is running.
        """
        return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}


# ============================================================================
# Default Application Instance
# ============================================================================


# Create default app instance
app = create_app()
