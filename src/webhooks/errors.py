"""Error taxonomy for the webhook engine.

Exception Hierarchy:
    WebhookError (base)
    ├── ValidationError - Malformed input (400)
    ├── NotFoundError - Unknown endpoint id (404)
    ├── PreconditionError - Operation not allowed in current state (400)
    ├── ConflictError - Stale write against the tenant document (409)
    ├── TransportError - Network failure during a delivery attempt
    └── InternalError - Unexpected persistence failure (500)

TransportError never reaches an HTTP caller: the dispatcher folds it into
the DeliveryResult of the attempt.
"""

from typing import Any


class WebhookError(Exception):
    """Base exception for all webhook engine errors.

    Attributes:
        message: Human-readable error message.
        code: Machine-readable error code.
        details: Additional error details.
    """

    http_status: int = 500
    default_code: str = "webhook_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/API responses."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "details": self.details,
        }


class ValidationError(WebhookError):
    """Input failed validation.

    Attributes:
        field: Name of the offending field, if known.
    """

    http_status = 400
    default_code = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        base = super().to_dict()
        base["field"] = self.field
        return base


class NotFoundError(WebhookError):
    """Webhook endpoint does not exist for the tenant."""

    http_status = 404
    default_code = "webhook_not_found"

    def __init__(self, webhook_id: str) -> None:
        super().__init__("Webhook not found", details={"webhook_id": webhook_id})
        self.webhook_id = webhook_id


class PreconditionError(WebhookError):
    """Operation is not permitted in the endpoint's current state."""

    http_status = 400
    default_code = "precondition_failed"


class ConflictError(WebhookError):
    """Write was based on a stale version of the tenant document.

    Attributes:
        expected_version: Version the writer read.
        actual_version: Version currently stored (if known).
    """

    http_status = 409
    default_code = "conflict"

    def __init__(
        self,
        message: str,
        *,
        expected_version: int | None = None,
        actual_version: int | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.expected_version = expected_version
        self.actual_version = actual_version

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        base = super().to_dict()
        base.update(
            {
                "expected_version": self.expected_version,
                "actual_version": self.actual_version,
            }
        )
        return base


class TransportError(WebhookError):
    """Network-level failure while delivering to an endpoint."""

    http_status = 502
    default_code = "transport_error"


class InternalError(WebhookError):
    """Unexpected failure in the persistence layer."""

    http_status = 500
    default_code = "internal_error"
