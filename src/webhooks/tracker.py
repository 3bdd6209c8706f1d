"""Apply delivery outcomes to endpoint state.

Status transitions driven by attempt outcomes:

    pending --success--> healthy      pending --failure--> error
    healthy --failure--> error        error   --success--> healthy

``disabled`` is set only by an operator deactivating the endpoint and is
left untouched by results that land while the endpoint is inactive.
"""

from datetime import UTC, datetime

from src.webhooks.models import DeliveryResult, EndpointStatus, WebhookEndpoint


def next_status(current: EndpointStatus, success: bool) -> EndpointStatus:
    """Status after an attempt with the given outcome."""
    if current is EndpointStatus.DISABLED:
        return current
    return EndpointStatus.HEALTHY if success else EndpointStatus.ERROR


def apply_delivery_result(
    endpoint: WebhookEndpoint,
    result: DeliveryResult,
) -> WebhookEndpoint:
    """Fold one delivery result into an endpoint.

    Pure: the input endpoint is not modified. Each result must be applied
    exactly once; there is no deduplication.

    Args:
        endpoint: Endpoint as currently stored.
        result: Outcome of a single attempt against it.

    Returns:
        New endpoint with counters, status and timestamps updated.
    """
    attempted_at = result.timestamp or datetime.now(UTC)
    update: dict[str, object] = {
        "trigger_count": endpoint.trigger_count + 1,
        "last_triggered": attempted_at,
        "last_attempt_succeeded": result.success,
        "status": next_status(endpoint.status, result.success),
    }

    if result.success:
        update["success_count"] = endpoint.success_count + 1
    else:
        update["failure_count"] = endpoint.failure_count + 1
        # last_error survives later successes
        update["last_error"] = result.failure_message

    return endpoint.model_copy(update=update, deep=True)
