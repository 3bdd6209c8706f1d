"""Read-only views over endpoint statistics and the delivery log."""

import structlog

from src.webhooks.models import (
    DeliveryLogPage,
    DeliveryLogStatus,
    WebhookStats,
    total_pages,
)
from src.webhooks.registry import EndpointRegistry, validate_pagination

logger = structlog.get_logger(__name__)


def success_rate(successes: int, total: int) -> float:
    """Percentage of successful attempts, rounded to two decimals."""
    if total <= 0:
        return 0.0
    return round(successes / total * 100, 2)


class StatsReporter:
    """Reports counters and recent attempts for an endpoint."""

    def __init__(self, registry: EndpointRegistry) -> None:
        self._registry = registry

    async def stats(self, tenant_id: str, webhook_id: str) -> WebhookStats:
        """Get delivery statistics for an endpoint.

        Raises:
            NotFoundError: If the endpoint does not exist.
        """
        endpoint = await self._registry.get(tenant_id, webhook_id)
        return WebhookStats(
            total_triggers=endpoint.trigger_count,
            successful_triggers=endpoint.success_count,
            failed_triggers=endpoint.failure_count,
            success_rate=success_rate(endpoint.success_count, endpoint.trigger_count),
            last_triggered=endpoint.last_triggered,
            current_status=endpoint.status,
            active=endpoint.active,
            created_at=endpoint.created_at,
            updated_at=endpoint.updated_at,
        )

    async def logs(
        self,
        tenant_id: str,
        webhook_id: str,
        *,
        page: int = 1,
        limit: int = 20,
        status: DeliveryLogStatus | None = None,
    ) -> DeliveryLogPage:
        """Get recent delivery attempts for an endpoint, newest first.

        Args:
            tenant_id: Owning tenant.
            webhook_id: Endpoint identifier.
            page: 1-based page number.
            limit: Page size (1-100).
            status: Only entries with this outcome.

        Raises:
            NotFoundError: If the endpoint does not exist.
            ValidationError: If pagination is out of range.
        """
        validate_pagination(page, limit)
        endpoint = await self._registry.get(tenant_id, webhook_id)

        entries = self._registry.delivery_log.entries(tenant_id, webhook_id, status=status)
        total = len(entries)
        start = (page - 1) * limit

        logger.debug(
            "delivery_logs_read",
            tenant_id=tenant_id,
            webhook_id=webhook_id,
            total=total,
        )

        return DeliveryLogPage(
            logs=entries[start : start + limit],
            total=total,
            page=page,
            limit=limit,
            total_pages=total_pages(total, limit),
            webhook={"id": endpoint.id, "name": endpoint.name, "url": endpoint.url},
        )
