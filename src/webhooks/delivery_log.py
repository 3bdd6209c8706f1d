"""Bounded in-memory log of recent delivery attempts per endpoint."""

from collections import deque

import structlog

from src.config import settings
from src.webhooks.models import DeliveryLogEntry, DeliveryLogStatus

logger = structlog.get_logger(__name__)


class DeliveryLog:
    """Ring buffer of the most recent attempts for each (tenant, endpoint).

    Older entries are evicted once ``retention`` entries are held for an
    endpoint. Nothing is persisted; counters on the endpoint are the durable
    record.
    """

    def __init__(self, retention: int | None = None) -> None:
        """Initialize the log.

        Args:
            retention: Entries kept per endpoint (defaults to settings).
        """
        self.retention = retention or settings.WEBHOOK_LOG_RETENTION
        self._entries: dict[tuple[str, str], deque[DeliveryLogEntry]] = {}

    def append(self, tenant_id: str, entry: DeliveryLogEntry) -> None:
        """Record an attempt."""
        key = (tenant_id, entry.webhook_id)
        if key not in self._entries:
            self._entries[key] = deque(maxlen=self.retention)
        self._entries[key].append(entry)

    def entries(
        self,
        tenant_id: str,
        webhook_id: str,
        *,
        status: DeliveryLogStatus | None = None,
    ) -> list[DeliveryLogEntry]:
        """Entries for an endpoint, newest first.

        Args:
            tenant_id: Owning tenant.
            webhook_id: Endpoint identifier.
            status: Optional outcome filter.

        Returns:
            Matching entries.
        """
        entries = list(reversed(self._entries.get((tenant_id, webhook_id), ())))
        if status:
            entries = [e for e in entries if e.status == status]
        return entries

    def discard(self, tenant_id: str, webhook_id: str) -> None:
        """Drop all entries for an endpoint."""
        if self._entries.pop((tenant_id, webhook_id), None) is not None:
            logger.debug("delivery_log_discarded", tenant_id=tenant_id, webhook_id=webhook_id)
