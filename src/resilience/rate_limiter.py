"""Rate limiting for outbound webhook deliveries.

Implements a token bucket per tenant so that one tenant's event volume
cannot flood its receivers. Each tenant's bucket holds ``rate_limit``
tokens and refills at ``rate_limit`` tokens per minute.

Features:
- Per-tenant limits (deliveries per minute)
- Buckets rebuilt when a tenant changes its limit
- Retry-after hint computed in the same step as the refusal
"""

import asyncio
import time
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)


class RateLimitExceeded(Exception):
    """Raised when a rate limit is exceeded."""

    def __init__(
        self,
        tenant_id: str,
        limit: int,
        retry_after: float,
    ) -> None:
        self.tenant_id = tenant_id
        self.limit = limit
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded for tenant {tenant_id}. "
            f"Limit: {limit}/min, retry after {retry_after:.1f}s"
        )


@dataclass
class TokenBucket:
    """Per-minute token bucket.

    Starts full with ``per_minute`` tokens and refills continuously at
    ``per_minute`` tokens per minute, never above ``per_minute``.

    Attributes:
        per_minute: Bucket size and refill rate.
        tokens: Tokens currently available.
        updated_at: Monotonic time of the last refill.
    """

    per_minute: int
    tokens: float = field(init=False)
    updated_at: float = field(init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    def __post_init__(self) -> None:
        self.tokens = float(self.per_minute)
        self.updated_at = time.monotonic()

    @property
    def refill_per_second(self) -> float:
        return self.per_minute / 60.0

    def _refill(self, now: float) -> None:
        elapsed = now - self.updated_at
        self.tokens = min(float(self.per_minute), self.tokens + elapsed * self.refill_per_second)
        self.updated_at = now

    async def take(self) -> float:
        """Take one token if available.

        Returns:
            0.0 if a token was taken, otherwise the seconds until one will be.
        """
        async with self._lock:
            self._refill(time.monotonic())
            if self.tokens >= 1:
                self.tokens -= 1
                return 0.0
            return (1 - self.tokens) / self.refill_per_second


class TenantRateLimiter:
    """Per-tenant delivery rate limiter.

    Example:
        limiter = TenantRateLimiter()

        try:
            await limiter.acquire("tenant_1", limit=100)
            # Deliver
        except RateLimitExceeded as e:
            # Skip this delivery
            ...
    """

    def __init__(self) -> None:
        self._buckets: dict[str, TokenBucket] = {}

    def _bucket_for(self, tenant_id: str, limit: int) -> TokenBucket:
        bucket = self._buckets.get(tenant_id)
        if bucket is None or bucket.per_minute != limit:
            bucket = self._buckets[tenant_id] = TokenBucket(per_minute=limit)
        return bucket

    async def acquire(self, tenant_id: str, limit: int) -> None:
        """Take one delivery slot for a tenant.

        Args:
            tenant_id: Tenant sending the delivery.
            limit: Deliveries allowed per minute.

        Raises:
            RateLimitExceeded: If the tenant's bucket is empty.
        """
        retry_after = await self._bucket_for(tenant_id, limit).take()
        if retry_after > 0:
            logger.warning(
                "rate_limit_exceeded",
                tenant_id=tenant_id,
                limit=limit,
                retry_after=round(retry_after, 2),
            )
            raise RateLimitExceeded(
                tenant_id=tenant_id,
                limit=limit,
                retry_after=retry_after,
            )

    def reset(self) -> None:
        """Reset all buckets (for testing)."""
        self._buckets.clear()


# Global rate limiter instance
_rate_limiter: TenantRateLimiter | None = None


def get_rate_limiter() -> TenantRateLimiter:
    """Get or create the global rate limiter.

    Returns:
        The global rate limiter instance.
    """
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = TenantRateLimiter()
    return _rate_limiter


def reset_rate_limiter() -> None:
    """Reset the global rate limiter (for testing)."""
    global _rate_limiter
    _rate_limiter = None
