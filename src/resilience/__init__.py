"""Resilience patterns for outbound deliveries.

This module contains:
- Per-tenant rate limiting for webhook fan-out
"""

from src.resilience.rate_limiter import (
    RateLimitExceeded,
    TenantRateLimiter,
    TokenBucket,
    get_rate_limiter,
    reset_rate_limiter,
)

__all__ = [
    # Rate limiter classes
    "RateLimitExceeded",
    "TenantRateLimiter",
    "TokenBucket",
    # Rate limiter functions
    "get_rate_limiter",
    "reset_rate_limiter",
]
