"""Webhook event dispatcher with retry logic.

Handles sending signed envelopes to registered endpoints, folding each
attempt's outcome back into the endpoint, and retrying failed deliveries
with exponential backoff.
"""

import asyncio
import time
from typing import Any

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_exponential

from src.config import settings
from src.resilience.rate_limiter import RateLimitExceeded, TenantRateLimiter, get_rate_limiter
from src.webhooks.errors import PreconditionError, TransportError, ValidationError
from src.webhooks.events import WebhookEventType, create_envelope, parse_event_type
from src.webhooks.models import (
    DeliveryError,
    DeliveryResult,
    TenantWebhookConfig,
    WebhookEndpoint,
)
from src.webhooks.registry import (
    EndpointRegistry,
    get_endpoint_registry,
    reserved_header_names,
)
from src.webhooks.security import create_signature_headers

logger = structlog.get_logger(__name__)

# Fragments of resolver errors raised when a host name cannot be resolved
_DNS_ERROR_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "no address associated",
    "getaddrinfo failed",
    "name resolution",
)


def _is_failed_result(result: DeliveryResult) -> bool:
    return not result.success


def _classify_connect_error(error: httpx.ConnectError) -> str:
    message = str(error).lower()
    if any(marker in message for marker in _DNS_ERROR_MARKERS):
        return "dns_error"
    return "connection_error"


def build_headers(
    endpoint: WebhookEndpoint,
    body: bytes,
    config: TenantWebhookConfig,
) -> httpx.Headers:
    """Request headers for a delivery.

    Order is Content-Type, User-Agent, the endpoint's static headers, then
    the signature. Static headers colliding (case-insensitively) with a
    header the service sets are dropped.

    Raises:
        ValueError: If a header cannot be encoded for the wire.
    """
    reserved = reserved_header_names()
    items = [
        ("Content-Type", "application/json"),
        ("User-Agent", settings.WEBHOOK_USER_AGENT),
    ]
    items.extend(
        (name, value)
        for name, value in endpoint.headers.items()
        if name.lower() not in reserved
    )
    if config.enable_signing:
        items.extend(create_signature_headers(endpoint.secret, body).items())
    return httpx.Headers(items)


class WebhookDispatcher:
    """Dispatches webhook events to registered endpoints.

    Features:
    - Async HTTP delivery under a hard per-attempt deadline
    - HMAC signature over the exact request bytes
    - Exponential backoff retry for failed deliveries
    - Per-tenant rate limiting during fan-out
    - Result write-back to endpoint counters and status
    """

    def __init__(
        self,
        registry: EndpointRegistry | None = None,
        *,
        rate_limiter: TenantRateLimiter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        backoff_multiplier: float | None = None,
        backoff_max: float | None = None,
        max_concurrent_deliveries: int | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            registry: Endpoint registry (uses global if not provided).
            rate_limiter: Per-tenant limiter (uses global if not provided).
            transport: Optional httpx transport, e.g. a MockTransport in tests.
            backoff_multiplier: Exponential backoff multiplier in seconds.
            backoff_max: Cap on a single backoff wait in seconds.
            max_concurrent_deliveries: Max concurrent delivery requests.
        """
        self._registry = registry or get_endpoint_registry()
        self._rate_limiter = rate_limiter or get_rate_limiter()
        self._transport = transport
        self._backoff_multiplier = (
            settings.WEBHOOK_RETRY_BACKOFF_SECONDS
            if backoff_multiplier is None
            else backoff_multiplier
        )
        self._backoff_max = (
            settings.WEBHOOK_RETRY_BACKOFF_MAX_SECONDS if backoff_max is None else backoff_max
        )
        self._semaphore = asyncio.Semaphore(
            max_concurrent_deliveries or settings.WEBHOOK_MAX_CONCURRENT_DELIVERIES
        )
        self._background_tasks: set[asyncio.Task[list[DeliveryResult]]] = set()
        self._logger = logger.bind(component="webhook_dispatcher")

    @property
    def registry(self) -> EndpointRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Single attempt
    # ------------------------------------------------------------------

    async def dispatch(
        self,
        tenant_id: str,
        endpoint: WebhookEndpoint,
        event: WebhookEventType | str,
        data: dict[str, Any] | None = None,
        *,
        is_test: bool = False,
        config: TenantWebhookConfig | None = None,
        attempt: int = 1,
    ) -> DeliveryResult:
        """Make a single delivery attempt.

        Delivery failures never raise; they are reported in the result.

        Args:
            tenant_id: Owning tenant.
            endpoint: Target endpoint.
            event: Event type being delivered.
            data: Event-specific data.
            is_test: Mark the envelope as a test delivery.
            config: Tenant settings (loaded if not provided).
            attempt: Attempt number, for diagnostics.

        Returns:
            Outcome of the attempt.

        Raises:
            PreconditionError: If the endpoint is inactive.
        """
        if not endpoint.active:
            raise PreconditionError(
                "Webhook is not active",
                code="endpoint_inactive",
                details={"webhook_id": endpoint.id},
            )

        event_type = _resolve_event(event)
        config = config or await self._registry.get_config(tenant_id)

        envelope = create_envelope(
            event_type,
            data or {},
            webhook_id=endpoint.id,
            user_id=tenant_id,
            test=is_test,
        )
        body = envelope.to_bytes()

        self._logger.debug(
            "attempting_delivery",
            tenant_id=tenant_id,
            webhook_id=endpoint.id,
            event_type=event_type.value,
            attempt=attempt,
            url=endpoint.url,
        )

        result_fields: dict[str, Any] = {
            "webhook_id": endpoint.id,
            "event": event_type,
            "attempt": attempt,
            "test": is_test,
            "payload_size": len(body),
        }

        start = time.perf_counter()
        try:
            async with self._semaphore:
                response = await self._send(endpoint, body, config)
        except TransportError as e:
            duration_ms = (time.perf_counter() - start) * 1000
            self._logger.warning(
                f"delivery_{e.code}",
                tenant_id=tenant_id,
                webhook_id=endpoint.id,
                attempt=attempt,
                error=e.message,
            )
            return DeliveryResult(
                success=False,
                status_code=0,
                duration_ms=round(duration_ms, 2),
                error=DeliveryError(message=e.message, code=e.code),
                **result_fields,
            )

        duration_ms = (time.perf_counter() - start) * 1000
        result = DeliveryResult(
            success=response.is_success,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
            response_body=response.text[: settings.WEBHOOK_MAX_RESPONSE_BYTES],
            response_headers=dict(response.headers),
            **result_fields,
        )

        if result.success:
            self._logger.info(
                "delivery_success",
                tenant_id=tenant_id,
                webhook_id=endpoint.id,
                status_code=response.status_code,
                duration_ms=result.duration_ms,
            )
        else:
            self._logger.warning(
                "delivery_non_success_response",
                tenant_id=tenant_id,
                webhook_id=endpoint.id,
                status_code=response.status_code,
                attempt=attempt,
            )
        return result

    async def _send(
        self,
        endpoint: WebhookEndpoint,
        body: bytes,
        config: TenantWebhookConfig,
    ) -> httpx.Response:
        """Issue the HTTP request under a hard total deadline.

        Building the request happens inside the same guard as sending it, so
        headers or URLs that cannot be encoded surface as a failed attempt.

        Raises:
            TransportError: If no response was received.
        """
        timeout = config.timeout_seconds
        try:
            async with httpx.AsyncClient(
                timeout=timeout, transport=self._transport
            ) as client:
                request = client.build_request(
                    endpoint.method.value,
                    endpoint.url,
                    content=body,
                    headers=build_headers(endpoint, body, config),
                )
                return await asyncio.wait_for(client.send(request), timeout=timeout)
        except (TimeoutError, httpx.TimeoutException) as e:
            raise TransportError(
                f"Request timed out after {timeout}s", code="timeout"
            ) from e
        except httpx.ConnectError as e:
            raise TransportError(
                f"Connection failed: {e}", code=_classify_connect_error(e)
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(
                str(e) or e.__class__.__name__, code="transport_error"
            ) from e
        except (httpx.InvalidURL, ValueError) as e:
            # UnicodeEncodeError is a ValueError
            raise TransportError(
                f"Request could not be built: {e}", code="invalid_request"
            ) from e

    # ------------------------------------------------------------------
    # Retry, fan-out and test deliveries
    # ------------------------------------------------------------------

    async def deliver_with_retry(
        self,
        tenant_id: str,
        endpoint: WebhookEndpoint,
        event: WebhookEventType | str,
        data: dict[str, Any] | None = None,
        *,
        config: TenantWebhookConfig | None = None,
    ) -> DeliveryResult:
        """Deliver an event with bounded retries.

        Every attempt is written back to the endpoint. Retrying stops once an
        attempt succeeds, attempts run out, or the endpoint has been deleted
        or deactivated in the meantime.

        Args:
            tenant_id: Owning tenant.
            endpoint: Target endpoint.
            event: Event type being delivered.
            data: Event-specific data.
            config: Tenant settings (loaded if not provided).

        Returns:
            Result of the last attempt made.
        """
        config = config or await self._registry.get_config(tenant_id)
        current = endpoint
        result: DeliveryResult | None = None

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(config.retry_attempts),
            wait=wait_exponential(multiplier=self._backoff_multiplier, max=self._backoff_max),
            retry=retry_if_result(_is_failed_result),
            retry_error_callback=lambda state: state.outcome.result(),
            reraise=True,
        ):
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                if attempt_number > 1:
                    self._logger.info(
                        "retry_attempt",
                        tenant_id=tenant_id,
                        webhook_id=current.id,
                        attempt=attempt_number,
                        max_attempts=config.retry_attempts,
                    )
                result = await self.dispatch(
                    tenant_id,
                    current,
                    event,
                    data,
                    config=config,
                    attempt=attempt_number,
                )
                updated = await self._registry.record_result(tenant_id, current.id, result)

            if attempt.retry_state.outcome.failed:
                continue
            attempt.retry_state.set_result(result)

            if not result.success and (updated is None or not updated.active):
                self._logger.info(
                    "retry_abandoned",
                    tenant_id=tenant_id,
                    webhook_id=current.id,
                    reason="endpoint_deleted" if updated is None else "endpoint_inactive",
                )
                break
            if updated is not None:
                current = updated

        if result is not None and not result.success:
            self._logger.error(
                "delivery_failed_permanently",
                tenant_id=tenant_id,
                webhook_id=current.id,
                attempts=result.attempt,
            )
        return result

    async def publish(
        self,
        tenant_id: str,
        event: WebhookEventType | str,
        data: dict[str, Any] | None = None,
    ) -> list[DeliveryResult]:
        """Deliver an event to every active endpoint subscribed to it.

        Does nothing while the tenant's webhooks are globally disabled.

        Args:
            tenant_id: Owning tenant.
            event: Event type to publish.
            data: Event-specific data.

        Returns:
            One result per subscribed endpoint.
        """
        event_type = parse_event_type(event)
        config, endpoints = await self._registry.endpoints_for_event(tenant_id, event_type)

        if not config.enabled:
            self._logger.debug(
                "webhooks_disabled", tenant_id=tenant_id, event_type=event_type.value
            )
            return []

        if not endpoints:
            self._logger.debug(
                "no_webhooks_subscribed",
                tenant_id=tenant_id,
                event_type=event_type.value,
            )
            return []

        self._logger.info(
            "dispatching_event",
            tenant_id=tenant_id,
            event_type=event_type.value,
            webhook_count=len(endpoints),
        )

        outcomes = await asyncio.gather(
            *(
                self._deliver_limited(tenant_id, endpoint, event_type, data, config)
                for endpoint in endpoints
            ),
            return_exceptions=True,
        )

        results: list[DeliveryResult] = []
        for endpoint, outcome in zip(endpoints, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                self._logger.error(
                    "delivery_task_failed",
                    tenant_id=tenant_id,
                    webhook_id=endpoint.id,
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
                continue
            results.append(outcome)

        self._logger.info(
            "event_dispatched",
            tenant_id=tenant_id,
            event_type=event_type.value,
            delivered=sum(1 for r in results if r.success),
            failed=sum(1 for r in results if not r.success),
        )
        return results

    async def _deliver_limited(
        self,
        tenant_id: str,
        endpoint: WebhookEndpoint,
        event_type: WebhookEventType,
        data: dict[str, Any] | None,
        config: TenantWebhookConfig,
    ) -> DeliveryResult:
        if config.enable_rate_limiting:
            try:
                await self._rate_limiter.acquire(tenant_id, config.rate_limit)
            except RateLimitExceeded as e:
                self._logger.warning(
                    "delivery_skipped",
                    tenant_id=tenant_id,
                    webhook_id=endpoint.id,
                    reason="rate_limited",
                    retry_after=round(e.retry_after, 2),
                )
                return DeliveryResult(
                    success=False,
                    webhook_id=endpoint.id,
                    event=event_type,
                    attempt=0,
                    error=DeliveryError(message=str(e), code="rate_limited"),
                )

        return await self.deliver_with_retry(
            tenant_id, endpoint, event_type, data, config=config
        )

    def publish_nowait(
        self,
        tenant_id: str,
        event: WebhookEventType | str,
        data: dict[str, Any] | None = None,
    ) -> asyncio.Task[list[DeliveryResult]]:
        """Schedule ``publish`` as a tracked background task.

        Returns:
            The scheduled task.
        """
        event_type = parse_event_type(event)
        task = asyncio.create_task(self.publish(tenant_id, event_type, data))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def send_test_event(
        self,
        tenant_id: str,
        webhook_id: str,
        test_data: dict[str, Any] | None = None,
    ) -> DeliveryResult:
        """Send a single test delivery to an endpoint.

        Ignores the tenant's global switch and rate limit and makes exactly
        one attempt. The result counts toward the endpoint's statistics.

        Args:
            tenant_id: Owning tenant.
            webhook_id: Endpoint to test.
            test_data: Data placed in the envelope.

        Returns:
            Outcome of the attempt.

        Raises:
            NotFoundError: If the endpoint does not exist.
            PreconditionError: If the endpoint is inactive.
        """
        endpoint = await self._registry.get(tenant_id, webhook_id)
        config = await self._registry.get_config(tenant_id)

        result = await self.dispatch(
            tenant_id,
            endpoint,
            WebhookEventType.WEBHOOK_TEST,
            test_data or {},
            is_test=True,
            config=config,
        )
        await self._registry.record_result(tenant_id, webhook_id, result)

        self._logger.info(
            "test_event_sent",
            tenant_id=tenant_id,
            webhook_id=webhook_id,
            success=result.success,
            status_code=result.status_code,
        )
        return result

    async def shutdown(self) -> None:
        """Shutdown dispatcher and wait for pending deliveries."""
        if self._background_tasks:
            self._logger.info(
                "waiting_for_pending_deliveries",
                count=len(self._background_tasks),
            )
            await asyncio.gather(*self._background_tasks, return_exceptions=True)


def _resolve_event(event: WebhookEventType | str) -> WebhookEventType:
    """Resolve an event name, allowing the reserved test event."""
    try:
        return WebhookEventType(event)
    except ValueError as e:
        raise ValidationError(
            f"Unknown event type: {event}", field="event", code="unknown_event"
        ) from e


# Global dispatcher instance
_dispatcher: WebhookDispatcher | None = None


def get_webhook_dispatcher() -> WebhookDispatcher:
    """Get the global webhook dispatcher.

    Returns:
        Singleton WebhookDispatcher.
    """
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = WebhookDispatcher()
    return _dispatcher


def set_webhook_dispatcher(dispatcher: WebhookDispatcher | None) -> None:
    """Set the global webhook dispatcher.

    Useful for testing.

    Args:
        dispatcher: WebhookDispatcher instance.
    """
    global _dispatcher
    _dispatcher = dispatcher
