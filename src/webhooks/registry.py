"""Webhook endpoint registration and management.

Provides CRUD over a tenant's webhook endpoints, the tenant-level webhook
settings, and the write-back path used after every delivery attempt.

Every mutation is a read-modify-write of the tenant's whole configuration
document. Writes for one tenant are serialized by a per-tenant lock and
guarded by the store's version check; a stale write is retried from a
fresh read.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any, TypeVar

import structlog
from pydantic import HttpUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from src.config import settings
from src.webhooks.delivery_log import DeliveryLog
from src.webhooks.errors import ConflictError, NotFoundError, ValidationError
from src.webhooks.events import WebhookEventType, parse_event_type
from src.webhooks.models import (
    DeliveryLogEntry,
    DeliveryResult,
    EndpointPage,
    EndpointStatus,
    HttpMethod,
    TenantWebhookConfig,
    WebhookEndpoint,
    total_pages,
)
from src.webhooks.store import InMemoryTenantStore, TenantConfigStore
from src.webhooks.tracker import apply_delivery_result

logger = structlog.get_logger(__name__)

T = TypeVar("T")

MAX_NAME_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500
MAX_PAGE_LIMIT = 100
MAX_WRITE_ATTEMPTS = 5

_URL_ADAPTER = TypeAdapter(HttpUrl)

UPDATABLE_FIELDS = frozenset(
    {"name", "url", "events", "method", "description", "active", "headers"}
)

CONFIG_LIMITS: dict[str, tuple[int, int]] = {
    "retry_attempts": (1, 10),
    "timeout_seconds": (5, 120),
    "rate_limit": (1, 1000),
}
CONFIG_FLAGS = frozenset(
    {"enabled", "enable_signing", "log_webhooks", "enable_rate_limiting"}
)

# Headers the dispatcher owns; the signature header is added from settings
RESERVED_HEADERS = frozenset(
    {"content-type", "content-length", "user-agent", "host", "transfer-encoding"}
)

# RFC 9110 token characters
_HEADER_NAME_RE = re.compile(r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+")
# Visible ASCII, space and tab; no CR/LF
_HEADER_VALUE_RE = re.compile(r"[\t\x20-\x7e]*")


# ============================================================================
# Field validation
# ============================================================================


def validate_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Webhook name is required", field="name")
    name = name.strip()
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(
            f"Webhook name must be between 1 and {MAX_NAME_LENGTH} characters",
            field="name",
        )
    return name


def validate_url(url: Any) -> str:
    """Check that ``url`` is an absolute http(s) URL.

    Returns:
        The trimmed URL as given (not normalized).
    """
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("Webhook URL is required", field="url")
    url = url.strip()
    try:
        parsed = _URL_ADAPTER.validate_python(url)
    except PydanticValidationError as e:
        raise ValidationError("Invalid URL format", field="url", code="invalid_url") from e
    if not parsed.host:
        raise ValidationError("Invalid URL format", field="url", code="invalid_url")
    return url


def validate_events(events: Any) -> list[WebhookEventType]:
    if not isinstance(events, Sequence) or isinstance(events, str | bytes):
        raise ValidationError("Events must be a list of event names", field="events")
    if not events:
        raise ValidationError("At least one event must be specified", field="events")

    parsed: list[WebhookEventType] = []
    for name in events:
        event_type = parse_event_type(name)
        if event_type not in parsed:
            parsed.append(event_type)
    return parsed


def validate_method(method: Any) -> HttpMethod:
    if isinstance(method, HttpMethod):
        return method
    if isinstance(method, str):
        try:
            return HttpMethod(method.strip().upper())
        except ValueError:
            pass
    raise ValidationError("Method must be POST, PUT, or PATCH", field="method")


def validate_description(description: Any) -> str:
    if description is None:
        return ""
    if not isinstance(description, str):
        raise ValidationError("Description must be a string", field="description")
    description = description.strip()
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(
            f"Description cannot exceed {MAX_DESCRIPTION_LENGTH} characters",
            field="description",
        )
    return description


def reserved_header_names() -> frozenset[str]:
    """Lower-cased header names the dispatcher always sets itself."""
    return RESERVED_HEADERS | {settings.WEBHOOK_SIGNATURE_HEADER.lower()}


def validate_headers(headers: Any) -> dict[str, str]:
    """Check static endpoint headers.

    Names must be HTTP tokens and not one of the headers the dispatcher
    sets. Values must be printable ASCII on a single line.
    """
    if headers is None:
        return {}
    if not isinstance(headers, Mapping):
        raise ValidationError("Headers must be an object", field="headers")

    reserved = reserved_header_names()
    clean: dict[str, str] = {}
    seen: set[str] = set()
    for name, value in headers.items():
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Header names must be non-empty strings", field="headers")
        name = name.strip()
        if not _HEADER_NAME_RE.fullmatch(name):
            raise ValidationError(f"Invalid header name: {name!r}", field="headers")
        if name.lower() in reserved:
            raise ValidationError(
                f"Header {name} is set by the webhook service and cannot be overridden",
                field="headers",
                code="reserved_header",
            )
        if name.lower() in seen:
            raise ValidationError(f"Header {name} is repeated", field="headers")
        if not isinstance(value, str):
            raise ValidationError(f"Header {name} must have a string value", field="headers")
        if not _HEADER_VALUE_RE.fullmatch(value):
            raise ValidationError(
                f"Header {name} must be printable ASCII on a single line",
                field="headers",
            )
        seen.add(name.lower())
        clean[name] = value
    return clean


def validate_active(active: Any) -> bool:
    if not isinstance(active, bool):
        raise ValidationError("Active must be a boolean value", field="active")
    return active


def validate_pagination(page: int, limit: int) -> None:
    if page < 1:
        raise ValidationError("Page must be a positive integer", field="page")
    if not 1 <= limit <= MAX_PAGE_LIMIT:
        raise ValidationError(
            f"Limit must be between 1 and {MAX_PAGE_LIMIT}", field="limit"
        )


def _now() -> datetime:
    return datetime.now(UTC)


# Global endpoint registry instance
_endpoint_registry: EndpointRegistry | None = None


class EndpointRegistry:
    """Manages a tenant's webhook endpoints and webhook settings.

    Provides CRUD operations for endpoints, tenant configuration and the
    result write-back used by the dispatcher.
    """

    def __init__(
        self,
        store: TenantConfigStore | None = None,
        *,
        delivery_log: DeliveryLog | None = None,
        reject_duplicates: bool | None = None,
    ) -> None:
        """Initialize the registry.

        Args:
            store: Tenant document store (in-memory if not provided).
            delivery_log: Log of recent attempts (created if not provided).
            reject_duplicates: Reject endpoints repeating an existing
                (url, events) pair. Defaults to settings.
        """
        self._store = store or InMemoryTenantStore()
        self.delivery_log = delivery_log or DeliveryLog()
        self.reject_duplicates = (
            settings.WEBHOOK_REJECT_DUPLICATES
            if reject_duplicates is None
            else reject_duplicates
        )
        self._locks: dict[str, asyncio.Lock] = {}
        self._logger = logger.bind(component="endpoint_registry")

    @property
    def store(self) -> TenantConfigStore:
        return self._store

    def _tenant_lock(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    async def _mutate(
        self,
        tenant_id: str,
        mutate: Callable[[TenantWebhookConfig], tuple[T, bool]],
        *,
        actor: str | None = None,
        on_commit: Callable[[T], None] | None = None,
    ) -> T:
        """Run a read-modify-write against a tenant document.

        Args:
            tenant_id: Owning tenant.
            mutate: Applies the change in place and returns
                (value, changed). Nothing is written when changed is False.
            actor: Identity recorded as the document's last editor.
            on_commit: Called with the value once the write has landed,
                still holding the tenant lock.

        Returns:
            The value produced by ``mutate``.
        """
        async with self._tenant_lock(tenant_id):
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(MAX_WRITE_ATTEMPTS),
                retry=retry_if_exception_type(ConflictError),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        self._logger.info(
                            "tenant_write_retry",
                            tenant_id=tenant_id,
                            attempt=attempt.retry_state.attempt_number,
                        )
                    current = await self._store.load(tenant_id)
                    config = current.config if current else TenantWebhookConfig()
                    version = current.version if current else None

                    value, changed = mutate(config)
                    if changed:
                        config.last_updated = _now()
                        if actor:
                            config.updated_by = actor
                        await self._store.save(tenant_id, config, expected_version=version)
                    if on_commit is not None:
                        on_commit(value)
                    return value

        # This should not be reached due to reraise=True
        raise RuntimeError("Write loop exited unexpectedly")

    async def _read(self, tenant_id: str) -> TenantWebhookConfig:
        current = await self._store.load(tenant_id)
        return current.config if current else TenantWebhookConfig()

    def _check_duplicate(
        self,
        config: TenantWebhookConfig,
        url: str,
        events: list[WebhookEventType],
        *,
        exclude_id: str | None = None,
    ) -> None:
        if not self.reject_duplicates:
            return
        for endpoint in config.endpoints:
            if endpoint.id == exclude_id:
                continue
            if endpoint.url == url and set(endpoint.events) == set(events):
                raise ConflictError(
                    "A webhook with this URL and event set already exists",
                    code="duplicate_endpoint",
                    details={"webhook_id": endpoint.id},
                )

    # ------------------------------------------------------------------
    # Endpoint CRUD
    # ------------------------------------------------------------------

    async def create(
        self,
        tenant_id: str,
        *,
        name: str,
        url: str,
        events: Sequence[str | WebhookEventType],
        method: str | HttpMethod = HttpMethod.POST,
        description: str | None = "",
        active: bool = True,
        headers: Mapping[str, str] | None = None,
        actor: str | None = None,
    ) -> WebhookEndpoint:
        """Register a new endpoint.

        Args:
            tenant_id: Owning tenant.
            name: Display label.
            url: Absolute callback URL.
            events: Event names to subscribe to (at least one).
            method: HTTP method used for deliveries.
            description: Free-form description.
            active: Whether the endpoint starts active.
            headers: Static headers sent with every delivery.
            actor: Identity recorded as last editor.

        Returns:
            Created endpoint, including its generated secret.

        Raises:
            ValidationError: If any field is malformed.
            ConflictError: If duplicates are rejected and one exists.
        """
        endpoint = WebhookEndpoint(
            name=validate_name(name),
            url=validate_url(url),
            events=validate_events(events),
            method=validate_method(method),
            description=validate_description(description),
            active=validate_active(active),
            headers=validate_headers(headers),
        )
        if not endpoint.active:
            endpoint.status = EndpointStatus.DISABLED

        def mutate(config: TenantWebhookConfig) -> tuple[WebhookEndpoint, bool]:
            self._check_duplicate(config, endpoint.url, endpoint.events)
            config.endpoints.append(endpoint)
            return endpoint, True

        created = await self._mutate(tenant_id, mutate, actor=actor)

        self._logger.info(
            "webhook_created",
            tenant_id=tenant_id,
            webhook_id=created.id,
            url=created.url,
            event_count=len(created.events),
        )

        return created.model_copy(deep=True)

    async def get(self, tenant_id: str, webhook_id: str) -> WebhookEndpoint:
        """Get an endpoint by ID.

        Raises:
            NotFoundError: If the endpoint does not exist.
        """
        config = await self._read(tenant_id)
        endpoint = config.find_endpoint(webhook_id)
        if endpoint is None:
            raise NotFoundError(webhook_id)
        return endpoint

    async def list_endpoints(
        self,
        tenant_id: str,
        *,
        status: EndpointStatus | None = None,
        active: bool | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> EndpointPage:
        """List endpoints, filtered and paginated.

        Args:
            tenant_id: Owning tenant.
            status: Only endpoints with this status.
            active: Only endpoints with this active flag.
            page: 1-based page number.
            limit: Page size (1-100).

        Returns:
            Page of endpoints in registration order.
        """
        validate_pagination(page, limit)
        config = await self._read(tenant_id)

        endpoints = list(config.endpoints)
        if status is not None:
            endpoints = [e for e in endpoints if e.status == status]
        if active is not None:
            endpoints = [e for e in endpoints if e.active is active]

        total = len(endpoints)
        start = (page - 1) * limit
        return EndpointPage(
            webhooks=endpoints[start : start + limit],
            total=total,
            page=page,
            limit=limit,
            total_pages=total_pages(total, limit),
        )

    async def update(
        self,
        tenant_id: str,
        webhook_id: str,
        *,
        actor: str | None = None,
        **fields: Any,
    ) -> WebhookEndpoint:
        """Apply a partial update to an endpoint.

        Only fields present in ``fields`` are changed. The secret can never
        be changed.

        Raises:
            NotFoundError: If the endpoint does not exist.
            ValidationError: If a field is unknown or malformed.
        """
        if "secret" in fields:
            raise ValidationError("Webhook secret cannot be changed", field="secret")
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Unknown webhook fields: {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )

        changes: dict[str, Any] = {}
        if "name" in fields:
            changes["name"] = validate_name(fields["name"])
        if "url" in fields:
            changes["url"] = validate_url(fields["url"])
        if "events" in fields:
            changes["events"] = validate_events(fields["events"])
        if "method" in fields:
            changes["method"] = validate_method(fields["method"])
        if "description" in fields:
            changes["description"] = validate_description(fields["description"])
        if "headers" in fields:
            changes["headers"] = validate_headers(fields["headers"])
        if "active" in fields:
            changes["active"] = validate_active(fields["active"])

        def mutate(config: TenantWebhookConfig) -> tuple[WebhookEndpoint, bool]:
            endpoint = config.find_endpoint(webhook_id)
            if endpoint is None:
                raise NotFoundError(webhook_id)
            if "url" in changes or "events" in changes:
                self._check_duplicate(
                    config,
                    changes.get("url", endpoint.url),
                    changes.get("events", endpoint.events),
                    exclude_id=webhook_id,
                )

            active = changes.get("active")
            field_changes = {k: v for k, v in changes.items() if k != "active"}
            updated = endpoint.model_copy(update=field_changes, deep=True)
            if active is not None:
                updated = _with_active(updated, active)
            updated.updated_at = _now()
            config.replace_endpoint(updated)
            return updated, True

        updated = await self._mutate(tenant_id, mutate, actor=actor)

        self._logger.info(
            "webhook_updated",
            tenant_id=tenant_id,
            webhook_id=webhook_id,
            fields=sorted(fields),
        )

        return updated

    async def delete(
        self,
        tenant_id: str,
        webhook_id: str,
        *,
        actor: str | None = None,
    ) -> str:
        """Delete an endpoint.

        Returns:
            The deleted endpoint id.

        Raises:
            NotFoundError: If the endpoint does not exist.
        """

        def mutate(config: TenantWebhookConfig) -> tuple[str, bool]:
            if config.find_endpoint(webhook_id) is None:
                raise NotFoundError(webhook_id)
            config.endpoints = [e for e in config.endpoints if e.id != webhook_id]
            return webhook_id, True

        await self._mutate(
            tenant_id,
            mutate,
            actor=actor,
            on_commit=lambda _: self.delivery_log.discard(tenant_id, webhook_id),
        )

        self._logger.info("webhook_deleted", tenant_id=tenant_id, webhook_id=webhook_id)
        return webhook_id

    async def toggle_active(
        self,
        tenant_id: str,
        webhook_id: str,
        *,
        actor: str | None = None,
    ) -> WebhookEndpoint:
        """Flip an endpoint between active and disabled.

        Raises:
            NotFoundError: If the endpoint does not exist.
        """

        def mutate(config: TenantWebhookConfig) -> tuple[WebhookEndpoint, bool]:
            endpoint = config.find_endpoint(webhook_id)
            if endpoint is None:
                raise NotFoundError(webhook_id)
            toggled = _with_active(endpoint, not endpoint.active)
            toggled.updated_at = _now()
            config.replace_endpoint(toggled)
            return toggled, True

        toggled = await self._mutate(tenant_id, mutate, actor=actor)

        self._logger.info(
            "webhook_toggled",
            tenant_id=tenant_id,
            webhook_id=webhook_id,
            active=toggled.active,
        )
        return toggled

    # ------------------------------------------------------------------
    # Tenant configuration
    # ------------------------------------------------------------------

    async def get_config(self, tenant_id: str) -> TenantWebhookConfig:
        """Get the tenant's webhook settings (defaults if never saved)."""
        return await self._read(tenant_id)

    async def update_config(
        self,
        tenant_id: str,
        *,
        actor: str | None = None,
        **fields: Any,
    ) -> TenantWebhookConfig:
        """Update tenant-level webhook settings.

        Accepts ``enabled``, ``retry_attempts``, ``timeout_seconds``,
        ``enable_signing``, ``log_webhooks``, ``enable_rate_limiting`` and
        ``rate_limit``. Endpoints are managed through the CRUD methods.

        Raises:
            ValidationError: If a field is unknown or out of range.
        """
        changes: dict[str, Any] = {}
        for key, value in fields.items():
            if key in CONFIG_FLAGS:
                if not isinstance(value, bool):
                    raise ValidationError(f"{key} must be a boolean value", field=key)
            elif key in CONFIG_LIMITS:
                low, high = CONFIG_LIMITS[key]
                if isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
                    raise ValidationError(
                        f"{key} must be an integer between {low} and {high}", field=key
                    )
            else:
                raise ValidationError(f"Unknown webhook setting: {key}", field=key)
            changes[key] = value

        def mutate(config: TenantWebhookConfig) -> tuple[TenantWebhookConfig, bool]:
            for key, value in changes.items():
                setattr(config, key, value)
            return config, bool(changes)

        config = await self._mutate(tenant_id, mutate, actor=actor)

        self._logger.info(
            "webhook_settings_updated", tenant_id=tenant_id, fields=sorted(changes)
        )
        return config

    # ------------------------------------------------------------------
    # Dispatch support
    # ------------------------------------------------------------------

    async def endpoints_for_event(
        self,
        tenant_id: str,
        event_type: WebhookEventType,
    ) -> tuple[TenantWebhookConfig, list[WebhookEndpoint]]:
        """Get the tenant's settings and the active endpoints subscribed to an event."""
        config = await self._read(tenant_id)
        endpoints = [
            endpoint
            for endpoint in config.endpoints
            if endpoint.active and endpoint.should_receive_event(event_type)
        ]
        return config, endpoints

    async def record_result(
        self,
        tenant_id: str,
        webhook_id: str,
        result: DeliveryResult,
    ) -> WebhookEndpoint | None:
        """Write a delivery result back to its endpoint.

        Returns:
            The updated endpoint, or None if it was deleted meanwhile.
        """
        log_enabled = False

        def mutate(config: TenantWebhookConfig) -> tuple[WebhookEndpoint | None, bool]:
            nonlocal log_enabled
            log_enabled = False
            endpoint = config.find_endpoint(webhook_id)
            if endpoint is None:
                return None, False
            updated = apply_delivery_result(endpoint, result)
            config.replace_endpoint(updated)
            log_enabled = config.log_webhooks
            return updated, True

        def append_log(updated: WebhookEndpoint | None) -> None:
            # Runs under the tenant lock, serialized with delete
            if updated is not None and log_enabled:
                self.delivery_log.append(tenant_id, DeliveryLogEntry.from_result(result))

        updated = await self._mutate(tenant_id, mutate, on_commit=append_log)

        if updated is None:
            self._logger.info(
                "delivery_result_dropped",
                tenant_id=tenant_id,
                webhook_id=webhook_id,
                reason="endpoint_deleted",
            )
            return None

        self._logger.debug(
            "delivery_result_recorded",
            tenant_id=tenant_id,
            webhook_id=webhook_id,
            success=result.success,
            status=updated.status.value,
            trigger_count=updated.trigger_count,
        )
        return updated


def _with_active(endpoint: WebhookEndpoint, active: bool) -> WebhookEndpoint:
    """Copy of ``endpoint`` with ``active`` set and status adjusted."""
    if endpoint.active == active:
        return endpoint.model_copy(deep=True)
    status = endpoint.status_from_history() if active else EndpointStatus.DISABLED
    return endpoint.model_copy(update={"active": active, "status": status}, deep=True)


def get_endpoint_registry() -> EndpointRegistry:
    """Get the global endpoint registry instance.

    Returns:
        Singleton EndpointRegistry.
    """
    global _endpoint_registry
    if _endpoint_registry is None:
        from src.webhooks.store import create_store

        _endpoint_registry = EndpointRegistry(store=create_store())
    return _endpoint_registry


def set_endpoint_registry(registry: EndpointRegistry | None) -> None:
    """Set the global endpoint registry instance.

    Useful for testing.

    Args:
        registry: EndpointRegistry instance.
    """
    global _endpoint_registry
    _endpoint_registry = registry
