"""Storage backends for per-tenant webhook configuration documents.

Each tenant owns a single document holding its full TenantWebhookConfig.
Reads return a private copy plus the document version; writes replace the
whole document and must present the version they read. A write against a
newer version raises ConflictError so the caller can re-read and retry.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

import aiosqlite
import structlog

from src.config import settings
from src.webhooks.errors import ConflictError, InternalError
from src.webhooks.models import TenantWebhookConfig

logger = structlog.get_logger(__name__)

DEFAULT_DB_PATH = Path("data/webhooks.db")


@dataclass
class VersionedConfig:
    """A tenant document together with the version it was read at."""

    config: TenantWebhookConfig
    version: int


class TenantConfigStore(ABC):
    """Whole-document store keyed by tenant id."""

    @abstractmethod
    async def load(self, tenant_id: str) -> VersionedConfig | None:
        """Read a tenant document.

        Returns:
            The document and its version, or None if the tenant has none.
        """

    @abstractmethod
    async def save(
        self,
        tenant_id: str,
        config: TenantWebhookConfig,
        *,
        expected_version: int | None,
    ) -> int:
        """Replace a tenant document.

        Args:
            tenant_id: Owning tenant.
            config: Full document to store.
            expected_version: Version the caller read, or None to create.

        Returns:
            The new version.

        Raises:
            ConflictError: If the stored version differs from expected_version.
        """

    async def close(self) -> None:  # noqa: B027
        """Release backend resources."""


class InMemoryTenantStore(TenantConfigStore):
    """Process-local store, serializing documents to JSON on write."""

    def __init__(self) -> None:
        self._documents: dict[str, tuple[str, int]] = {}
        self._lock = asyncio.Lock()

    async def load(self, tenant_id: str) -> VersionedConfig | None:
        async with self._lock:
            stored = self._documents.get(tenant_id)
        if stored is None:
            return None
        document, version = stored
        return VersionedConfig(
            config=TenantWebhookConfig.model_validate_json(document),
            version=version,
        )

    async def save(
        self,
        tenant_id: str,
        config: TenantWebhookConfig,
        *,
        expected_version: int | None,
    ) -> int:
        async with self._lock:
            stored = self._documents.get(tenant_id)
            current_version = stored[1] if stored else None
            if current_version != expected_version:
                raise ConflictError(
                    "Tenant webhook configuration was modified concurrently",
                    expected_version=expected_version,
                    actual_version=current_version,
                )
            new_version = (current_version or 0) + 1
            self._documents[tenant_id] = (config.model_dump_json(), new_version)
        return new_version


class SQLiteTenantStore(TenantConfigStore):
    """SQLite-backed store using a conditional update on the version column."""

    def __init__(self, db_path: Path | str | None = None) -> None:
        """Initialize the store.

        Args:
            db_path: Path to SQLite database. Uses default if not provided.
        """
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self._logger = logger.bind(component="tenant_store")
        self._initialized = False

    async def _ensure_initialized(self) -> None:
        """Ensure database tables exist."""
        if self._initialized:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS tenant_webhook_configs (
                    tenant_id TEXT PRIMARY KEY,
                    document TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
            """)
            await db.commit()

        self._initialized = True
        self._logger.info("storage_initialized", db_path=str(self.db_path))

    async def load(self, tenant_id: str) -> VersionedConfig | None:
        await self._ensure_initialized()

        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                async with db.execute(
                    "SELECT document, version FROM tenant_webhook_configs WHERE tenant_id = ?",
                    (tenant_id,),
                ) as cursor:
                    row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise InternalError(f"Failed to read tenant configuration: {e}") from e

        if not row:
            return None

        return VersionedConfig(
            config=TenantWebhookConfig.model_validate_json(row["document"]),
            version=row["version"],
        )

    async def save(
        self,
        tenant_id: str,
        config: TenantWebhookConfig,
        *,
        expected_version: int | None,
    ) -> int:
        await self._ensure_initialized()
        document = config.model_dump_json()

        try:
            async with aiosqlite.connect(self.db_path) as db:
                if expected_version is None:
                    try:
                        await db.execute(
                            """
                            INSERT INTO tenant_webhook_configs (tenant_id, document, version)
                            VALUES (?, ?, 1)
                            """,
                            (tenant_id, document),
                        )
                    except aiosqlite.IntegrityError as e:
                        raise ConflictError(
                            "Tenant webhook configuration already exists",
                            expected_version=None,
                        ) from e
                    await db.commit()
                    new_version = 1
                else:
                    cursor = await db.execute(
                        """
                        UPDATE tenant_webhook_configs
                        SET document = ?, version = version + 1,
                            updated_at = CURRENT_TIMESTAMP
                        WHERE tenant_id = ? AND version = ?
                        """,
                        (document, tenant_id, expected_version),
                    )
                    await db.commit()
                    if cursor.rowcount == 0:
                        raise ConflictError(
                            "Tenant webhook configuration was modified concurrently",
                            expected_version=expected_version,
                        )
                    new_version = expected_version + 1
        except aiosqlite.Error as e:
            raise InternalError(f"Failed to write tenant configuration: {e}") from e

        self._logger.debug("tenant_config_saved", tenant_id=tenant_id, version=new_version)
        return new_version


def create_store(backend: str | None = None) -> TenantConfigStore:
    """Create the configured store backend.

    Args:
        backend: "memory" or "sqlite" (defaults to settings).

    Returns:
        Store instance.
    """
    backend = (backend or settings.WEBHOOK_STORE_BACKEND).lower()
    if backend == "sqlite":
        return SQLiteTenantStore(settings.WEBHOOK_DB_PATH)
    if backend == "memory":
        return InMemoryTenantStore()
    raise ValueError(f"Unknown webhook store backend: {backend}")
