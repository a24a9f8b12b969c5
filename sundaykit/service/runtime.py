from __future__ import annotations

import asyncio
import threading
import time
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlparse, urlunparse

from sundaykit.config import get_settings, reset_settings_cache
from sundaykit.logging import get_logger
from sundaykit.service.bootstrap import DatabaseBootstrap
from sundaykit.service.monitors import MonitorRegistry
from sundaykit.service.n8n import N8nClient
from sundaykit.service.northflank import NorthflankClient
from sundaykit.service.provisioning import ProvisioningService
from sundaykit.service.reconciler import ProvisioningMonitor
from sundaykit.service.shared_services import SharedServices
from sundaykit.service.training import TrainingMonitor, TrainingService
from sundaykit.service.user_db import UserDatabase
from sundaykit.storage.memory import MemoryStore
from sundaykit.storage.postgres import PostgresStore
from sundaykit.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(parsed._replace(netloc=netloc))
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app.

    ``platform``, ``workspace_api``, ``user_db``, ``sleep`` and ``clock`` may be
    passed in to replace the real collaborators.
    """

    def __init__(
        self,
        *,
        platform: Optional[NorthflankClient] = None,
        workspace_api: Optional[N8nClient] = None,
        user_db: Optional[UserDatabase] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    secret_key=self.settings.secret_key,
                    persist=not self.settings.test_mode,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, secret_key=self.settings.secret_key
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.store_type = store_type

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_unavailable_store_leases",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )

        sleep = sleep or asyncio.sleep
        clock = clock or time.monotonic
        self.platform = platform or NorthflankClient(
            self.settings.northflank_api_token,
            self.settings.northflank_api_base,
            template_id=self.settings.northflank_template_id,
            region=self.settings.northflank_region,
            timeout=self.settings.northflank_timeout_seconds,
            sleep=sleep,
        )
        self.workspace_api = workspace_api or N8nClient(
            timeout=self.settings.workspace_timeout_seconds
        )
        self.user_db = user_db or UserDatabase(schema=self.settings.user_data_schema)

        self.monitors = MonitorRegistry(self.store, lease=self.cache)
        self.shared_services = SharedServices(self.platform, self.settings)
        self.bootstrap = DatabaseBootstrap(
            self.store, self.platform, self.workspace_api, self.user_db, self.settings
        )
        self.provisioning_monitor = ProvisioningMonitor(
            self.store,
            self.platform,
            self.workspace_api,
            self.settings,
            shared_services=self.shared_services,
            bootstrap=self.bootstrap,
            monitors=self.monitors,
            sleep=sleep,
            clock=clock,
        )
        self.provisioning = ProvisioningService(
            self.store,
            self.platform,
            self.monitors,
            self.provisioning_monitor,
            self.settings,
        )
        self.training_monitor = TrainingMonitor(
            self.store,
            self.platform,
            self.user_db,
            self.settings,
            sleep=sleep,
            clock=clock,
        )
        self.training = TrainingService(
            self.store,
            self.platform,
            self.user_db,
            self.monitors,
            self.training_monitor,
            self.settings,
        )
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            platform_configured=self.platform.is_configured,
            monitor_owner=self.monitors.owner,
        )

    async def resume_monitors(self) -> Dict[str, int]:
        """Relaunch provisioning and training monitors recorded as in flight."""
        return {
            "provisioning": await self.provisioning.resume_inflight(),
            "training": await self.training.resume_inflight(),
        }

    async def close(self) -> None:
        await self.monitors.shutdown()
        await self.platform.close()
        await self.workspace_api.close()
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(**overrides: Any) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(**overrides)
        return runtime
