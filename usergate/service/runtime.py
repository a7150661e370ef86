from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from usergate.config import get_settings, reset_settings_cache
from usergate.logging import get_logger
from usergate.service.auth import AuthService
from usergate.service.tokens import TokenIssuer
from usergate.storage.memory import MemoryCache, MemoryStore
from usergate.storage.postgres import PostgresStore
from usergate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(default_roles=(self.settings.default_role, "Admin"))
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    default_roles=(self.settings.default_role, "Admin"),
                    connect_timeout=self.settings.operation_timeout_seconds,
                    statement_timeout_ms=int(self.settings.operation_timeout_seconds * 1000),
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

        self.cache: Union[RedisCache, MemoryCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.operation_timeout_seconds,
                    queue_prefix=self.settings.notification_queue_prefix,
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for sessions and notification queues; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions and "
                    "notification queues are in-memory only."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache(queue_prefix=self.settings.notification_queue_prefix)

        self.issuer = TokenIssuer(
            self.settings.jwt_secret,
            self.settings.jwt_issuer,
            ttl_seconds=self.settings.session_ttl_seconds,
        )
        self.auth = AuthService(
            self.store,
            self.cache,
            self.cache,
            self.issuer,
            self.settings,
        )
        logger.info(
            "runtime_init_completed",
            cache_type=type(self.cache).__name__,
        )

    async def close(self) -> None:
        """Release Redis and Postgres connections on shutdown."""
        if isinstance(self.cache, RedisCache):
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.pool.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        # Close existing Redis connections to avoid event loop issues
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
