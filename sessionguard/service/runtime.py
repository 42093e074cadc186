from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from sessionguard.api.transport import SessionTransport
from sessionguard.clock import Clock, SystemClock
from sessionguard.config import get_settings, reset_settings_cache
from sessionguard.logging import get_logger
from sessionguard.service.providers import build_provider_registry
from sessionguard.service.session import SessionService, StoreAccountProvisioner
from sessionguard.storage.memory import MemoryStore
from sessionguard.storage.postgres import PostgresStore
from sessionguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a connection URL with ``***``."""
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
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, clock: Optional[Clock] = None):
        self.settings = get_settings()
        self.clock = clock or SystemClock()
        in_memory = self.settings.use_memory_store or self.settings.test_mode
        logger.info(
            "runtime_init_started",
            use_memory_store=in_memory,
            test_mode=self.settings.test_mode,
        )
        encryption_key = self.settings.two_factor_encryption_key or self.settings.jwt_secret
        try:
            self.store = (
                MemoryStore(encryption_key=encryption_key)
                if in_memory
                else PostgresStore(self.settings.database_url, encryption_key=encryption_key)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if in_memory else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url and not self.settings.test_mode:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                # The cache only holds derived profile data, so run without it
                logger.warning(
                    "redis_unavailable",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )

        self.providers = build_provider_registry(self.settings)
        self.sessions = SessionService.build(
            self.store,
            self.settings,
            self.clock,
            providers=self.providers,
            cache=self.cache,
            provisioner=StoreAccountProvisioner(self.store),
        )
        self.transport = SessionTransport(self.settings)
        logger.info(
            "runtime_initialized",
            store_type="memory" if in_memory else "postgres",
            redis_enabled=self.cache is not None,
            providers=self.providers.names(),
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache: RedisCache) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
    else:
        loop.create_task(cache.close())


def reset_runtime_for_tests(clock: Optional[Clock] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            _close_cache(runtime.cache)
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(clock=clock)
        return runtime
