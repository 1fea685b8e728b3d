from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from sessionguard.config import SessionPolicy, Settings, get_settings, reset_settings_cache
from sessionguard.logging import get_logger
from sessionguard.service.jobs import JobScheduler
from sessionguard.service.passwords import CredentialVerifier
from sessionguard.service.sessions import SessionEngine
from sessionguard.service.tokens import TokenCodec
from sessionguard.service.worker import ReconciliationWorker
from sessionguard.storage.memory import MemoryJobQueue, MemorySessionCache, MemoryStore
from sessionguard.storage.postgres import PostgresStore
from sessionguard.storage.redis_cache import RedisJobQueue, RedisSessionCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: RedisSessionCache | MemorySessionCache | None = None
        queue_backend: RedisJobQueue | MemoryJobQueue | None = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisSessionCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
                queue_backend = RedisJobQueue(
                    self.settings.redis_url,
                    lease_seconds=self.settings.worker_lease_seconds,
                    client=cache.client,
                )
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for live sessions, ban markers and the job queue; "
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
                    f"Running without Redis under {fallback_mode}; live sessions and "
                    "jobs are process-local and lost on restart."
                ),
                mode=fallback_mode,
            )
            self.cache = MemorySessionCache()
            queue_backend = MemoryJobQueue(lease_seconds=self.settings.worker_lease_seconds)

        self.scheduler = JobScheduler(queue_backend)
        self.verifier = CredentialVerifier()
        self.codec = TokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
        )
        self.engine = SessionEngine(
            self.store,
            self.cache,
            self.scheduler,
            self.verifier,
            self.codec,
            SessionPolicy.from_settings(self.settings),
        )
        self.worker = ReconciliationWorker(
            self.engine,
            self.scheduler,
            poll_interval=self.settings.worker_poll_interval,
            batch_size=self.settings.worker_batch_size,
            concurrency=self.settings.worker_concurrency,
            max_retries=self.settings.worker_max_retries,
            retry_delay=self.settings.worker_retry_delay_seconds,
        )
        logger.info("runtime_init_complete")

    async def close(self) -> None:
        await self.worker.stop()
        # The Redis queue shares the cache's client
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


_runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        with _runtime_lock:
            if _runtime is None:
                _runtime = Runtime()
    return _runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime from the current environment."""

    global _runtime
    reset_settings_cache()
    with _runtime_lock:
        previous = _runtime
        _runtime = Runtime()
    if previous is not None and isinstance(previous.store, PostgresStore):
        previous.store.close()
    return _runtime
