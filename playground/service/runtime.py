from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from playground.config import get_settings, reset_settings_cache
from playground.logging import get_logger
from playground.service.auth import AuthService
from playground.service.files import FileSystemService
from playground.service.sessions import RedisSessionRegistry, SessionRegistry
from playground.service.video import MEBIBYTE, GoogleDriveVideoProvider, VideoProvider
from playground.storage.memory import MemoryStore
from playground.storage.postgres import PostgresStore
from playground.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, video_provider: Optional[VideoProvider] = None):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    max_folder_depth=self.settings.max_folder_depth,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    fs_root=self.settings.shared_fs_root,
                    max_folder_depth=self.settings.max_folder_depth,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            cache = RedisCache(self.settings.redis_url)
            try:
                cache.verify_connection()
                self.cache = cache
            except (RedisError, OSError) as exc:
                if not self.settings.test_mode:
                    raise RuntimeError(
                        "REDIS_URL is set but Redis is unreachable; unset it to keep "
                        "sessions in the primary store."
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )

        ttl = self.settings.access_token_ttl_minutes
        if self.cache is not None:
            self.sessions: SessionRegistry = RedisSessionRegistry(
                self.store, self.cache, ttl_minutes=ttl
            )
        else:
            self.sessions = SessionRegistry(self.store, ttl_minutes=ttl)
        logger.info(
            "runtime_session_registry",
            backend="redis" if self.cache is not None else store_type,
        )

        self.auth = AuthService(self.store, self.sessions, self.settings, cache=self.cache)
        self.videos: VideoProvider = video_provider or GoogleDriveVideoProvider(self.settings)
        self.files = FileSystemService(
            self.store,
            self.videos,
            first_chunk_bytes=self.settings.video_first_chunk_mebibytes * MEBIBYTE,
            chunk_bytes=self.settings.video_chunk_mebibytes * MEBIBYTE,
        )

    @property
    def session_max_age(self) -> timedelta:
        return timedelta(minutes=self.settings.session_max_age_minutes)

    async def sweep_sessions(self) -> int:
        return await self.sessions.sweep_expired(self.session_max_age)


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, video_provider: Optional[VideoProvider] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(video_provider=video_provider)
        return runtime
