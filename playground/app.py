from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from playground.api.error_handling import register_exception_handlers
from playground.api.routes import router
from playground.config import Settings
from playground.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_sweep_task: asyncio.Task | None = None


async def _run_session_sweep(interval_seconds: int) -> None:
    """Periodically drop stale entries from the session registry."""
    from playground.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await get_runtime().sweep_sessions()
            logger.debug("session_sweep_complete", removed=removed)
        except Exception as exc:
            logger.error("session_sweep_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the session sweeper on startup and stop it on shutdown."""
    global _sweep_task
    from playground.service.runtime import get_runtime

    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        _run_session_sweep(runtime.settings.session_sweep_interval_seconds)
    )
    logger.info(
        "session_sweeper_started",
        interval_seconds=runtime.settings.session_sweep_interval_seconds,
    )

    yield

    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
        _sweep_task = None
    if runtime.cache is not None:
        await runtime.cache.close()
    logger.info("runtime_cleanup_complete")


def _allowed_origins() -> List[str]:
    if _settings.cors_origins:
        return _settings.cors_origins
    # Local dev hosts; no wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


def create_app() -> FastAPI:
    app = FastAPI(title="Playground", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Range", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Content-Range", "Accept-Ranges"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag each request with an id for log tracing.

        The client's ``X-Request-ID`` is reused when present, otherwise a new
        one is generated. Either way it is echoed back on the response.
        """
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
        return response

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        """Dependency checks for the database and Redis, plus version info."""
        from playground.service.runtime import get_runtime

        async def _run_bounded(label: str, func) -> bool:
            try:
                await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        runtime = get_runtime()
        checks: Dict[str, Dict[str, Any]] = {}
        healthy = True

        if hasattr(runtime.store, "verify_connection"):
            db_ok = await _run_bounded("database", runtime.store.verify_connection)
            checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
            healthy = healthy and db_ok
        else:
            checks["database"] = {"status": "healthy", "type": "memory"}

        if runtime.cache is not None:
            redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
            healthy = healthy and redis_ok
        else:
            checks["redis"] = {"status": "not_configured"}

        return {
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()
