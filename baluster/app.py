from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from baluster.api.error_handling import register_exception_handlers
from baluster.api.routes import routers
from baluster.config import Settings
from baluster.logging import get_logger, set_correlation_id
from baluster.service.auth import REFRESHED_TOKEN_HEADER

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_sweep_task: asyncio.Task | None = None


async def _run_cache_sweep(runtime, interval_seconds: int) -> None:
    """Background loop purging expired OAuth states and membership answers."""
    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                runtime.purge_caches()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort sweep
                logger.warning("cache_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("cache_sweep_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the cache sweep on startup and release the store on shutdown."""
    global _sweep_task
    from baluster.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.cache_sweep_interval_seconds
    if interval > 0:
        _sweep_task = asyncio.create_task(_run_cache_sweep(runtime, interval))
        logger.info("cache_sweep_started", interval_seconds=interval)

    yield

    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
        _sweep_task = None
    try:
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Baluster", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dashboard dev hosts; no wildcard so credentials stay allowed
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "x-org-id", "X-Request-ID"],
    # The dashboard reads the refreshed JWT from this header
    expose_headers=["X-Request-ID", REFRESHED_TOKEN_HEADER],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id, taken from ``X-Request-ID`` when supplied."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Credentials and permission lists must not be cached by proxies
    response.headers.setdefault("Cache-Control", "no-store")
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    return response


register_exception_handlers(app)
for _router in routers:
    app.include_router(_router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store connectivity and cache sizes."""
    from baluster.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.verify_connection), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        store_ok = True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        store_ok = False
    except Exception as exc:
        logger.error("health_check_store_failed", error=str(exc))
        store_ok = False
    checks["store"] = {
        "status": "healthy" if store_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }
    checks["caches"] = {
        "status": "healthy",
        "oauth_states": len(runtime.state_cache),
        "memberships": len(runtime.membership_cache),
    }
    return {
        "status": "healthy" if store_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
