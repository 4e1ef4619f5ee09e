from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from tessera.api.error_handling import register_exception_handlers
from tessera.api.routes import router
from tessera.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


_eviction_task: asyncio.Task | None = None


async def _run_session_eviction(runtime, interval_seconds: int) -> None:
    """Periodically delete expired session rows."""
    while True:
        try:
            removed = await asyncio.to_thread(runtime.auth.evict_expired_sessions)
            if removed:
                logger.info("session_eviction_completed", removed=removed)
        except Exception as exc:
            logger.error("session_eviction_failed", error=str(exc))
        await asyncio.sleep(interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _eviction_task
    from tessera.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.session_eviction_interval_seconds
    if interval > 0:
        _eviction_task = asyncio.create_task(_run_session_eviction(runtime, interval))

    yield

    try:
        if _eviction_task:
            _eviction_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _eviction_task
            _eviction_task = None
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Tessera", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id for log tracing.

    The id comes from the X-Request-ID header when the client sends one and
    is echoed back on the response.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    if request.url.path.startswith("/v1/"):
        # Token responses must never land in a shared cache
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from tessera.service.runtime import get_runtime

    runtime = get_runtime()
    return {
        "status": "ok",
        "version": __version__,
        "store": type(runtime.store).__name__,
        "redis": runtime.cache is not None,
    }


def create_app() -> FastAPI:
    return app
