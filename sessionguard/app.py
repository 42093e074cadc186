from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI

from sessionguard.api.error_handling import register_exception_handlers
from sessionguard.api.routes import router
from sessionguard.logging import get_logger, set_correlation_id
from sessionguard.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

_sweep_task: asyncio.Task | None = None


async def _run_retention_sweep(runtime: Runtime, interval_seconds: int) -> None:
    """Periodically delete spent tokens, challenges and sign-in states."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            counts = await asyncio.to_thread(runtime.sessions.purge_expired)
            logger.debug("retention_sweep_finished", **counts)
        except Exception as exc:
            logger.error("retention_sweep_failed", error_type=type(exc).__name__, error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _sweep_task
    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        _run_retention_sweep(runtime, runtime.settings.retention_sweep_interval_seconds)
    )
    logger.info("retention_sweep_scheduled", interval=runtime.settings.retention_sweep_interval_seconds)

    yield

    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
        _sweep_task = None
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="SessionGuard", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind the X-Request-ID header (or a fresh id) to every log line of the request."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz", tags=["health"])
async def health():
    return {"status": "ok", "version": __version__}
