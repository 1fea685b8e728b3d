from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from sessionguard.api.error_handling import register_exception_handlers
from sessionguard.api.routes import router
from sessionguard.api.schemas import Envelope
from sessionguard.logging import clear_request_context, get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the reconciliation worker with the app and tear the runtime down after."""
    from sessionguard.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if runtime.settings.worker_enabled:
            await runtime.worker.start()
            logger.info("reconciliation_worker_started_on_startup")
    except Exception as exc:
        logger.error("startup_worker_failed", error=str(exc))

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="SessionGuard", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation ID, reusing a client-supplied X-Request-ID."""
    clear_request_context()
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def healthz():
    from sessionguard.service.runtime import get_runtime

    runtime = get_runtime()
    jobs = await runtime.scheduler.counts()
    return Envelope(
        status="ok",
        data={
            "version": __version__,
            "store": type(runtime.store).__name__,
            "cache": type(runtime.cache).__name__,
            "jobs": jobs,
        },
    )
