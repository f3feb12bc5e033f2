from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from authcore.api.error_handling import register_exception_handlers
from authcore.api.routes import router
from authcore.logging import get_logger, set_correlation_id
from authcore.service.errors import StoreUnavailable

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release the store on shutdown."""
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="authcore", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with an ``X-Request-ID`` for log correlation.

    A client-supplied ID is reused; otherwise a new UUID is generated. The
    ID is returned in the ``X-Request-ID`` response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    response.headers.setdefault("Cache-Control", "no-store")
    return response


app.include_router(router)
register_exception_handlers(app)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report liveness plus credential store reachability."""
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        await runtime.store.ping()
    except StoreUnavailable:
        logger.error("health_check_store_failed")
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "version": __version__},
        )
    return {"status": "ok", "version": __version__}
