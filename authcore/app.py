from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from authcore.api.error_handling import register_exception_handlers
from authcore.api.routes import router
from authcore.logging import get_logger, sanitize_error_message, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    from authcore.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="authcore", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag logs with the client's X-Request-ID, or a fresh UUID, and echo it back."""
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
        # tokens travel in these bodies
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report store and Redis reachability."""
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Any] = {}
    healthy = True

    def _probe_store() -> None:
        runtime.store.get_user("00000000-0000-0000-0000-000000000000")

    try:
        await asyncio.wait_for(asyncio.to_thread(_probe_store), HEALTH_CHECK_TIMEOUT_SECONDS)
        checks["store"] = {"status": "healthy"}
    except Exception as exc:
        logger.error("health_check_store_failed", error=str(exc))
        checks["store"] = {"status": "unhealthy", "error": sanitize_error_message(str(exc))}
        healthy = False

    if runtime.cache is not None:
        try:
            await asyncio.wait_for(runtime.cache.client.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
            checks["redis"] = {"status": "healthy"}
        except Exception as exc:
            logger.warning("health_check_redis_failed", error=str(exc))
            # lockouts fall back to the in-process tracker
            checks["redis"] = {"status": "degraded"}
    else:
        checks["redis"] = {"status": "disabled"}

    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "version": __version__,
            "checks": checks,
        },
    )
