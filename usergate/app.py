from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from usergate.api.error_handling import register_exception_handlers
from usergate.api.routes import router
from usergate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    from usergate.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        await get_runtime().close()
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="usergate", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag each request with a correlation ID.

    Taken from the X-Request-ID header when the client sends one, otherwise
    generated; bound into the logging context and echoed in the response.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Credentials flow through every API response
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> JSONResponse:
    """Probe the credential store and the session cache."""
    from usergate.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}

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
    db_ok = await _run_bounded("database", runtime.store.ping)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": type(runtime.store).__name__,
    }
    cache_ok = await _run_bounded("cache", runtime.cache.verify_connection)
    checks["cache"] = {
        "status": "healthy" if cache_ok else "unhealthy",
        "type": type(runtime.cache).__name__,
    }

    healthy = db_ok and cache_ok
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
