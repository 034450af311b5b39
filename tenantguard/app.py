from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tenantguard.api.error_handling import register_exception_handlers
from tenantguard.api.routes import router
from tenantguard.config import get_settings
from tenantguard.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database pool on startup; drain caches and close connections on shutdown."""
    from tenantguard.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.open()
    logger.info("runtime_started")

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="TenantGuard", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with X-Request-ID (client supplied or generated) for log correlation."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    response.headers.setdefault("API-Version", __version__)
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health():
    """Report database and cache reachability."""
    from tenantguard.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, probe) -> bool:
        try:
            return bool(await asyncio.wait_for(probe(), HEALTH_CHECK_TIMEOUT_SECONDS))
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    if hasattr(runtime.store, "ping"):
        db_ok = await _run_bounded("database", runtime.store.ping)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    cache_ok = await _run_bounded("cache", runtime.cache.ping)
    checks["cache"] = {"status": "healthy" if cache_ok else "unhealthy", "type": type(runtime.cache).__name__}

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
