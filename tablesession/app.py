from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tablesession.api.error_handling import register_exception_handlers
from tablesession.api.routes import router
from tablesession.config import get_settings
from tablesession.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    from tablesession.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins() -> List[str]:
    settings = get_settings()
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Local dev hosts; no wildcard because the refresh cookie needs credentials
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


async def add_correlation_id(request: Request, call_next):
    """Bind X-Request-ID (or a fresh UUID) to the logs of this request and echo it."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    return response


async def health() -> JSONResponse:
    """Probe the credential store and the cache, each with a bounded timeout."""
    from tablesession.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    store_type = type(runtime.store).__name__
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        checks["store"] = {"status": "healthy", "type": store_type}
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        checks["store"] = {"status": "unhealthy", "type": store_type}
    except Exception as exc:
        logger.error("health_check_store_failed", error=str(exc))
        checks["store"] = {"status": "unhealthy", "type": store_type}

    if runtime.cache is None:
        checks["cache"] = {"status": "not_configured"}
    else:
        try:
            await asyncio.wait_for(runtime.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
            checks["cache"] = {"status": "healthy"}
        except Exception as exc:
            # Cache loss degrades the limiter and deny-list; it never fails health
            logger.warning("health_check_cache_failed", error=str(exc) or type(exc).__name__)
            checks["cache"] = {"status": "unhealthy", "degraded": True}

    healthy = checks["store"]["status"] == "healthy"
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def create_app() -> FastAPI:
    application = FastAPI(
        title="Table Session Service", version=__version__, lifespan=lifespan
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
        max_age=3600,
    )
    application.middleware("http")(add_security_headers)
    application.middleware("http")(add_correlation_id)
    register_exception_handlers(application)
    application.include_router(router)
    application.add_api_route("/healthz", health, methods=["GET"], tags=["health"])
    return application


app = create_app()
