from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from tripgate.api.error_handling import _error_response, register_exception_handlers
from tripgate.api.routes import _client_ip, router
from tripgate.config import Settings, get_settings
from tripgate.logging import bind_correlation_id, get_logger
from tripgate.service.errors import RateLimitedError
from tripgate.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = get_runtime()
    logger.info("app_started", store_type=type(runtime.store).__name__)
    yield
    await get_runtime().close()
    logger.info("runtime_cleanup_complete")


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Credentials are enabled, so never fall back to a wildcard
    return [settings.frontend_url.rstrip("/")]


async def add_correlation_id(request: Request, call_next):
    """Echo X-Request-ID back, generating one when the client sent none."""
    correlation_id = bind_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def enforce_api_rate_limit(request: Request, call_next):
    if not request.url.path.startswith("/api/") or request.method == "OPTIONS":
        return await call_next(request)
    runtime = get_runtime()
    try:
        decision = await runtime.rate_limiter.hit("api", _client_ip(request, runtime.settings))
    except RateLimitedError as exc:
        return _error_response(429, exc.message, code=exc.error_code, headers=exc.headers)
    response = await call_next(request)
    # Route-level policies are stricter and take precedence
    for name, value in decision.headers().items():
        response.headers.setdefault(name, value)
    return response


def _security_headers_middleware(settings: Settings):
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/api/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store")
        if request.url.scheme == "https" and settings.enable_hsts:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    return add_security_headers


async def health() -> Dict[str, Any]:
    """Report store and Redis reachability with bounded checks."""
    runtime = get_runtime()
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

    store_ok = await _run_bounded("store", runtime.store.verify_connection)
    checks["store"] = {
        "status": "healthy" if store_ok else "unhealthy",
        "type": type(runtime.store).__name__,
    }
    healthy = store_ok

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


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="Tripgate", version=__version__, lifespan=lifespan)

    # Later registrations wrap earlier ones; CORS stays outermost
    app.middleware("http")(enforce_api_rate_limit)
    app.middleware("http")(add_correlation_id)
    app.middleware("http")(_security_headers_middleware(settings))
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "RateLimit-Limit",
            "RateLimit-Remaining",
            "RateLimit-Reset",
            "Retry-After",
        ],
        max_age=3600,
    )

    register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route("/healthz", health, methods=["GET"])
    return app


app = create_app()
