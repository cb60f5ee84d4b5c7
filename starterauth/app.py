from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from starterauth.api.error_handling import register_exception_handlers
from starterauth.api.routes import router
from starterauth.config import Settings, get_settings
from starterauth.logging import get_logger, set_correlation_id
from starterauth.service.cleanup import run_sweeper
from starterauth.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

PROBE_TIMEOUT_SECONDS = 3

_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
}
# responses that may carry tokens or account data
_NO_STORE_PREFIXES = ("/v1/auth", "/v1/users")


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = get_runtime()
    interval = runtime.settings.cleanup_interval_seconds
    sweeper = asyncio.create_task(run_sweeper(runtime.sweeper, interval))
    logger.info("app_started", version=__version__, sweep_interval_seconds=interval)
    try:
        yield
    finally:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        await runtime.close()
        logger.info("app_stopped")


async def _probe(component: str, check: Callable[[], Any]) -> str:
    """Run a blocking connectivity check off the loop, bounded in time."""
    try:
        await asyncio.wait_for(asyncio.to_thread(check), PROBE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_probe_timeout", component=component, timeout=PROBE_TIMEOUT_SECONDS)
        return "unhealthy"
    except Exception as exc:
        logger.error("health_probe_failed", component=component, error=str(exc))
        return "unhealthy"
    return "healthy"


async def health() -> Dict[str, Any]:
    """Report store and (when configured) Redis connectivity."""
    runtime = get_runtime()
    checks = {"database": {"status": await _probe("database", runtime.store.verify_connection)}}
    if runtime.cache is None:
        checks["redis"] = {"status": "not_configured"}
    else:
        checks["redis"] = {"status": await _probe("redis", runtime.cache.verify_connection)}
    healthy = all(c["status"] in {"healthy", "not_configured"} for c in checks.values())
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    application = FastAPI(title="Starter Auth API", version=__version__, lifespan=lifespan)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list or [settings.frontend_url],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Accept-Language", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Retry-After"],
        max_age=3600,
    )

    @application.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        for header, value in _SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        if request.url.path.startswith(_NO_STORE_PREFIXES):
            response.headers.setdefault("Cache-Control", "no-store")
        if settings.is_production and request.url.scheme == "https":
            response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        return response

    register_exception_handlers(application)
    application.include_router(router)
    application.add_api_route("/healthz", health, methods=["GET"], tags=["health"])
    return application


app = create_app()
