from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from usage_guard.modules.notifications.domain.monitor import ThresholdMonitor
from usage_guard.shared.core.config import get_settings, reload_settings_from_environment
from usage_guard.shared.core.exceptions import UsageGuardException
from usage_guard.shared.core.logging import setup_logging
from usage_guard.shared.db.session import (
    dispose_engine,
    get_session_maker,
    health_check,
    init_models,
)

setup_logging()
settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global settings
    settings = reload_settings_from_environment()
    logger.info("app_starting", app_name=settings.APP_NAME, mode=settings.USAGE_GUARD_MODE)

    # Local installs and tests run without a migration step
    if settings.is_local_mode or settings.TESTING:
        await init_models()

    monitor = ThresholdMonitor(session_maker=get_session_maker(), settings=settings)
    await monitor.start()
    app.state.threshold_monitor = monitor

    yield

    # Teardown: stop the engine before the database goes away
    logger.info("app_shutting_down")
    await monitor.stop()
    await dispose_engine()
    logger.info("db_engine_disposed")


usage_guard_app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
)
app: FastAPI = usage_guard_app
__all__ = ["app", "usage_guard_app", "lifespan"]

usage_guard_app.mount("/metrics", make_asgi_app())


@usage_guard_app.exception_handler(UsageGuardException)
async def usage_guard_exception_handler(
    request: Request, exc: UsageGuardException
) -> JSONResponse:
    """Handle custom application exceptions."""
    logger.error(
        "request_failed",
        path=request.url.path,
        code=exc.code,
        error=exc.message,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "message": exc.message, "details": exc.details},
    )


@usage_guard_app.get("/health", tags=["Lifecycle"])
async def health(request: Request) -> Any:
    """Database and threshold engine status for load balancers."""
    database = await health_check()
    monitor: ThresholdMonitor | None = getattr(
        request.app.state, "threshold_monitor", None
    )
    body = {
        "status": "healthy" if database["status"] == "up" else "unhealthy",
        "database": database,
        "threshold_monitor": monitor.get_status() if monitor else None,
    }
    if database["status"] == "down":
        return JSONResponse(status_code=503, content=body)
    return body
