"""ReiStandard application entry point.

Quick Start:
    $ reistandard serve          # Start the API server
    $ reistandard dispatch       # Run one delivery pass

Environment:
    REISTANDARD_ENV              # development/production (default: development)
    REISTANDARD_LOG_LEVEL        # DEBUG/INFO/WARNING/ERROR (default: INFO)
    ENCRYPTION_KEY               # master secret for per-user keys
    CRON_SECRET                  # bearer token for /api/v1/send-notifications
    VAPID_EMAIL, NEXT_PUBLIC_VAPID_PUBLIC_KEY, VAPID_PRIVATE_KEY
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import uvicorn
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from reistandard import __version__
from reistandard.api.routes import router
from reistandard.config import get_settings
from reistandard.database import close_db, init_db
from reistandard.errors import ApiError, ConfigurationError, invalid_parameters
from reistandard.logging_config import get_logger, setup_logging
from reistandard.modules.scheduler.dispatcher import Dispatcher

setup_logging()
logger = get_logger(__name__)

DISPATCH_JOB_ID = "reistandard-dispatch"


async def run_dispatch_pass() -> None:
    """One scheduled delivery pass; errors are logged, never raised into APScheduler."""
    try:
        dispatcher = Dispatcher.from_settings()
        report = await dispatcher.run()
    except ConfigurationError as exc:
        logger.error("scheduled_dispatch_config_error", code=exc.code, missing=exc.missing)
        return
    except Exception as exc:
        logger.exception("scheduled_dispatch_failed", error=str(exc))
        return
    logger.info(
        "scheduled_dispatch_complete",
        total=report.total_tasks,
        succeeded=report.success_count,
        failed=report.failed_count,
    )


def _start_scheduler(interval_seconds: int) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(
        job_defaults={
            "misfire_grace_time": interval_seconds,
            "coalesce": True,
            "max_instances": 1,
        },
    )
    scheduler.add_job(
        run_dispatch_pass,
        trigger="interval",
        seconds=interval_seconds,
        id=DISPATCH_JOB_ID,
        name="Deliver due notifications",
    )
    scheduler.start()
    logger.info("dispatch_scheduler_started", interval_seconds=interval_seconds)
    return scheduler


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup and shutdown lifecycle."""
    settings = get_settings()
    logger.info("reistandard_starting", version=__version__, env=settings.reistandard_env)

    await init_db()

    if not settings.encryption_key:
        logger.warning("encryption_key_missing")
    if settings.missing_vapid_keys:
        logger.warning("vapid_config_incomplete", missing=settings.missing_vapid_keys)

    scheduler: Optional[AsyncIOScheduler] = None
    if settings.dispatch_interval_seconds > 0:
        scheduler = _start_scheduler(settings.dispatch_interval_seconds)

    logger.info("reistandard_ready", api=f"http://{settings.api_host}:{settings.api_port}")

    yield

    if scheduler is not None:
        scheduler.shutdown(wait=False)
        logger.info("dispatch_scheduler_stopped")
    await close_db()
    logger.info("reistandard_stopped")


app = FastAPI(
    title="ReiStandard",
    description="Scheduled, encrypted push-notification delivery",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("api_error", code=exc.code, path=request.url.path)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(part) for part in err.get("loc", ())[1:]) for err in exc.errors()]
    error = invalid_parameters(invalid=[f for f in fields if f])
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", path=request.url.path, error=str(exc))
    error = ApiError(
        "INTERNAL_SERVER_ERROR", "Internal server error, please try again later", status_code=500
    )
    return JSONResponse(status_code=500, content=error.to_dict())


app.include_router(router, prefix="/api/v1")


def main() -> None:
    """Start the API server."""
    settings = get_settings()
    uvicorn.run(
        "reistandard.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.reistandard_env == "development",
        log_level=settings.reistandard_log_level.lower(),
    )


if __name__ == "__main__":
    main()
