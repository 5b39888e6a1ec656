from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, settings as global_settings
from .observability import (
    RequestContextMiddleware,
    configure_logging,
    get_request_id,
    maybe_instrument_opentelemetry,
    record_job_metric,
)
from .routes.admin import router as admin_router
from .routes.devices import router as devices_router
from .routes.ingest import router as ingest_router
from .services.scheduling import APSchedulerTaskScheduler
from .services.status_tracker import StatusTracker, TrackerPolicy
from .version import __version__


logger = logging.getLogger("fleetstatus")


def create_app(_settings: Settings | None = None, *, tracker: StatusTracker | None = None) -> FastAPI:
    # Allow tests to inject Settings and a tracker (with a manual clock)
    # without reloading modules.
    settings = _settings or global_settings

    background = BackgroundScheduler(timezone="UTC")
    if tracker is None:
        # Delayed fallback re-enqueues share the app scheduler when it runs;
        # otherwise the task scheduler starts its own on first use.
        task_scheduler = APSchedulerTaskScheduler(background if settings.enable_scheduler else None)
        tracker = StatusTracker(policy=TrackerPolicy.from_settings(settings), scheduler=task_scheduler)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _setup_logging(settings)
        if settings.enable_scheduler:
            _start_scheduler(background, app.state.tracker, settings)
        else:
            logger.info("Scheduler disabled (ENABLE_SCHEDULER=false)")
        yield
        cancelled = app.state.tracker.shutdown()
        _stop_scheduler(background)
        if cancelled:
            logger.info("Dropped pending fallback retries on shutdown (count=%s)", cancelled)

    docs_url = "/docs" if settings.enable_docs else None
    redoc_url = "/redoc" if settings.enable_docs else None
    openapi_url = "/openapi.json" if settings.enable_docs else None

    app = FastAPI(
        title="Fleet Status Tracker API",
        version=__version__,
        lifespan=lifespan,
        docs_url=docs_url,
        redoc_url=redoc_url,
        openapi_url=openapi_url,
    )
    app.state.settings = settings
    app.state.tracker = tracker

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Cap request body sizes for write endpoints.
    if settings.max_request_body_bytes > 0:
        from .middleware.limits import BodySizeLimitMiddleware

        app.add_middleware(
            BodySizeLimitMiddleware,
            max_body_bytes=settings.max_request_body_bytes,
            paths=["/api/v1/telemetry", "/api/v1/admin"],
        )

    # Request IDs / structured HTTP logs
    app.add_middleware(RequestContextMiddleware)

    # Optional OpenTelemetry instrumentation (ENABLE_OTEL=1).
    maybe_instrument_opentelemetry(
        enabled=settings.enable_otel,
        app=app,
        service_name="fleet-status-tracker",
        service_version=__version__,
        environment=settings.app_env,
    )

    def _runtime_features() -> dict:
        return {
            "docs": {"enabled": bool(settings.enable_docs)},
            "otel": {"enabled": bool(settings.enable_otel)},
            "scheduler": {
                "enabled": bool(settings.enable_scheduler),
                "offline_check_interval_s": int(settings.offline_check_interval_s),
                "fallback_retry_interval_s": int(settings.fallback_retry_interval_s),
            },
            "routes": {
                "ingest": bool(settings.enable_ingest_routes),
                "read": bool(settings.enable_read_routes),
                "admin": bool(settings.enable_admin_routes),
            },
            "limits": {"max_request_body_bytes": int(settings.max_request_body_bytes)},
        }

    @app.get("/", include_in_schema=False)
    def root():
        return {
            "message": "Fleet Status Tracker is running",
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/healthz", include_in_schema=False)
    async def healthz():
        return {"ok": True, "version": __version__, "env": settings.app_env, "features": _runtime_features()}

    @app.get("/api/v1/health")
    def health_api():
        return {"ok": True, "env": settings.app_env, "version": app.version, "features": _runtime_features()}

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        rid = get_request_id() or "unknown"

        # Preserve explicit error envelopes when callers supply them.
        payload: dict[str, Any]
        if isinstance(exc.detail, dict) and "error" in exc.detail:
            payload = exc.detail
        else:
            payload = {"error": {"code": "HTTP_ERROR", "message": str(exc.detail)}}

        error_obj = payload.get("error")
        if isinstance(error_obj, dict):
            error_obj.setdefault("request_id", rid)

        headers = dict(exc.headers or {})
        headers.setdefault("X-Request-ID", rid)
        return JSONResponse(status_code=exc.status_code, content=payload, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        rid = get_request_id() or "unknown"
        return JSONResponse(
            status_code=422,
            content={
                "error": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "details": exc.errors(),
                    "request_id": rid,
                }
            },
            headers={"X-Request-ID": rid},
        )

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        rid = get_request_id() or "unknown"
        logger.exception(
            "unhandled_exception",
            extra={"fields": {"path": str(request.url.path), "method": request.method}},
        )
        return JSONResponse(
            status_code=500,
            content={"error": {"code": "INTERNAL", "message": "Processing failed", "request_id": rid}},
            headers={"X-Request-ID": rid},
        )

    # --- Route surface ---
    if settings.enable_ingest_routes:
        app.include_router(ingest_router)
    else:
        logger.info("Ingest routes disabled (ENABLE_INGEST_ROUTES=false)")

    if settings.enable_read_routes:
        app.include_router(devices_router)
    else:
        logger.info("Read routes disabled (ENABLE_READ_ROUTES=false)")

    if settings.enable_admin_routes:
        app.include_router(admin_router)

    return app


def _setup_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    configure_logging(level=level, log_format=settings.log_format)
    logger.info("Logging initialized (level=%s)", settings.log_level)


def _start_scheduler(scheduler: BackgroundScheduler, tracker: StatusTracker, settings: Settings) -> None:
    scheduler.add_job(
        func=_run_job,
        args=("offline_check", tracker.check_offline_devices),
        trigger="interval",
        seconds=settings.offline_check_interval_s,
        id="offline_check",
        max_instances=1,
        replace_existing=True,
        coalesce=True,
    )
    scheduler.add_job(
        func=_run_job,
        args=("fallback_retries", tracker.process_fallback_retries),
        trigger="interval",
        seconds=settings.fallback_retry_interval_s,
        id="fallback_retries",
        max_instances=1,
        replace_existing=True,
        coalesce=True,
    )

    scheduler.start()
    logger.info(
        "Scheduler started (offline_check_interval_s=%s, fallback_retry_interval_s=%s)",
        settings.offline_check_interval_s,
        settings.fallback_retry_interval_s,
    )


def _stop_scheduler(scheduler: BackgroundScheduler) -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")


def _run_job(name: str, func: Callable[[], Any]) -> None:
    start = time.perf_counter()
    success = False
    try:
        func()
        success = True
    except Exception:
        logger.exception("%s failed", name)
    finally:
        duration_ms = (time.perf_counter() - start) * 1000.0
        record_job_metric(job=name, duration_ms=duration_ms, success=success)


# ASGI entrypoint
app = create_app()
