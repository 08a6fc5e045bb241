"""FastAPI application entrypoint for the BrandForge generation engine."""

from __future__ import annotations

from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from brandforge.api.errors import register_error_handlers
from brandforge.billing.router import router as usage_router
from brandforge.business_plan.router import router as business_plan_router
from brandforge.core.config import get_settings
from brandforge.core.logger import bind_request_context, clear_request_context, get_logger
from brandforge.core.metrics import record_http_request, render_prometheus_metrics
from brandforge.core.observability import init_sentry, sentry_scope
from brandforge.jobs.router import router as jobs_router
from brandforge.outputs.router import router as outputs_router
from brandforge.storage.db import load_models
from brandforge.storage.db import test_connection as test_db_connection
from brandforge.storage.redis_client import test_connection as test_redis_connection


settings = get_settings()
logger = get_logger("brandforge.api")

app = FastAPI(title=settings.app_name, version=settings.app_version)
register_error_handlers(app)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    started_at = perf_counter()
    request_id = request.headers.get("x-request-id", str(uuid4()))
    org_id = request.headers.get("x-org-id")
    bind_request_context(request_id=request_id, org_id=org_id)

    status_code = 500
    try:
        with sentry_scope(org_id=org_id, request_id=request_id):
            response = await call_next(request)
        status_code = int(response.status_code)
    finally:
        duration = perf_counter() - started_at
        if settings.metrics_enabled:
            record_http_request(
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_seconds=duration,
            )
        clear_request_context()

    response.headers["x-request-id"] = request_id
    return response


@app.on_event("startup")
def on_startup() -> None:
    load_models()
    sentry_enabled = init_sentry()
    logger.info(
        "application_startup",
        env=settings.env,
        version=settings.app_version,
        sentry_enabled=sentry_enabled,
        metrics_enabled=settings.metrics_enabled,
        inline_job_processing=settings.inline_job_processing,
        generation_lock_backend=settings.generation_lock_backend,
    )


@app.get("/health")
def health() -> JSONResponse:
    db_ok, db_error = test_db_connection()
    redis_ok, redis_error = test_redis_connection()

    healthy = db_ok and redis_ok
    status = "ok" if healthy else "degraded"

    payload = {
        "status": status,
        "env": settings.env,
        "services": {
            "database": {"ok": db_ok, "error": db_error},
            "redis": {"ok": redis_ok, "error": redis_error},
        },
    }

    return JSONResponse(content=payload, status_code=200 if healthy else 503)


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "env": settings.env,
    }


@app.get("/metrics")
def metrics() -> PlainTextResponse:
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled\n", status_code=404)

    payload = render_prometheus_metrics(
        app_name=settings.app_name,
        app_version=settings.app_version,
        env=settings.env,
    )
    return PlainTextResponse(
        payload,
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


app.include_router(jobs_router)
app.include_router(outputs_router)
app.include_router(business_plan_router)
app.include_router(usage_router)
