"""Vibeguard API — content-moderation pipeline service."""
from __future__ import annotations

import logging

from vibeguard.logging_config import setup_logging
setup_logging()
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.requests import Request as FastAPIRequest

from config.settings import settings
from vibeguard.db.engine import async_session, engine
from vibeguard.db.tables import Base

# ── Sentry Error Tracking ────────────────────────
if settings.SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.WARNING, event_level=logging.ERROR),
        ],
        # Image URLs and reviewer notes stay out of error reports
        send_default_pii=False,
    )

logger = logging.getLogger(__name__)


def build_runner(session_factory=async_session):
    """Wire classifier → engine → runner from settings. Raises ConfigurationError."""
    from vibeguard.services.analysis_tasks import AnalysisRunner
    from vibeguard.services.moderation import ModerationEngine
    from vibeguard.services.vision_classifier import VisionClassifier

    classifier = VisionClassifier.from_settings(settings) if settings.MODERATION_ENABLED else None
    moderation_engine = ModerationEngine.from_settings(settings, classifier, session_factory)
    return AnalysisRunner(moderation_engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate config, create tables, start the pipeline and the sweep."""
    # Validate configuration before anything else; ConfigurationError aborts startup
    from vibeguard.startup_checks import validate_settings
    validate_settings()

    import vibeguard.db.moderation_tables  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready")

    runner = build_runner()
    app.state.runner = runner

    from vibeguard.services.scheduler import start_scheduler, stop_scheduler
    start_scheduler(
        runner,
        async_session,
        interval_minutes=settings.SWEEP_INTERVAL_MINUTES,
        stale_after_minutes=settings.SWEEP_STALE_AFTER_MINUTES,
    )

    yield

    stop_scheduler()
    await runner.drain(timeout=30)
    classifier = runner.engine.classifier
    if classifier is not None:
        await classifier.close()
    await engine.dispose()


app = FastAPI(
    title="Vibeguard",
    description="Automated content moderation for daily photo posts",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials="*" not in settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Prometheus metrics
from vibeguard.middleware.metrics import MetricsMiddleware
app.add_middleware(MetricsMiddleware)

# Request ID tracing
from vibeguard.middleware.request_id import RequestIDMiddleware
app.add_middleware(RequestIDMiddleware)


@app.get("/health")
async def health():
    runner = getattr(app.state, "runner", None)
    return {
        "status": "ok",
        "moderation_enabled": settings.MODERATION_ENABLED,
        "in_flight": len(runner.in_flight) if runner else 0,
    }


from vibeguard.api.moderation import router as moderation_router
app.include_router(moderation_router)


# ── Error handlers ──────────────────────────────────────────────────────────

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: FastAPIRequest, exc: RequestValidationError):
    """Return clean, structured validation errors instead of raw Pydantic output."""
    errors = []
    for err in exc.errors():
        field = " → ".join(str(loc) for loc in err["loc"]) if err.get("loc") else "unknown"
        errors.append({"field": field, "message": err["msg"]})
    return JSONResponse(status_code=422, content={
        "error": "validation_error",
        "message": "Invalid request data",
        "details": errors,
    })


@app.exception_handler(HTTPException)
async def http_error_handler(request: FastAPIRequest, exc: HTTPException):
    """Consistent error envelope for all HTTP errors."""
    return JSONResponse(status_code=exc.status_code, content={
        "error": exc.detail if isinstance(exc.detail, str) else "error",
        "message": exc.detail,
    })


@app.exception_handler(Exception)
async def unhandled_error_handler(request: FastAPIRequest, exc: Exception):
    """Catch-all for unhandled exceptions — never leak stack traces."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={
        "error": "internal_error",
        "message": "Something went wrong. Please try again.",
    })
