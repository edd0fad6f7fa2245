"""crmguard FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() — testable application factory
  - lifespan — @asynccontextmanager startup/shutdown sequence
  - /health router — delegated to crmguard/health.py
  - app = create_app() — module-level instance for uvicorn

Startup sequence:
  1. load_config()              → app.state.config
  2. create_data_boundary()     → app.state.boundary, audit_backend, directory
  3. RevealRateCounter + RevealService → app.state.reveal_service
  4. create_alert_dispatcher()  → app.state.alert_dispatcher
  5. SuspiciousActivityAggregator.start() → app.state.aggregator
  6. app.state.ready = True

Shutdown sequence (reverse):
  app.state.ready = False → stop aggregator → close dispatcher →
  close data boundary (feed, then activity log)
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from crmguard.auth.limiter import limiter, set_reveal_request_limit
from crmguard.boundary import create_data_boundary
from crmguard.config import Config, load_config
from crmguard.disclosure.rate_limit import RevealRateCounter
from crmguard.disclosure.router import router as disclosure_router
from crmguard.disclosure.service import RevealService
from crmguard.health import router as health_router
from crmguard.monitoring.aggregator import SuspiciousActivityAggregator
from crmguard.monitoring.alerts import create_alert_dispatcher
from crmguard.monitoring.router import router as monitoring_router
from crmguard.utils.logger import configure_logging, get_logger

# ─── Logging Setup ────────────────────────────────────────────────────────────
# Configure logging at module import time (before any other imports that may log).
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)


root_router = APIRouter(tags=["root"])


@root_router.get("/")
async def root() -> dict[str, str]:
    """Root endpoint — service identity / discovery."""
    return {
        "service": "crmguard",
        "health": "/health",
        "reveal": "/api/leads/{lead_id}/reveal",
        "monitoring": "/api/security/suspicious",
    }


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — startup and shutdown sequence."""
    logger.info("crmguard starting up...")

    # ── Step 1: Load configuration ────────────────────────────────────────────
    # load_config() raises SystemExit on parse error or missing version field,
    # so the process exits non-zero before ready=True is ever set.
    config: Config = load_config()
    app.state.config = config

    # ── Step 2: Data boundary ─────────────────────────────────────────────────
    # RuntimeError from the SQLite version guard propagates and refuses startup.
    boundary = await create_data_boundary(config)
    app.state.boundary = boundary
    app.state.audit_backend = boundary.audit
    app.state.directory = boundary.directory

    # ── Step 3: Disclosure gateway ────────────────────────────────────────────
    counter = RevealRateCounter(
        max_reveals=config.reveal.max_reveals,
        window_seconds=config.reveal.window_seconds,
        storage_uri=config.reveal.storage_uri,
    )
    app.state.reveal_service = RevealService(
        boundary.leads, boundary.audit, counter, auto_hide_seconds=config.reveal.auto_hide_seconds
    )
    set_reveal_request_limit(config.reveal.http_rate_limit)
    logger.info(
        "reveal_service_ready",
        max_reveals=config.reveal.max_reveals,
        window_seconds=config.reveal.window_seconds,
        auto_hide_seconds=config.reveal.auto_hide_seconds,
        http_rate_limit=config.reveal.http_rate_limit,
    )

    # ── Step 4: Alert channel ─────────────────────────────────────────────────
    dispatcher = create_alert_dispatcher(config.alerts, boundary.audit)
    app.state.alert_dispatcher = dispatcher

    # ── Step 5: Suspicious-activity aggregator ────────────────────────────────
    aggregator = SuspiciousActivityAggregator(
        audit=boundary.audit,
        directory=boundary.directory,
        dispatcher=dispatcher,
        feed=boundary.feed,
        config=config.monitoring,
    )
    await aggregator.start()
    app.state.aggregator = aggregator

    # ── Step 6: Mark as ready ─────────────────────────────────────────────────
    app.state.ready = True
    logger.info("crmguard ready", backend=boundary.backend)

    yield

    # ── Shutdown (reverse order) ──────────────────────────────────────────────
    logger.info("crmguard shutting down...")
    app.state.ready = False

    await aggregator.stop()

    try:
        await dispatcher.aclose()
    except Exception as exc:
        logger.warning("Alert dispatcher close error (non-fatal)", error=str(exc))

    await boundary.close()
    logger.info("crmguard shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app() -> FastAPI:
    """Create and configure the crmguard FastAPI application.

    Call this function directly in tests to get an isolated app instance:
        app = create_app()

    Returns:
        Configured FastAPI application with lifespan, routers, and middleware.
    """
    # Schema endpoints only in DEBUG; they aid enumeration otherwise.
    _debug = os.getenv("DEBUG", "false").lower() == "true"

    application = FastAPI(
        title="crmguard",
        description="CRM security monitoring and controlled PII disclosure",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if _debug else None,
        redoc_url="/redoc" if _debug else None,
        openapi_url="/openapi.json" if _debug else None,
    )

    # /health answers 503 until the lifespan flips this.
    application.state.ready = False

    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    _origins = os.getenv("CRMGUARD_CORS_ORIGINS")
    application.add_middleware(
        CORSMiddleware,
        allow_origins=(
            [o.strip() for o in _origins.split(",") if o.strip()]
            if _origins
            else ["http://localhost:3000", "http://127.0.0.1:3000"]
        ),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    # Must be added after state.limiter is set.
    application.add_middleware(SlowAPIMiddleware)

    application.include_router(root_router)
    application.include_router(health_router)
    application.include_router(disclosure_router, prefix="/api")
    application.include_router(monitoring_router, prefix="/api")

    @application.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=500, content={"error": "Internal server error"}
        )

    return application


# ─── Module-Level App (for uvicorn) ───────────────────────────────────────────

app = create_app()
