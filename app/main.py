import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.api.v1.router import api_v1_router
from app.core.config import settings, validate_settings_for_production
from app.core.logging import setup_logging
from app.core.metrics import PrometheusMiddleware, metrics_response
from app.core.sentry import init_sentry
from app.db.postgres import async_session_factory, engine
from app.services.background import BackgroundRunner
from app.services.completion_handler import build_completion_handler

# Configure logging before anything else
setup_logging(service="api")
init_sentry(service="api")

logger = logging.getLogger(__name__)

# Seconds to let in-flight aggregation finish on shutdown
_DRAIN_TIMEOUT = 30


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    logger.info("Starting LLM visibility pipeline...")

    background = BackgroundRunner()
    app.state.background = background
    app.state.completion_handler = build_completion_handler(async_session_factory, background)

    yield

    # Shutdown
    cancelled = await background.drain(timeout=_DRAIN_TIMEOUT)
    logger.info(
        "Background work drained (completed=%d failed=%d cancelled=%d)",
        background.completed,
        background.failed,
        cancelled,
    )
    await engine.dispose()
    logger.info("LLM visibility pipeline shut down")


app = FastAPI(
    title="LLM Visibility Pipeline",
    description="Completion ingestion and metrics aggregation for LLM brand-visibility monitoring",
    version="2.1.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app.add_middleware(PrometheusMiddleware)

# CORS: parse allowed_origins from settings (comma-separated)
_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(api_v1_router)


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()


@app.get("/api/v1/health")
async def health(request: Request):
    postgres_ok = True
    try:
        async with async_session_factory() as db:
            await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Health check: PostgreSQL unavailable: %s", e)
        postgres_ok = False

    background = getattr(request.app.state, "background", None)
    return {
        "status": "ok" if postgres_ok else "degraded",
        "postgres": postgres_ok,
        "background_in_flight": len(background) if background else 0,
    }
