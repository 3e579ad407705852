from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.v1.router import api_router
from app.config import get_settings
from app.core.database import close_db, init_db
from app.core.logging import configure_logging
from app.middleware import TelemetryMiddleware
from app.models.experiment import AssignmentRecord, ExperimentRecord  # noqa: F401
from app.services.experiments.persistence import restore_experiments
from app.services.experiments.service import ExperimentService

settings = get_settings()
configure_logging(settings)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("app_starting", app=settings.APP_NAME, environment=settings.ENVIRONMENT)
    service = ExperimentService.from_settings(settings)
    app.state.experiment_service = service

    await init_db(settings)
    if settings.persistence_enabled:
        await restore_experiments(service)

    service.start()
    logger.info("app_started", persistence=settings.persistence_enabled)
    yield
    # Shutdown
    logger.info("app_stopping")
    service.stop()
    await close_db()
    logger.info("app_stopped")


app = FastAPI(
    title=settings.APP_NAME,
    description="Continuous-improvement A/B testing engine for the AI-readiness assessment",
    version="0.1.0",
    docs_url=f"{settings.API_V1_PREFIX}/docs",
    redoc_url=f"{settings.API_V1_PREFIX}/redoc",
    lifespan=lifespan,
)

# CORS middleware
if settings.CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(TelemetryMiddleware)

# Include routers
app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/")
async def root():
    return {
        "app": settings.APP_NAME,
        "version": "0.1.0",
        "environment": settings.ENVIRONMENT,
    }
