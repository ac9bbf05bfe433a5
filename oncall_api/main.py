"""On-call escalation FastAPI application."""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded

from oncall_api.config import settings, validate_secret_key
from oncall_api.database import close_database
from oncall_api.logging_config import get_logger, setup_logging
from oncall_api.middleware import CorrelationIdMiddleware
from oncall_api.middleware.rate_limit import limiter, rate_limit_exceeded_handler
from oncall_api.routers import alerts, health, oncall
from oncall_api.services.alert_ingestion import FailureRecorder
from oncall_api.services.scheduler import start_scheduler, stop_scheduler

setup_logging(
    log_format=settings.log_format,
    log_level=settings.log_level,
    service_name=settings.service_name,
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Migrations are applied with `alembic upgrade head` before startup
    validate_secret_key()
    logger.info("On-call escalation API started")

    if not settings.testing:
        start_scheduler()

    yield

    logger.info("Shutting down on-call escalation API...")
    stop_scheduler()
    await close_database()
    logger.info("On-call escalation API shutdown complete")


app = FastAPI(
    title="On-Call Escalation API",
    description="On-call rotation resolution and alert escalation",
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.state.failure_recorder = FailureRecorder()
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# Middleware (order matters: first added = last executed)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)

app.include_router(health.router)
app.include_router(oncall.router)
app.include_router(alerts.router)


@app.get("/")
async def root() -> dict[str, Any]:
    """Root endpoint."""
    return {
        "name": "On-Call Escalation API",
        "version": "0.1.0",
        "docs": "/docs",
    }
