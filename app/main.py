"""
Touchline: multi-touch donation attribution.
Main application entry point.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.attribution import router as attribution_router
from app.api.reconciliation import router as reconciliation_router
from app.middleware.security import SecurityHeadersMiddleware
from app.config import get_settings

import structlog

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.dev.ConsoleRenderer() if get_settings().debug else structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("touchline_starting", version=VERSION)
    yield
    logger.info("touchline_shutting_down")


app = FastAPI(
    title="Touchline",
    description="Multi-touch donation attribution: from refcode to organic, one record per transaction.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if get_settings().debug else None,
    redoc_url="/redoc" if get_settings().debug else None,
    openapi_url="/openapi.json" if get_settings().debug else None,
)

# Security headers on every response
app.add_middleware(SecurityHeadersMiddleware)

# --- Routes ---
app.include_router(attribution_router)
app.include_router(reconciliation_router)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "touchline", "version": VERSION}
