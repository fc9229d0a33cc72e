"""FastAPI service for crash/ANR grouping and session journeys.

Provides REST API endpoints for:
- Ranked crash and ANR groups
- Occurrences of a group
- Session journeys with issues attached to screens
- Occurrence ingestion
"""

import os
from datetime import UTC, datetime

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from src.api.issues import router as issues_router
from src.config import get_settings
from src.storage import get_repository, set_repository
from src.utils.logging import configure_logging

logger = structlog.get_logger()

VERSION = "0.1.0"

# ============================================================================
# App Configuration
# ============================================================================

app = FastAPI(
    title="Issue Grouping API",
    description="Crash and ANR grouping with session journeys",
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(issues_router)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    timestamp: str


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        version=VERSION,
        timestamp=datetime.now(UTC).isoformat(),
    )


# ============================================================================
# Error Handlers
# ============================================================================

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed query parameters and bodies are client errors."""
    return JSONResponse(
        status_code=400,
        content={"detail": [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler."""
    logger.exception("Unhandled exception", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if os.getenv("DEBUG") else "An error occurred",
        },
    )


# ============================================================================
# Startup/Shutdown Events
# ============================================================================

@app.on_event("startup")
async def startup():
    """Initialize logging and storage on startup."""
    settings = get_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_json)
    repository = get_repository()
    logger.info(
        "Issue Grouping API starting",
        version=VERSION,
        storage_backend=settings.storage_backend.value,
        repository=type(repository).__name__,
    )


@app.on_event("shutdown")
async def shutdown():
    """Close storage on shutdown."""
    logger.info("Issue Grouping API shutting down")
    await get_repository().close()
    set_repository(None)
