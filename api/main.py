"""
Checklist Sync API

A FastAPI-based backend for the checklist sync client. Stores one JSON
document per user and collection, streams changes to the owner's other
devices, and keeps profiles, subscriptions and usage telemetry.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.core.config import settings
from api.models.database import engine, init_db
from api.models.schemas import ErrorResponse, HealthResponse
from api.routes import account, auth, collections, realtime

# =============================================================================
# Logging Configuration
# =============================================================================

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# =============================================================================
# Application Lifespan
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create missing tables on startup; dispose of the engine on shutdown."""
    logger.info(
        f"{settings.app_name} v{settings.app_version} starting ({settings.environment})"
    )
    try:
        await init_db()
    except SQLAlchemyError as e:
        logger.error(f"Could not prepare the database at startup: {e}")
        raise
    logger.info("Database schema ready")

    yield

    await engine.dispose()
    logger.info(f"{settings.app_name} stopped")


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description="""
Checklist Sync API backs the offline-first checklist client.

## Features

* **Collections** - One JSON document per user for tasks, categories and boards
* **Realtime** - Server-sent change events for the owner's documents
* **Profiles** - Per-user profile, settings and subscription tier
* **Telemetry** - Usage events and aggregate statistics

## Authentication

All endpoints (except /health) require a bearer token.
Use `/api/v1/auth/login` or the `/api/v1/auth/authorize` redirect to obtain one.
    """,
    version=settings.app_version,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)


# =============================================================================
# Middleware
# =============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def timed_access_log(request: Request, call_next):
    """Time each request, expose it as X-Process-Time and log it at DEBUG."""
    started = time.perf_counter()
    response = await call_next(request)
    elapsed = time.perf_counter() - started
    response.headers["X-Process-Time"] = f"{elapsed:.4f}"
    logger.debug(
        f"{request.method} {request.url.path} -> {response.status_code} ({elapsed * 1000:.1f} ms)"
    )
    return response


# =============================================================================
# Exception Handlers
# =============================================================================

def error_response(status_code: int, error: str, detail: str | None = None, headers=None) -> JSONResponse:
    body = ErrorResponse(error=error, detail=detail, status_code=status_code)
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


@app.exception_handler(StarletteHTTPException)
async def on_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Raised ``HTTPException``s keep their status; string details become ``error``."""
    if isinstance(exc.detail, str):
        return error_response(exc.status_code, exc.detail, headers=exc.headers)
    return error_response(exc.status_code, "Error", str(exc.detail), headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def on_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = [
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    ]
    return error_response(
        422,
        "Validation Error",
        "; ".join(problems),
    )


@app.exception_handler(Exception)
async def on_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    """Anything unhandled is a 500. Details are hidden in production."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    detail = "Something went wrong" if settings.environment == "production" else str(exc)
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error", detail)


# =============================================================================
# Health Check Endpoint
# =============================================================================

@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="Health check",
    description="Check if the API is running and the database answers.",
)
async def health_check() -> HealthResponse:
    """
    Health check endpoint.

    Reports ``degraded`` instead of failing when the database is unreachable.
    """
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        database = "connected"
    except SQLAlchemyError as e:
        logger.warning(f"Health check database query failed: {e}")
        database = "unavailable"

    return HealthResponse(
        status="healthy" if database == "connected" else "degraded",
        version=settings.app_version,
        database=database,
    )


@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    tags=["Health"],
    include_in_schema=False,
)
async def health_check_v1() -> HealthResponse:
    """Same check, reachable under the versioned prefix."""
    return await health_check()


# =============================================================================
# API Routes
# =============================================================================

for module in (auth, collections, realtime, account):
    app.include_router(module.router, prefix=settings.api_v1_prefix)


# =============================================================================
# Root Endpoint
# =============================================================================

@app.get(
    "/",
    tags=["Root"],
    summary="API Information",
)
async def root() -> dict[str, Any]:
    """Links to documentation and the main endpoint groups."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "documentation": {
            "openapi": "/api/openapi.json",
            "swagger": "/api/docs",
            "redoc": "/api/redoc",
        },
        "endpoints": {
            "auth": f"{settings.api_v1_prefix}/auth",
            "collections": f"{settings.api_v1_prefix}/collections",
            "realtime": f"{settings.api_v1_prefix}/realtime",
            "profiles": f"{settings.api_v1_prefix}/profiles",
            "health": "/health",
        },
    }


# =============================================================================
# Development Server
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )
