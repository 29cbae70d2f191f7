# meshplane/main.py
"""
Meshplane Control Plane - Main Application
FastAPI application entry point
"""

import uvicorn
import logging
from dataclasses import asdict
from datetime import datetime
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from meshplane.api.v1 import ipam, mesh
from meshplane.database.session import init_db, db_manager
from meshplane.config import settings
from meshplane.core.exceptions import (
    MeshPlaneError,
    AllocationExhausted,
    AddressStateError,
    DriftDetected,
    EntityNotFound,
    InvalidAddress,
    InvalidCidr,
    KeypairGenerationFailure,
    RemoteExecutionFailure,
    RotationPartialFailure,
)
from meshplane.schemas.base import ErrorResponse, HealthResponse

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Track startup time
startup_time = None

ERROR_STATUS = {
    EntityNotFound: status.HTTP_404_NOT_FOUND,
    AllocationExhausted: status.HTTP_409_CONFLICT,
    AddressStateError: status.HTTP_409_CONFLICT,
    DriftDetected: status.HTTP_409_CONFLICT,
    InvalidCidr: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidAddress: status.HTTP_422_UNPROCESSABLE_ENTITY,
    RemoteExecutionFailure: status.HTTP_502_BAD_GATEWAY,
    RotationPartialFailure: status.HTTP_502_BAD_GATEWAY,
    KeypairGenerationFailure: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan events
    - Startup: Initialize database
    - Shutdown: Cleanup resources
    """
    global startup_time

    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    logger.info(f"Environment: {settings.ENV}")

    init_db()
    startup_time = datetime.utcnow()

    logger.info("Application started successfully")

    yield

    # Shutdown
    logger.info("Shutting down application")


# Initialize FastAPI App
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Meshplane Control Plane API

    Network allocation and WireGuard mesh orchestration:
    - IP address management (networks, addresses, reservations)
    - Hub and spoke registry with key management
    - Configuration deployment, key rotation and drift repair
    - Live peer monitoring

    ## Authentication

    All /api/v1 endpoints require the X-Admin-Token header
    """,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan
)


# === Exception Handlers ===

def _error_response(status_code: int, error: str, error_code: str, details: Optional[dict] = None) -> JSONResponse:
    body = ErrorResponse(error=error, error_code=error_code, details=details)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def _error_details(exc: MeshPlaneError):
    if isinstance(exc, RotationPartialFailure) and exc.result is not None:
        return asdict(exc.result)
    if isinstance(exc, RemoteExecutionFailure):
        return {"host": exc.host, "error": exc.error}
    if isinstance(exc, DriftDetected) and exc.report is not None:
        return {"hubs": len(exc.report.hubs), "spokes": len(exc.report.spokes)}
    return None


@app.exception_handler(MeshPlaneError)
async def meshplane_exception_handler(request: Request, exc: MeshPlaneError):
    """Map engine errors to the error envelope"""
    status_code = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
        status.HTTP_400_BAD_REQUEST,
    )
    if status_code >= 500:
        logger.error(f"{exc.error_code}: {exc}")

    return _error_response(status_code, str(exc), exc.error_code, _error_details(exc))


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    """Rejected operations (duplicate names, wrong state transitions)"""
    return _error_response(status.HTTP_400_BAD_REQUEST, str(exc), "BAD_REQUEST")


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors"""
    errors = []
    for error in exc.errors():
        errors.append({
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"]
        })

    return _error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation error", "VALIDATION_ERROR", {"errors": errors}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.exception(f"Unexpected error: {exc}")

    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal server error",
        "INTERNAL_ERROR",
        {"message": str(exc)} if settings.DEBUG else None,
    )


# === Include Routers ===

app.include_router(
    ipam.router,
    prefix=f"{settings.API_PREFIX}/ipam",
    tags=["IPAM"]
)

app.include_router(
    mesh.router,
    prefix=f"{settings.API_PREFIX}/mesh",
    tags=["Mesh"]
)


# === Root Endpoints ===

@app.get("/", summary="Root endpoint", description="Welcome message and API info")
async def read_root():
    """Root endpoint with API information"""
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "health": "/health"
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check application and database health"
)
async def health_check():
    """Health check endpoint for monitoring"""
    db_status = "connected" if db_manager.check_connection() else "disconnected"

    uptime = None
    if startup_time:
        uptime = (datetime.utcnow() - startup_time).total_seconds()

    return HealthResponse(
        status="healthy" if db_status == "connected" else "unhealthy",
        service="meshplane",
        version=settings.APP_VERSION,
        uptime_seconds=uptime,
        database=db_status
    )


def run():
    """Console entry point"""
    uvicorn.run(
        "meshplane.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=settings.is_development,
        log_level=settings.LOG_LEVEL.lower()
    )


# === Run Application ===

if __name__ == "__main__":
    run()
