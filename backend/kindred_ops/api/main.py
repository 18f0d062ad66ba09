"""
Kindred Ops - FastAPI Application
=================================

Main application factory with routers, middleware and the optional
in-process heartbeat.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from kindred_ops.api import ops
from kindred_ops.api.deps import DbSession
from kindred_ops.core.config import settings
from kindred_ops.core.database import AsyncSessionLocal, close_db, init_db
from kindred_ops.core.logging_config import configure_logging
from kindred_ops.core.ops.errors import (
    NotFoundError,
    OpsError,
    ProposalStateError,
    ValidationError,
)
from kindred_ops.core.ops.heartbeat import HeartbeatScheduler
from kindred_ops.core.schemas import ErrorResponse, HealthResponse

configure_logging()

logger = structlog.get_logger()


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup:
    - Initialize database
    - Start the heartbeat scheduler (if enabled)

    Shutdown:
    - Stop the heartbeat scheduler
    - Close database connections
    """
    logger.info("Starting Kindred Ops", version=settings.APP_VERSION)

    await init_db()
    logger.info("Database initialized")

    scheduler = None
    if settings.OPS_HEARTBEAT_ENABLED:
        scheduler = HeartbeatScheduler(AsyncSessionLocal)
        await scheduler.start()
    app.state.heartbeat_scheduler = scheduler

    yield

    logger.info("Shutting down Kindred Ops")
    if scheduler:
        await scheduler.stop()
    await close_db()
    logger.info("Database connections closed")


# ==========================================================================
# App Factory
# ==========================================================================

def _error_response(status_code: int, error: str, exc: Exception, code: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=str(exc), code=code).model_dump(),
    )


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Kindred Ops - Autonomous Operations Orchestrator",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )

    # ==========================================================================
    # Middleware
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================================
    # Exception Handlers
    # ==========================================================================

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return _error_response(
            status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation Error", exc, "VALIDATION_ERROR"
        )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error_response(status.HTTP_404_NOT_FOUND, "Not Found", exc, "NOT_FOUND")

    @app.exception_handler(ProposalStateError)
    async def proposal_state_handler(request: Request, exc: ProposalStateError) -> JSONResponse:
        return _error_response(status.HTTP_409_CONFLICT, "Conflict", exc, "PROPOSAL_STATE")

    @app.exception_handler(OpsError)
    async def ops_error_handler(request: Request, exc: OpsError) -> JSONResponse:
        logger.warning("Ops error", error=str(exc), path=request.url.path)
        return _error_response(
            status.HTTP_400_BAD_REQUEST, "Bad Request", exc, type(exc).__name__
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )

        if settings.is_development:
            detail = str(exc)
        else:
            detail = "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal Server Error",
                detail=detail,
                code="INTERNAL_ERROR",
            ).model_dump(),
        )

    # ==========================================================================
    # Routers
    # ==========================================================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health_check(request: Request, db: DbSession) -> HealthResponse:
        """Check application, database and heartbeat status."""
        try:
            await db.execute(text("SELECT 1"))
            database = "connected"
        except Exception as e:
            logger.warning("Database health check failed", error=str(e))
            database = "unavailable"

        scheduler = getattr(request.app.state, "heartbeat_scheduler", None)
        if scheduler is None:
            heartbeat = "disabled"
        else:
            heartbeat = "running" if scheduler.is_running else "stopped"

        return HealthResponse(
            status="healthy" if database == "connected" else "degraded",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database=database,
            heartbeat=heartbeat,
        )

    app.include_router(ops.router, prefix=settings.API_V1_PREFIX)

    # ==========================================================================
    # Root Endpoint
    # ==========================================================================

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        """Root endpoint with API info."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs" if settings.is_development else "Disabled in production",
            "health": "/health",
            "api": f"{settings.API_V1_PREFIX}/ops",
        }

    return app


# ==========================================================================
# Application Instance
# ==========================================================================

app = create_app()


# ==========================================================================
# Development Server
# ==========================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "kindred_ops.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level="info",
    )
