"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from simflow.api.routes import discussions_router, health_router, projects_router, requests_router
from simflow.config import get_settings
from simflow.database import dispose_db, init_db
from simflow.events import EventEmitter
from simflow.logging_config import configure_logging
from simflow.services import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ServiceError,
    ValidationError,
)

logger = logging.getLogger(__name__)

STATUS_BY_ERROR: dict[type[ServiceError], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ValidationError: status.HTTP_400_BAD_REQUEST,
    ConflictError: status.HTTP_409_CONFLICT,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    configure_logging(get_settings().log_level)
    init_db()
    yield
    # Shutdown
    await dispose_db()


def create_app(emitter: EventEmitter | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    app = FastAPI(
        title="SimFlow API",
        description="Simulation request tracking with project hour budgets",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.emitter = emitter or EventEmitter()

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        """Map service-layer failures to HTTP responses."""
        return JSONResponse(
            status_code=STATUS_BY_ERROR.get(type(exc), status.HTTP_400_BAD_REQUEST),
            content={"detail": exc.message, "code": exc.code, "context": exc.context or None},
        )

    @app.exception_handler(InvalidTransitionError)
    async def transition_error_handler(
        request: Request, exc: InvalidTransitionError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "detail": str(exc),
                "code": "INVALID_TRANSITION",
                "context": {"from_status": exc.from_status, "to_status": exc.to_status},
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(projects_router, prefix="/api/v1")
    app.include_router(requests_router, prefix="/api/v1")
    app.include_router(discussions_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
