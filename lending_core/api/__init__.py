"""
Lending API Application Factory
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..exceptions import NotFoundError, PersistenceError, StateError, ValidationError
from ..logging_config import get_logger, setup_logging
from .system import LendingSystem, get_lending_system
from .loans import router as loans_router
from .schedules import router as schedules_router
from .reports import router as reports_router


logger = get_logger("lending.api")

ERROR_STATUS = (
    (ValidationError, 422),
    (NotFoundError, 404),
    (StateError, 409),
    (PersistenceError, 503),
)


def _error_handler(status_code: int):
    async def handler(request: Request, exc: Exception):
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        else:
            logger.warning(f"{request.method} {request.url.path} rejected: {exc}")
        return JSONResponse(
            status_code=status_code,
            content={"detail": str(exc), "error": type(exc).__name__}
        )
    return handler


def create_app(system: Optional[LendingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    if system is None:
        system = LendingSystem()
        setup_logging(
            level=system.config.log_level,
            log_format=system.config.log_format,
            log_file=system.config.log_file
        )

    app = FastAPI(
        title="Lending Core API",
        description="Loan amortization, payment schedules and reconciliation",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.lending_system = system

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for exc_class, status_code in ERROR_STATUS:
        app.add_exception_handler(exc_class, _error_handler(status_code))

    # Include routers
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(schedules_router, prefix="/schedules", tags=["Schedules"])
    app.include_router(reports_router, tags=["Reports"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "lending_core_api",
            "version": __version__
        }

    return app


__all__ = ["create_app", "LendingSystem", "get_lending_system"]
