"""
Lending API Application Factory
"""

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .members import router as members_router
from .loans import router as loans_router
from .reports import router as reports_router
from .. import __version__
from ..errors import (
    LendingError, NotFoundError, ValidationError, PolicyError,
    InvalidTransitionError, TransientError
)
from ..config import get_config
from ..logging_config import get_logger, log_action, setup_logging


logger = get_logger("lending.api")


def status_code_for(error: LendingError) -> int:
    """HTTP status of a lending error"""
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, PolicyError):
        return 422
    if isinstance(error, InvalidTransitionError):
        return 409
    if isinstance(error, TransientError):
        return 503
    return 400


async def lending_error_handler(request: Request, exc: LendingError) -> JSONResponse:
    status_code = status_code_for(exc)
    log_action(
        logger, "warning" if status_code < 500 else "error",
        f"{request.method} {request.url.path} failed: {exc.message}",
        user_id=request.headers.get("x-user-id"), action="api_error",
        extra={"error": exc.code, "status_code": status_code}
    )
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Lending Core API",
        description="Loan lifecycle and repayment engine for microfinance back offices",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(LendingError, lending_error_handler)

    app.include_router(members_router, prefix="/members", tags=["Members"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(reports_router, prefix="/reports", tags=["Reports"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "lending_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Lending Core API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "members": "/members",
                "loans": "/loans",
                "reports": "/reports",
            }
        }

    return app


app = create_app()


def run_server(host: str = None, port: int = None, debug: bool = False):
    """Run the FastAPI server with settings from the environment"""
    config = get_config()
    setup_logging(config.log_level, "lending", config.log_format, config.log_file)
    uvicorn.run(
        "lending_core.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
