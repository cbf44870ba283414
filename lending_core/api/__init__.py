"""
Lending Core API Application Factory
"""

from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .accounts import router as accounts_router
from .loans import router as loans_router
from .payments import router as payments_router
from .rollback import router as rollback_router
from .admin import router as admin_router
from ..system import LendingSystem
from ..errors import LendingError, ValidationError
from ..config import LendingConfig, get_config
from ..logging_config import setup_logging, get_logger, log_action
from .. import __version__


logger = get_logger("lending.api")


def create_app(system: Optional[LendingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    config = get_config()
    setup_logging(config.log_level, "lending", config.log_format, config.log_file)

    app = FastAPI(
        title="Lending Core API",
        description="Loan ledger and repayment engine with atomic disbursement and rollback",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system or LendingSystem(config=config)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LendingError)
    async def lending_error_handler(request: Request, exc: LendingError):
        level = "error" if exc.http_status >= 500 else "info"
        log_action(
            logger, level, exc.message,
            action=f"{request.method} {request.url.path}",
            extra={"error": exc.kind.value, "status_code": exc.http_status}
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(payments_router, prefix="/payments", tags=["Payments"])
    app.include_router(rollback_router, prefix="/rollback", tags=["Rollback"])
    app.include_router(admin_router, tags=["Admin"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "lending_core_api",
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
                "accounts": "/accounts",
                "loans": "/loans",
                "payments": "/payments",
                "rollback": "/rollback",
                "audit": "/audit/verify",
                "reconcile": "/ledger/reconcile",
            }
        }

    return app


def run_server(config: Optional[LendingConfig] = None):
    """Run the API under uvicorn with host, port and worker count from settings"""
    config = config or get_config()
    if config.api_workers > 1 and config.storage_backend == "memory":
        raise ValidationError("In-memory storage cannot be shared between workers; use the sqlite backend")

    uvicorn.run(
        "lending_core.api:create_app",
        factory=True,
        host=config.api_host,
        port=config.api_port,
        workers=config.api_workers,
        log_level=config.log_level.lower()
    )
