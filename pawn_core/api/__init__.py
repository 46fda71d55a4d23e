"""
Pawn Ledger API Application Factory
"""

from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..exceptions import (
    PawnLedgerError, ValidationError, InvalidAmountError, NotFoundError,
    NoActiveShiftError, InvalidStateError, ConflictError, ResourceExhaustedError
)
from .dependencies import PawnShopSystem
from .loans import router as loans_router
from .shifts import router as shifts_router
from .reports import router as reports_router
from .admin import router as admin_router


logger = logging.getLogger(__name__)


# Checked in order; subclasses must come before their bases
ERROR_STATUS_CODES = (
    (ValidationError, 400),
    (InvalidAmountError, 400),
    (NoActiveShiftError, 403),
    (NotFoundError, 404),
    (InvalidStateError, 409),
    (ConflictError, 409),
    (ResourceExhaustedError, 503),
)


def status_code_for(error: PawnLedgerError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


def create_app(system: Optional[PawnShopSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    system = system or PawnShopSystem()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if system.config.scheduler_enabled:
            system.scheduler.start()
        yield
        system.close()

    app = FastAPI(
        title=system.config.api_title,
        description="Pawn loan lifecycle and cash balance reconciliation",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.system = system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PawnLedgerError)
    async def handle_pawn_error(request: Request, exc: PawnLedgerError):
        status_code = status_code_for(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})

    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(shifts_router, prefix="/shifts", tags=["Shifts"])
    app.include_router(reports_router, prefix="/reports", tags=["Reports"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "pawn_ledger_api",
            "version": "1.0.0",
            "scheduler_running": system.scheduler.is_running
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": system.config.api_title,
            "version": "1.0.0",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "loans": "/loans",
                "shifts": "/shifts",
                "reports": "/reports",
                "admin": "/admin",
            }
        }

    return app
