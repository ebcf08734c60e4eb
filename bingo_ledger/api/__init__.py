"""
Bingo Ledger API Application Factory
"""

import logging
from dataclasses import asdict
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..errors import LedgerError
from ..governance import Actor
from ..logging_config import log_action
from .clients import router as clients_router
from .dependencies import LedgerSystem, get_actor, get_ledger_system
from .loans import router as loans_router
from .payments import router as payments_router
from .schemas import EvaluateRequest

logger = logging.getLogger(__name__)


# Error kind -> HTTP status
ERROR_STATUS = {
    "INVALID_TERMS": 400,
    "INVALID_PAYMENT": 400,
    "MISSING_JUSTIFICATION": 422,
    "ACCESS_DENIED": 403,
    "ILLEGAL_TRANSITION": 409,
    "CONFLICT": 409,
    "NOT_FOUND": 404,
    "INTERNAL_FAILURE": 500,
}


def create_app(system: Optional[LedgerSystem] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        system: Wired ledger system to serve; the global one is created lazily when omitted
    """
    app = FastAPI(
        title="Bingo Ledger API",
        description="Loan lifecycle and ledger engine for cash loans and bike hire-purchase",
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

    if system is not None:
        app.dependency_overrides[get_ledger_system] = lambda: system

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        status_code = ERROR_STATUS.get(exc.code, 500)
        level = "ERROR" if status_code >= 500 else "INFO"
        log_action(logger, level, f"{request.method} {request.url.path} failed: {exc.message}",
                   action=exc.code, resource=request.url.path)
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    # Include routers
    app.include_router(clients_router, prefix="/clients", tags=["Clients"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(payments_router, prefix="/payments", tags=["Payments"])

    @app.post("/portfolio/evaluate", tags=["Loans"])
    def evaluate_portfolio(
        request: EvaluateRequest,
        actor: Actor = Depends(get_actor),
        ledger: LedgerSystem = Depends(get_ledger_system)
    ):
        """Evaluate every serviced loan as of a date"""
        report = ledger.loans.evaluate_portfolio(request.at_date, actor, request.justification)
        return asdict(report)

    @app.get("/audit/verify", tags=["Audit"])
    def verify_audit(ledger: LedgerSystem = Depends(get_ledger_system)):
        """Recompute the audit hash chain"""
        return ledger.loans.verify_integrity()

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "bingo_ledger_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Bingo Ledger API",
            "version": __version__,
            "description": "Loan lifecycle and ledger engine",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "clients": "/clients",
                "loans": "/loans",
                "payments": "/payments",
                "portfolio": "/portfolio/evaluate",
                "audit": "/audit/verify",
            }
        }

    return app


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "bingo_ledger.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )


# Create the app instance used by uvicorn
app = create_app()
